"""Revenue attribution for testimonials and widgets.

A payment is recorded as one ``revenue_events`` row. When the payment is
attributed to a testimonial or widget, that entity's ``revenue_attributed``
running total is incremented, and one ``activity_log`` row is written. All of
these writes happen in a single ``BEGIN IMMEDIATE`` transaction, so a payment
is either counted completely or not at all, and concurrent webhook deliveries
are serialized by SQLite's write lock.

Payments are de-duplicated by Stripe payment id and by per-user idempotency
key. Both are unique in the schema; a redelivered payment resolves to the row
already stored and changes nothing.
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from services.timestamps import utcnow_iso

logger = logging.getLogger(__name__)

PAYMENT_EVENT_TYPES = ('checkout.session.completed', 'payment_intent.succeeded')

# Stripe amounts for these currencies are already in major units.
ZERO_DECIMAL_CURRENCIES = frozenset({
    'BIF', 'CLP', 'DJF', 'GNF', 'JPY', 'KMF', 'KRW', 'MGA',
    'PYG', 'RWF', 'UGX', 'VND', 'VUV', 'XAF', 'XOF', 'XPF',
})

_ATTRIBUTION_TARGETS = (
    ('testimonials', 'testimonial_id'),
    ('widgets', 'widget_id'),
)


class AttributionError(ValueError):
    """Raised when a revenue attribution is malformed."""


@dataclass
class RevenueAttribution:
    user_id: str
    amount: float
    currency: str = 'USD'
    source: str = 'manual'
    testimonial_id: Optional[str] = None
    widget_id: Optional[str] = None
    customer_email: Optional[str] = None
    stripe_payment_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    action: str = 'revenue_tracked'

    def validate(self):
        """Normalize fields in place and raise AttributionError on bad input."""
        if not self.user_id or not isinstance(self.user_id, str):
            raise AttributionError('user_id is required')

        if isinstance(self.amount, bool):
            raise AttributionError('amount must be a number')
        try:
            amount = float(self.amount)
        except (TypeError, ValueError):
            raise AttributionError('amount must be a number') from None
        if not math.isfinite(amount) or round(amount, 2) <= 0:
            raise AttributionError('amount must be greater than zero')
        self.amount = round(amount, 2)

        if self.currency is not None and not isinstance(self.currency, str):
            raise AttributionError('currency must be a 3-letter ISO code')
        currency = (self.currency or 'USD').strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise AttributionError('currency must be a 3-letter ISO code')
        self.currency = currency

        if self.metadata is None:
            self.metadata = {}
        if not isinstance(self.metadata, dict):
            raise AttributionError('metadata must be an object')

        self.source = (self.source or 'manual').strip() or 'manual'
        for name in ('testimonial_id', 'widget_id'):
            if getattr(self, name) is not None and not isinstance(getattr(self, name), str):
                raise AttributionError(f'{name} must be a string')
        self.testimonial_id = self.testimonial_id or None
        self.widget_id = self.widget_id or None
        self.stripe_payment_id = self.stripe_payment_id or None
        if self.idempotency_key is not None and not isinstance(self.idempotency_key, str):
            raise AttributionError('idempotency_key must be a string')
        self.idempotency_key = self.idempotency_key or None
        return self


@dataclass
class AttributionResult:
    event: dict
    created: bool

    @property
    def duplicate(self):
        return not self.created


# ===== STRIPE PAYLOADS =====


def amount_from_minor_units(amount, currency):
    """Convert a Stripe integer amount into major currency units."""
    try:
        value = int(amount or 0)
    except (TypeError, ValueError):
        return 0.0
    if (currency or '').upper() in ZERO_DECIMAL_CURRENCIES:
        return float(value)
    return round(value / 100, 2)


def attribution_from_stripe_event(event):
    """Build a RevenueAttribution from a Stripe payment event.

    Returns None when the payment carries no ``user_id`` metadata or has no
    positive amount; such payments are not attributable.
    """
    event_type = event.get('type', '')
    obj = (event.get('data') or {}).get('object') or {}
    metadata = obj.get('metadata') or {}

    user_id = metadata.get('user_id')
    currency = (obj.get('currency') or 'usd').upper()
    raw_amount = obj.get('amount_total') or obj.get('amount_received') or obj.get('amount') or 0
    amount = amount_from_minor_units(raw_amount, currency)
    if not user_id or amount <= 0:
        return None

    customer_details = obj.get('customer_details') or {}
    customer_email = (
        obj.get('customer_email')
        or obj.get('receipt_email')
        or customer_details.get('email')
    )

    # checkout sessions and payment intents for one purchase share this id
    payment_intent = obj.get('payment_intent')
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get('id')
    payment_id = payment_intent or obj.get('id')

    return RevenueAttribution(
        user_id=user_id,
        amount=amount,
        currency=currency,
        source='stripe',
        testimonial_id=metadata.get('testimonial_id') or None,
        widget_id=metadata.get('widget_id') or None,
        customer_email=customer_email,
        stripe_payment_id=payment_id,
        metadata={
            'event_type': event_type,
            'event_id': event.get('id'),
            'session_id': obj.get('id'),
        },
        action='revenue_attributed',
    )


# ===== PERSISTENCE =====


@contextmanager
def transaction(conn):
    """Run the block in an immediate (write-locked) transaction."""
    conn.execute('BEGIN IMMEDIATE')
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    else:
        conn.commit()


def _fetchone(conn, sql, params=()):
    cur = conn.cursor()
    cur.row_factory = sqlite3.Row
    cur.execute(sql, params)
    return cur.fetchone()


def event_to_dict(row):
    if row is None:
        return None
    event = dict(row)
    try:
        event['metadata'] = json.loads(event.get('metadata') or '{}')
    except (TypeError, json.JSONDecodeError):
        event['metadata'] = {}
    return event


def find_existing_event(conn, attribution):
    if attribution.stripe_payment_id:
        row = _fetchone(
            conn,
            'SELECT * FROM revenue_events WHERE stripe_payment_id = ?',
            (attribution.stripe_payment_id,),
        )
        if row is not None:
            return event_to_dict(row)
    if attribution.idempotency_key:
        row = _fetchone(
            conn,
            'SELECT * FROM revenue_events WHERE user_id = ? AND idempotency_key = ?',
            (attribution.user_id, attribution.idempotency_key),
        )
        if row is not None:
            return event_to_dict(row)
    return None


def _is_owned(conn, table, entity_id, user_id):
    row = _fetchone(conn, f'SELECT 1 FROM {table} WHERE id = ? AND user_id = ?', (entity_id, user_id))
    return row is not None


def apply_revenue(conn, attribution):
    """Record one payment. Must run inside ``transaction(conn)``."""
    attribution.validate()

    if _fetchone(conn, 'SELECT 1 FROM users WHERE id = ?', (attribution.user_id,)) is None:
        raise AttributionError(f'unknown user {attribution.user_id}')

    existing = find_existing_event(conn, attribution)
    if existing is not None:
        logger.info(
            'Duplicate revenue event ignored: payment=%s key=%s existing=%s',
            attribution.stripe_payment_id,
            attribution.idempotency_key,
            existing['id'],
        )
        return AttributionResult(event=existing, created=False)

    metadata = dict(attribution.metadata)
    targets = {
        'testimonial_id': attribution.testimonial_id,
        'widget_id': attribution.widget_id,
    }
    for table, column in _ATTRIBUTION_TARGETS:
        entity_id = targets[column]
        if entity_id and not _is_owned(conn, table, entity_id, attribution.user_id):
            logger.warning(
                'Dropping attribution to unknown %s %s for user %s',
                column, entity_id, attribution.user_id,
            )
            metadata[f'unmatched_{column}'] = entity_id
            targets[column] = None

    testimonial_id = targets['testimonial_id']
    widget_id = targets['widget_id']
    now = utcnow_iso()
    event_id = str(uuid.uuid4())

    conn.execute(
        '''
        INSERT INTO revenue_events (
            id, user_id, testimonial_id, widget_id, amount, currency, source,
            customer_email, stripe_payment_id, idempotency_key, metadata,
            attributed_at, created_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''',
        (
            event_id,
            attribution.user_id,
            testimonial_id,
            widget_id,
            attribution.amount,
            attribution.currency,
            attribution.source,
            attribution.customer_email,
            attribution.stripe_payment_id,
            attribution.idempotency_key,
            json.dumps(metadata, ensure_ascii=False),
            now,
            now,
        ),
    )

    if testimonial_id:
        conn.execute(
            '''
            UPDATE testimonials
            SET revenue_attributed = ROUND(COALESCE(revenue_attributed, 0) + ?, 2),
                updated_at = ?
            WHERE id = ?
            ''',
            (attribution.amount, now, testimonial_id),
        )
    if widget_id:
        conn.execute(
            '''
            UPDATE widgets
            SET revenue_attributed = ROUND(COALESCE(revenue_attributed, 0) + ?, 2),
                conversions = COALESCE(conversions, 0) + 1,
                updated_at = ?
            WHERE id = ?
            ''',
            (attribution.amount, now, widget_id),
        )

    if testimonial_id:
        entity_type = 'testimonial'
    elif widget_id:
        entity_type = 'widget'
    else:
        entity_type = 'payment' if attribution.source == 'stripe' else 'manual'

    conn.execute(
        '''
        INSERT INTO activity_log (id, user_id, action, entity_type, entity_id, metadata, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ''',
        (
            str(uuid.uuid4()),
            attribution.user_id,
            attribution.action,
            entity_type,
            testimonial_id or widget_id,
            json.dumps({
                'amount': attribution.amount,
                'currency': attribution.currency,
                'source': attribution.source,
                'customer_email': attribution.customer_email,
            }, ensure_ascii=False),
            now,
        ),
    )

    event = event_to_dict(_fetchone(conn, 'SELECT * FROM revenue_events WHERE id = ?', (event_id,)))
    logger.info(
        'Revenue attributed: %.2f %s to user %s (%s %s)',
        attribution.amount, attribution.currency, attribution.user_id,
        entity_type, testimonial_id or widget_id or '-',
    )
    return AttributionResult(event=event, created=True)


def record_revenue(conn, attribution):
    """Record one payment in its own transaction."""
    try:
        with transaction(conn):
            return apply_revenue(conn, attribution)
    except sqlite3.IntegrityError:
        # another delivery of the same payment committed first
        existing = find_existing_event(conn, attribution)
        if existing is None:
            raise
        return AttributionResult(event=existing, created=False)


def claim_stripe_event(conn, event_id, event_type):
    """Mark a Stripe event as processed. Returns False if it already was."""
    cur = conn.execute(
        'INSERT OR IGNORE INTO stripe_events (id, type, received_at) VALUES (?, ?, ?)',
        (event_id, event_type, utcnow_iso()),
    )
    return cur.rowcount == 1


def reconcile_totals(conn, user_id=None):
    """Recompute attributed revenue totals from the revenue events.

    Returns the number of testimonial and widget rows that were corrected.
    """
    corrected = 0
    now = utcnow_iso()
    with transaction(conn):
        for table, column in _ATTRIBUTION_TARGETS:
            sql = f'''
                SELECT t.id,
                       COALESCE(t.revenue_attributed, 0),
                       COALESCE(SUM(e.amount), 0),
                       COUNT(e.id)
                       {', COALESCE(t.conversions, 0)' if table == 'widgets' else ''}
                FROM {table} t
                LEFT JOIN revenue_events e ON e.{column} = t.id
            '''
            params = ()
            if user_id:
                sql += ' WHERE t.user_id = ?'
                params = (user_id,)
            sql += ' GROUP BY t.id'

            for row in conn.execute(sql, params).fetchall():
                entity_id, current, expected, count = row[0], row[1], round(row[2], 2), row[3]
                revenue_off = abs(current - expected) >= 0.005
                conversions_off = table == 'widgets' and row[4] != count
                if not revenue_off and not conversions_off:
                    continue
                if table == 'widgets':
                    conn.execute(
                        'UPDATE widgets SET revenue_attributed = ?, conversions = ?, updated_at = ? WHERE id = ?',
                        (expected, count, now, entity_id),
                    )
                else:
                    conn.execute(
                        'UPDATE testimonials SET revenue_attributed = ?, updated_at = ? WHERE id = ?',
                        (expected, now, entity_id),
                    )
                logger.warning(
                    'Reconciled %s %s: revenue %.2f -> %.2f',
                    table, entity_id, current, expected,
                )
                corrected += 1
    return corrected
