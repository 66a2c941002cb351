#!/usr/bin/env python3
"""Admin maintenance CLI for workspace and revenue operations."""

from __future__ import annotations

import argparse
import json
import logging
import sqlite3
import sys

from config import Config
from services.revenue import (
    PAYMENT_EVENT_TYPES,
    AttributionError,
    apply_revenue,
    attribution_from_stripe_event,
    claim_stripe_event,
    reconcile_totals,
    transaction,
)
from services.timestamps import utcnow_iso

logger = logging.getLogger(__name__)


def db_connect():
    conn = sqlite3.connect(Config.DATABASE_PATH, timeout=15)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def set_role(email: str, role: str):
    conn = db_connect(); cur = conn.cursor()
    cur.execute("UPDATE users SET role = ? WHERE email = ?", (role, email.lower()))
    conn.commit(); changed = cur.rowcount; conn.close()
    print(f"updated_rows={changed}")


def verify_email(email: str):
    conn = db_connect(); cur = conn.cursor()
    cur.execute(
        "UPDATE users SET email_verified_at = COALESCE(email_verified_at, ?) WHERE email = ?",
        (utcnow_iso(), email.lower()),
    )
    conn.commit(); changed = cur.rowcount; conn.close()
    print("verified" if changed else "user_not_found")


def reconcile_revenue(email: str | None):
    conn = db_connect()
    user_id = None
    if email:
        row = conn.execute("SELECT id FROM users WHERE email = ?", (email.lower(),)).fetchone()
        if not row:
            conn.close()
            print("user_not_found")
            return
        user_id = row['id']
    corrected = reconcile_totals(conn, user_id)
    conn.close()
    print(f"corrected_rows={corrected}")


def replay_revenue(path: str):
    """Apply Stripe payment events exported from the dashboard (one event or a list)."""
    with open(path, 'r', encoding='utf-8') as fh:
        payload = json.load(fh)
    events = payload if isinstance(payload, list) else [payload]

    conn = db_connect()
    created = duplicates = skipped = 0
    for event in events:
        if not isinstance(event, dict) or event.get('type') not in PAYMENT_EVENT_TYPES:
            skipped += 1
            continue
        attribution = attribution_from_stripe_event(event)
        if attribution is None:
            skipped += 1
            continue
        try:
            with transaction(conn):
                if event.get('id'):
                    claim_stripe_event(conn, event['id'], event['type'])
                result = apply_revenue(conn, attribution)
        except (AttributionError, sqlite3.Error) as exc:
            logger.warning('Skipping event %s: %s', event.get('id'), exc)
            skipped += 1
            continue
        if result.created:
            created += 1
        else:
            duplicates += 1
    conn.close()
    print(f"created={created} duplicates={duplicates} skipped={skipped}")


def main(argv=None):
    parser = argparse.ArgumentParser(description='Testimonial Hub admin utility')
    sub = parser.add_subparsers(dest='cmd', required=True)

    p1 = sub.add_parser('set-role')
    p1.add_argument('--email', required=True)
    p1.add_argument('--role', required=True, choices=['admin', 'member', 'viewer'])

    p2 = sub.add_parser('verify-email')
    p2.add_argument('--email', required=True)

    p3 = sub.add_parser('reconcile-revenue', help='recompute attributed revenue totals from revenue events')
    p3.add_argument('--email', help='limit to one workspace owner')

    p4 = sub.add_parser('replay-revenue', help='apply Stripe payment events from a JSON file')
    p4.add_argument('path')

    args = parser.parse_args(argv)

    if args.cmd == 'set-role':
        set_role(args.email, args.role)
    elif args.cmd == 'verify-email':
        verify_email(args.email)
    elif args.cmd == 'reconcile-revenue':
        reconcile_revenue(args.email)
    elif args.cmd == 'replay-revenue':
        replay_revenue(args.path)


if __name__ == '__main__':
    sys.exit(main())
