"""Dashboard and analytics aggregations.

Queries are scoped to one workspace owner. The ``summarize_*`` helpers are
pure functions over plain dicts; the ``load_*`` functions run the queries and
feed them.
"""

from __future__ import annotations

import json
import sqlite3
from collections import Counter, OrderedDict
from datetime import timedelta
from typing import Dict, List

from services.timestamps import format_timestamp, parse_timestamp, utcnow

RANGE_DAYS = {'7d': 7, '30d': 30, '90d': 90}
DEFAULT_RANGE = '30d'

SENTIMENT_FACES = {'positive': 'happy', 'negative': 'sad'}


def trend_percent(current, previous):
    """Percentage change against the previous period, as an int."""
    if previous > 0:
        return int(round((current - previous) / previous * 100))
    return 100 if current > 0 else 0


def _rows(conn, sql, params=()):
    cur = conn.cursor()
    cur.row_factory = sqlite3.Row
    cur.execute(sql, params)
    return [dict(r) for r in cur.fetchall()]


def _month_start(moment):
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _previous_month_start(moment):
    first = _month_start(moment)
    return _month_start(first - timedelta(days=1))


def _week_start(moment):
    """Sunday 00:00 of the moment's week."""
    midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight - timedelta(days=(moment.weekday() + 1) % 7)


def date_range(range_key, now=None):
    now = now or utcnow()
    if range_key == 'today':
        return now.replace(hour=0, minute=0, second=0, microsecond=0), now
    days = RANGE_DAYS.get(range_key, RANGE_DAYS[DEFAULT_RANGE])
    return now - timedelta(days=days), now


def previous_period(range_key, now=None):
    start, end = date_range(range_key, now)
    return start - (end - start), start


def _between(items, key, start, end=None):
    out = []
    for item in items:
        ts = parse_timestamp(item.get(key))
        if ts is None or ts < start:
            continue
        if end is not None and ts >= end:
            continue
        out.append(item)
    return out


def _amount_sum(events):
    return round(sum(float(e.get('amount') or 0) for e in events), 2)


def _decode(value, fallback):
    if not value:
        return fallback
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return fallback


# ===== DASHBOARD =====


def summarize_dashboard(testimonials, revenue_events, widgets, top_drivers, activity,
                        forms=None, now=None):
    now = now or utcnow()
    month_start = _month_start(now)
    last_month_start = _previous_month_start(now)
    week_start = _week_start(now)

    revenue_this_month = _amount_sum(_between(revenue_events, 'attributed_at', month_start))
    revenue_last_month = _amount_sum(
        _between(revenue_events, 'attributed_at', last_month_start, month_start)
    )
    weekly_revenue = _amount_sum(_between(revenue_events, 'attributed_at', week_start))

    testimonials_this_month = len(_between(testimonials, 'created_at', month_start))
    testimonials_last_month = len(_between(testimonials, 'created_at', last_month_start, month_start))
    this_week_count = len(_between(testimonials, 'created_at', week_start))

    rated = [t['rating'] for t in testimonials if t.get('rating') is not None]
    avg_rating = round(sum(rated) / len(rated), 1) if rated else 0

    total_impressions = sum(w.get('impressions') or 0 for w in widgets)
    total_clicks = sum(w.get('clicks') or 0 for w in widgets)
    widget_ctr = round(total_clicks / total_impressions * 100, 1) if total_impressions else 0

    recent = sorted(testimonials, key=lambda t: t.get('created_at') or '', reverse=True)[:5]
    recent_testimonials = [
        {
            'id': t['id'],
            'name': t.get('author_name'),
            'company': t.get('author_company') or '',
            'quote': t.get('content') or '',
            'rating': t.get('rating') or 0,
            'sentiment': SENTIMENT_FACES.get(t.get('sentiment'), 'neutral'),
            'revenue': float(t['revenue_attributed']) if t.get('revenue_attributed') else None,
        }
        for t in recent
    ]

    drivers = []
    for d in top_drivers:
        revenue = float(d.get('revenue_attributed') or 0)
        if revenue <= 0:
            continue
        content = d.get('content') or ''
        drivers.append({
            'id': d['id'],
            'name': d.get('author_name'),
            'company': d.get('author_company') or '',
            'snippet': content[:60] + ('...' if len(content) > 60 else ''),
            'revenue': revenue,
            'rank': len(drivers) + 1,
        })

    status_counts = Counter(t.get('status') for t in testimonials)
    forms = forms or []
    onboarding = {
        'created_form': bool(forms),
        'published_form': any(f.get('is_published') for f in forms),
        'collected_testimonial': bool(testimonials),
        'approved_testimonial': status_counts.get('approved', 0) > 0,
        'created_widget': bool(widgets),
        'tracked_revenue': bool(revenue_events),
    }

    return {
        'revenue': {
            'this_month': revenue_this_month,
            'last_month': revenue_last_month,
            'trend': trend_percent(revenue_this_month, revenue_last_month),
            'this_week': weekly_revenue,
            'total': _amount_sum(revenue_events),
        },
        'testimonials': {
            'total': len(testimonials),
            'this_month': testimonials_this_month,
            'last_month': testimonials_last_month,
            'trend': trend_percent(testimonials_this_month, testimonials_last_month),
            'this_week': this_week_count,
            'pending': status_counts.get('pending', 0),
            'approved': status_counts.get('approved', 0),
            'rejected': status_counts.get('rejected', 0),
        },
        'avg_rating': avg_rating,
        'widget_ctr': widget_ctr,
        'recent_testimonials': recent_testimonials,
        'top_drivers': drivers,
        'activity': activity,
        'onboarding': onboarding,
        'onboarding_complete': all(onboarding.values()),
    }


def load_dashboard(conn, user_id, now=None):
    testimonials = _rows(
        conn,
        '''
        SELECT id, author_name, author_company, content, status, type, rating,
               revenue_attributed, sentiment, created_at
        FROM testimonials WHERE user_id = ?
        ''',
        (user_id,),
    )
    revenue_events = _rows(
        conn,
        'SELECT amount, attributed_at FROM revenue_events WHERE user_id = ?',
        (user_id,),
    )
    widgets = _rows(conn, 'SELECT impressions, clicks FROM widgets WHERE user_id = ?', (user_id,))
    forms = _rows(conn, 'SELECT id, is_published FROM forms WHERE user_id = ?', (user_id,))
    top_drivers = _rows(
        conn,
        '''
        SELECT id, author_name, author_company, content, revenue_attributed
        FROM testimonials
        WHERE user_id = ? AND status = 'approved'
        ORDER BY revenue_attributed DESC
        LIMIT 5
        ''',
        (user_id,),
    )
    activity = load_activity(conn, user_id, limit=10)
    return summarize_dashboard(
        testimonials, revenue_events, widgets, top_drivers, activity, forms=forms, now=now,
    )


def load_activity(conn, user_id, limit=10, since=None):
    sql = 'SELECT * FROM activity_log WHERE user_id = ?'
    params = [user_id]
    if since is not None:
        sql += ' AND created_at > ?'
        params.append(format_timestamp(since))
    sql += ' ORDER BY created_at DESC LIMIT ?'
    params.append(int(limit))
    rows = _rows(conn, sql, params)
    for row in rows:
        row['metadata'] = _decode(row.get('metadata'), {})
    return rows


# ===== ANALYTICS =====


def _label_source(name):
    return name[:1].upper() + name[1:].replace('_', ' ')


def summarize_analytics(revenue_events, prev_revenue_events, testimonials, prev_testimonials,
                        widgets, top_performers):
    total_revenue = _amount_sum(revenue_events)
    prev_total_revenue = _amount_sum(prev_revenue_events)
    conversion_count = len(revenue_events)

    revenue_by_day: Dict[str, Dict[str, float]] = OrderedDict()
    for e in sorted(revenue_events, key=lambda e: e.get('attributed_at') or ''):
        ts = parse_timestamp(e.get('attributed_at'))
        if ts is None:
            continue
        bucket = revenue_by_day.setdefault(ts.date().isoformat(), {'revenue': 0.0, 'conversions': 0})
        bucket['revenue'] += float(e.get('amount') or 0)
        bucket['conversions'] += 1

    type_counts = Counter(t.get('type') or 'text' for t in testimonials)
    source_counts = Counter(t.get('source') or 'form' for t in testimonials)

    sentiment_counts = Counter(
        t.get('sentiment') for t in testimonials
        if t.get('sentiment') in ('positive', 'neutral', 'negative')
    )
    sentiment_total = sum(sentiment_counts.values())
    sentiment = (
        {
            name: int(round(sentiment_counts.get(name, 0) / sentiment_total * 100))
            for name in ('positive', 'neutral', 'negative')
        }
        if sentiment_total else {}
    )

    weeks: Dict[str, Dict[str, int]] = OrderedDict()
    for t in sorted(testimonials, key=lambda t: t.get('created_at') or ''):
        ts = parse_timestamp(t.get('created_at'))
        if ts is None:
            continue
        bucket = weeks.setdefault(_week_start(ts).date().isoformat(), {'forms': 0, 'sms': 0, 'ai': 0})
        if t.get('source') == 'sms':
            bucket['sms'] += 1
        elif t.get('source') == 'ai_interview':
            bucket['ai'] += 1
        else:
            bucket['forms'] += 1

    widget_rows = []
    for w in widgets:
        impressions = w.get('impressions') or 0
        clicks = w.get('clicks') or 0
        widget_rows.append({
            'id': w['id'],
            'name': w.get('name'),
            'type': w.get('type') or 'carousel',
            'impressions': impressions,
            'clicks': clicks,
            'ctr': round(clicks / impressions * 100, 1) if impressions else 0,
            'conversions': w.get('conversions') or 0,
            'revenue': float(w.get('revenue_attributed') or 0),
        })

    return {
        'total_revenue': total_revenue,
        'revenue_trend': trend_percent(total_revenue, prev_total_revenue),
        'conversion_count': conversion_count,
        'avg_order_value': int(round(total_revenue / conversion_count)) if conversion_count else 0,
        'revenue_chart': [
            {'date': day, 'revenue': int(round(v['revenue'])), 'conversions': v['conversions']}
            for day, v in revenue_by_day.items()
        ],
        'total_collected': len(testimonials),
        'collected_trend': trend_percent(len(testimonials), len(prev_testimonials)),
        'type_counts': {
            'text': type_counts.get('text', 0),
            'video': type_counts.get('video', 0),
            'audio': type_counts.get('audio', 0),
        },
        'sources': [
            {'source': name, 'name': _label_source(name), 'value': count}
            for name, count in source_counts.items()
        ],
        'sentiment': sentiment,
        'collection_chart': [{'week': week, **counts} for week, counts in weeks.items()],
        'widgets': widget_rows,
        'total_impressions': sum(w['impressions'] for w in widget_rows),
        'total_clicks': sum(w['clicks'] for w in widget_rows),
        'total_widget_conversions': sum(w['conversions'] for w in widget_rows),
        'top_performers': [
            {
                'rank': i + 1,
                'id': t['id'],
                'name': t.get('author_name'),
                'company': t.get('author_company') or '',
                'revenue': float(t.get('revenue_attributed') or 0),
            }
            for i, t in enumerate(top_performers)
        ],
        'has_revenue': bool(revenue_events),
        'has_testimonials': bool(testimonials),
    }


def load_analytics(conn, user_id, range_key=DEFAULT_RANGE, now=None):
    now = now or utcnow()
    if range_key != 'today' and range_key not in RANGE_DAYS:
        range_key = DEFAULT_RANGE
    start, end = date_range(range_key, now)
    prev_start, prev_end = previous_period(range_key, now)
    start_s, end_s = format_timestamp(start), format_timestamp(end)
    prev_start_s, prev_end_s = format_timestamp(prev_start), format_timestamp(prev_end)

    revenue_events = _rows(
        conn,
        '''
        SELECT amount, attributed_at FROM revenue_events
        WHERE user_id = ? AND attributed_at >= ? AND attributed_at <= ?
        ORDER BY attributed_at ASC
        ''',
        (user_id, start_s, end_s),
    )
    prev_revenue_events = _rows(
        conn,
        '''
        SELECT amount FROM revenue_events
        WHERE user_id = ? AND attributed_at >= ? AND attributed_at < ?
        ''',
        (user_id, prev_start_s, prev_end_s),
    )
    testimonials = _rows(
        conn,
        '''
        SELECT id, type, source, created_at, status, rating, sentiment FROM testimonials
        WHERE user_id = ? AND created_at >= ? AND created_at <= ?
        ''',
        (user_id, start_s, end_s),
    )
    prev_testimonials = _rows(
        conn,
        '''
        SELECT id FROM testimonials
        WHERE user_id = ? AND created_at >= ? AND created_at < ?
        ''',
        (user_id, prev_start_s, prev_end_s),
    )
    widgets = _rows(
        conn,
        '''
        SELECT id, name, type, impressions, clicks, conversions, revenue_attributed
        FROM widgets WHERE user_id = ?
        ''',
        (user_id,),
    )
    top_performers = _rows(
        conn,
        '''
        SELECT id, author_name, author_company, revenue_attributed FROM testimonials
        WHERE user_id = ? AND revenue_attributed IS NOT NULL AND revenue_attributed > 0
        ORDER BY revenue_attributed DESC
        LIMIT 5
        ''',
        (user_id,),
    )

    summary = summarize_analytics(
        revenue_events, prev_revenue_events, testimonials, prev_testimonials, widgets, top_performers,
    )
    summary['range'] = {'key': range_key, 'start': start_s, 'end': end_s}
    return summary


def load_report_data(conn, user_id, now=None):
    """Everything the PDF report renders, for the last 30 days and all time."""
    analytics = load_analytics(conn, user_id, DEFAULT_RANGE, now=now)
    dashboard = load_dashboard(conn, user_id, now=now)
    recent_events: List[dict] = _rows(
        conn,
        '''
        SELECT e.amount, e.currency, e.source, e.customer_email, e.attributed_at,
               t.author_name AS testimonial_author, w.name AS widget_name
        FROM revenue_events e
        LEFT JOIN testimonials t ON t.id = e.testimonial_id
        LEFT JOIN widgets w ON w.id = e.widget_id
        WHERE e.user_id = ?
        ORDER BY e.attributed_at DESC
        LIMIT 20
        ''',
        (user_id,),
    )
    return {'analytics': analytics, 'dashboard': dashboard, 'recent_events': recent_events}
