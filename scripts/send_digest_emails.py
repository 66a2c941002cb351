#!/usr/bin/env python3
"""Email each workspace owner a digest of testimonials waiting for review.
Run daily from cron after exporting env vars.
"""

from __future__ import annotations

from collections import defaultdict

from app import app, db_connect
from services.email_service import send_pending_digest_email

MAX_ITEMS_PER_DIGEST = 10


def pending_by_owner():
    conn = db_connect(); cur = conn.cursor()
    cur.execute(
        """
        SELECT u.email, u.full_name, t.author_name, t.rating, t.content
        FROM testimonials t
        JOIN users u ON u.id = t.user_id
        WHERE t.status = 'pending' AND u.role = 'admin'
        ORDER BY t.created_at DESC
        """
    )
    rows = cur.fetchall(); conn.close()

    grouped = defaultdict(list)
    names = {}
    for email, full_name, author_name, rating, content in rows:
        names[email] = full_name or email
        grouped[email].append({
            'author_name': author_name,
            'rating': rating,
            'excerpt': (content or '')[:160],
        })
    return grouped, names


def send_pending_digests():
    grouped, names = pending_by_owner()
    sent = 0
    for email, pending in grouped.items():
        if send_pending_digest_email(email, names[email], pending[:MAX_ITEMS_PER_DIGEST], total=len(pending)):
            sent += 1
    return sent


if __name__ == '__main__':
    with app.app_context():
        sent = send_pending_digests()
        print(f'Digest emails sent: {sent}')
