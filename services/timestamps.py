"""UTC timestamp helpers shared by the routes and services.

Timestamps are stored as fixed-width ISO 8601 strings so that SQLite's text
comparison orders them chronologically.
"""

from datetime import datetime, timezone

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%f+00:00'


def utcnow():
    return datetime.now(timezone.utc)


def format_timestamp(value):
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def utcnow_iso():
    return format_timestamp(utcnow())


def parse_timestamp(value):
    """Parse a stored or client-supplied timestamp into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
