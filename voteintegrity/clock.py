# voteintegrity/clock.py

from datetime import datetime, timezone


def utcnow():
    """Naive UTC now, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_isoformat(moment=None):
    return (moment or utcnow()).isoformat(timespec='microseconds') + 'Z'
