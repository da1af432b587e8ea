# core/utils.py
from __future__ import annotations
from typing import Optional, Union
from datetime import datetime, timezone, timedelta

from dateutil import parser as date_parser

BANGKOK_TZ = timezone(timedelta(hours=7))

def now_utc() -> datetime:
    return datetime.now(timezone.utc)

def to_utc(dt: datetime, naive_tz: timezone = timezone.utc) -> datetime:
    """Convert to aware UTC. Naive values are assumed to be in naive_tz."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=naive_tz)
    return dt.astimezone(timezone.utc)

def parse_iso(value: Union[str, datetime, None], naive_tz: timezone = timezone.utc) -> Optional[datetime]:
    """Parse ISO-8601 text (or pass through a datetime / Firestore timestamp) to aware UTC.
    Returns None when value is empty or unparseable.
    """
    if value is None or value == "":
        return None
    if hasattr(value, "to_datetime"):
        value = value.to_datetime()
    if isinstance(value, datetime):
        return to_utc(value, naive_tz)
    if not isinstance(value, str):
        return None
    try:
        dt = date_parser.isoparse(value.strip())
    except (ValueError, OverflowError):
        return None
    return to_utc(dt, naive_tz)

def log_ctx(**kwargs) -> str:
    parts = []
    for k, v in kwargs.items():
        if v is not None and v != "":
            parts.append(f"{k}={v}")
    return " ".join(parts)
