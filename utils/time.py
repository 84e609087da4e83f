# utils/time.py
from datetime import datetime, timezone
from typing import Optional, Union


def utcnow() -> datetime:
     """Naive UTC timestamp, the form stored in DateTime columns."""
     return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[Union[str, int, float, datetime]]) -> Optional[datetime]:
     """
     Normalize a gateway timestamp to naive UTC.

     Accepts ISO-8601 strings (with or without offset), unix seconds,
     or datetime objects. Returns None for empty input.
     """
     if value is None or value == "" or value == 0:
          return None
     if isinstance(value, (int, float)):
          return datetime.fromtimestamp(value, timezone.utc).replace(tzinfo=None)
     if isinstance(value, str):
          value = datetime.fromisoformat(value.replace("Z", "+00:00"))
     if value.tzinfo is not None:
          value = value.astimezone(timezone.utc).replace(tzinfo=None)
     return value
