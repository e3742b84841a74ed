from __future__ import annotations

import math
from datetime import datetime, timezone


def as_utc(value: datetime | None) -> datetime | None:
    """Coerce a datetime to aware UTC; naive values are assumed to be UTC already.

    SQLite hands back naive datetimes even for ``DateTime(timezone=True)``
    columns, so everything read from the store goes through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds()))


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)
