from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session


def now_utc(db: Optional[Session] = None) -> datetime:
    # SQLite (used in tests) stores timezone-aware datetimes as naive values.
    # Use a naive UTC "now" there to avoid naive/aware comparison crashes.
    bind = getattr(db, "bind", None) if db is not None else None
    if bind is not None and bind.dialect.name == "sqlite":
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)
