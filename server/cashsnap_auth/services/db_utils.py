from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.orm import Session


@contextmanager
def transaction(db: Session):
    """Commit on success, roll back and re-raise on any error."""
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for DateTime(timezone=True); everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
