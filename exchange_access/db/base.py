from datetime import datetime, timezone

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models. Datetime columns are timezone-aware."""
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


def as_utc(value: datetime | None) -> datetime | None:
    """Treat a naive datetime read back from the database as UTC."""
    # SQLite drops tzinfo on DateTime(timezone=True) columns
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
