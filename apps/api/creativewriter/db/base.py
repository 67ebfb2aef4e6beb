# apps/api/creativewriter/db/base.py
"""
SQLAlchemy declarative base and metadata for CreativeWriter.
All models inherit from this Base class.

This file defines:
- The declarative Base (with a shared naming convention for constraints)
- Common timestamp columns via mixin pattern
"""

from datetime import datetime

from sqlalchemy import MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from creativewriter.db.utils import utcnow

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models in CreativeWriter.
    Every model declares an explicit __tablename__.
    """

    metadata = MetaData(naming_convention=NAMING_CONVENTION)

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{k}={v!r}" for k, v in self.__dict__.items() if not k.startswith("_")
        )
        return f"{self.__class__.__name__}({fields})"


# ────────────────────────────────────────────────
# Timestamp Mixin (use this instead of defining timestamps on Base)
# ────────────────────────────────────────────────
class TimestampMixin:
    """
    Mixin class that adds created_at and updated_at columns.
    Python-side defaults keep the values loaded on the instance after flush,
    so async code never triggers a lazy refresh.
    """

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="Record creation timestamp (UTC)"
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
        comment="Record last update timestamp (UTC)"
    )
