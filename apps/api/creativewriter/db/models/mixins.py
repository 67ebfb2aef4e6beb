# apps/api/creativewriter/db/models/mixins.py
"""
Reusable SQLAlchemy mixins for CreativeWriter models.

Usage example:
    class MyModel(Base, UUIDMixin, TimestampMixin):
        ...
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column


def new_id() -> str:
    return str(uuid4())


class UUIDMixin:
    """
    UUIDv4 primary key stored as a 36-char string.
    Portable across PostgreSQL and SQLite (used in tests).
    """
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_id,
        comment="Unique identifier (UUIDv4)"
    )
