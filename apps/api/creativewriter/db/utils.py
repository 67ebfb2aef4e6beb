# apps/api/creativewriter/db/utils.py
"""
Utility helpers shared by models and services.
Contains the UTC clock and slug generation.
"""

import re
import unicodedata
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    All timestamps are stored naive-in-UTC so values read back from SQLite and
    PostgreSQL compare cleanly with values produced in Python.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def generate_slug(text: str, max_length: int = 100) -> str:
    """
    Generate URL-safe slug from text (e.g. plan name → slug).

    Example:
        generate_slug("Premium Plan!") → "premium-plan"
    """
    if not text:
        return ""

    # Normalize unicode → ASCII, remove accents
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")

    text = re.sub(r"[^a-z0-9]+", "-", text.lower())
    return text.strip("-")[:max_length]
