"""SQLAlchemy declarative base and common utilities."""

import secrets
from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_id() -> str:
    """Return a new 24-character hex document id."""
    return secrets.token_hex(12)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class DocumentIdMixin:
    """Primary key as a 24-character hex string.

    Ids of this shape can be quoted in free text (payment memos) and parsed
    back unambiguously.
    """

    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=generate_id)


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
