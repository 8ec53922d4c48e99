"""Shared column groups for reversible records.

Every entity that can be voided embeds the same three columns and reads
them through `is_active`, which works on instances and inside queries:

    select(Cheque).where(Cheque.is_active)
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VoidableMixin:
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    voided_by: Mapped[str | None] = mapped_column(String(100))
    void_reason: Mapped[str | None] = mapped_column(Text)

    @hybrid_property
    def is_active(self) -> bool:
        return self.voided_at is None

    @is_active.expression
    def is_active(cls):
        return cls.voided_at.is_(None)

    def mark_voided(self, actor: str, reason: str) -> None:
        self.voided_at = utcnow()
        self.voided_by = actor
        self.void_reason = reason


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
