# models/ai_usage.py
from __future__ import annotations

import uuid

from sqlalchemy import Index, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin, UUIDPrimaryKey


class AiUsageEntry(Base, UUIDPrimaryKey, TimestampMixin):
    """One model invocation. Rows are appended, never updated."""

    __tablename__ = "ai_usage_entries"
    __table_args__ = (Index("ix_ai_usage_provider_created", "provider", "created_at"),)

    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    service: Mapped[str] = mapped_column(String(64), nullable=False)  # tagging | categorization | embedding
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    input_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
