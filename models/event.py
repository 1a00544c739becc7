# models/event.py
from __future__ import annotations

import uuid

from sqlalchemy import String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, JSONType, TimestampMixin, UUIDPrimaryKey


class Event(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "events"

    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(16), default="info")  # debug | info | warning | error | critical
    source: Mapped[str | None] = mapped_column(String(128), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)

    # Set for events raised on behalf of a job
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    trace_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
