"""
Durable event queue - one row per CanonicalEvent.

State machine: queued -> leased -> (acked | queued with backoff | dead_lettered).
A lease is `status=leased` plus `available_at` in the future; when it passes,
the row is leasable again without anyone releasing it. `lease_version` is the
compare-and-set guard for claims; `lease_token` guards ack/fail.
Acked rows stay in the table as the audit record.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

STATUS_QUEUED = "queued"
STATUS_LEASED = "leased"
STATUS_ACKED = "acked"
STATUS_DEAD_LETTERED = "dead_lettered"
ACTIVE_STATUSES = (STATUS_QUEUED, STATUS_LEASED)


class QueuedEvent(Base):
    __tablename__ = "event_queue"

    event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_event_id: Mapped[Optional[str]] = mapped_column(String(200))
    dedup_key: Mapped[str] = mapped_column(String(200), nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=STATUS_QUEUED
    )  # queued, leased, acked, dead_lettered
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    lease_owner: Mapped[Optional[str]] = mapped_column(String(100))
    lease_token: Mapped[Optional[str]] = mapped_column(String(32))
    lease_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_error: Mapped[Optional[str]] = mapped_column(Text)
    first_failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    acked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64))

    __table_args__ = (
        Index("ix_event_queue_leasable", "status", "available_at"),
        Index("ix_event_queue_dedup", "source_id", "dedup_key"),
        Index("ix_event_queue_project", "project_id"),
    )

    def __repr__(self) -> str:
        return f"<QueuedEvent {self.kind} ({self.status}, attempt {self.attempt_count})>"
