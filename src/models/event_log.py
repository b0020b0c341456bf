"""
Event log - receipt record for every applied event, including unclassified ones.
Used for auditing what the pipeline did with each accepted webhook.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base


class EventLog(Base):
    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False
    )
    event_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)

    # Event details
    action: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # task_started, commit_recorded, pull_request_merged, event_received, etc.
    status: Mapped[str] = mapped_column(
        String(20), default="applied"
    )  # applied, recorded_only
    handler: Mapped[Optional[str]] = mapped_column(String(50))
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    message: Mapped[Optional[str]] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_event_logs_project_id", "project_id"),
        Index("ix_event_logs_event_id", "event_id"),
        Index("ix_event_logs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.action} status={self.status}>"
