"""
Dead-letter entries - events that exhausted their retry budget or failed permanently.
Kept for audit; only the admin API moves them to replayed/discarded.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Boolean, Column, String, Integer, DateTime, Text, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from src.database import Base

DL_PENDING_REVIEW = "pending_review"
DL_REPLAYED = "replayed"
DL_DISCARDED = "discarded"
DL_STATUSES = (DL_PENDING_REVIEW, DL_REPLAYED, DL_DISCARDED)


class DeadLetterEntry(Base):
    __tablename__ = "dead_letter_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(
        UUID(as_uuid=True), ForeignKey("event_queue.event_id"), nullable=False, unique=True
    )
    last_error = Column(Text, nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    permanent = Column(Boolean, nullable=False, default=False)  # retries skipped
    first_failed_at = Column(DateTime(timezone=True), nullable=False)
    last_failed_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        String(20), nullable=False, default=DL_PENDING_REVIEW, index=True
    )  # pending_review, replayed, discarded
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
