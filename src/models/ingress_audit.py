"""
Ingress audit trail - every admit decision, accepted or rejected, and why.
Never holds the presented credential.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime
from sqlalchemy.dialects.postgresql import UUID
from src.database import Base

DECISION_ACCEPTED = "accepted"
DECISION_REJECTED = "rejected"


class IngressAuditRecord(Base):
    __tablename__ = "ingress_audit"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False, index=True)
    source_id = Column(String(100), nullable=False, index=True)
    decision = Column(String(20), nullable=False)  # accepted, rejected
    reason = Column(String(100), nullable=False)
    status_code = Column(Integer, nullable=False)
    payload_hash = Column(String(64), nullable=True)
    byte_size = Column(Integer, nullable=True)
    client_ip = Column(String(64), nullable=True)
    event_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    correlation_id = Column(String(64), nullable=True, index=True)
