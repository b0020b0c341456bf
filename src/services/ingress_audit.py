"""
Ingress audit trail - records every admit decision and its reason.

Accepted decisions are added to the enqueue transaction so the audit row and
the queued event commit together. Rejections are written on their own
session, best-effort: a failing audit write never changes the response.
"""
import hashlib
import logging
import uuid
from typing import Optional

from src.database import async_session_factory
from src.models.ingress_audit import DECISION_ACCEPTED, DECISION_REJECTED, IngressAuditRecord
from src.schemas.events import RawWebhookRequest
from src.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)


def compute_payload_hash(body: bytes) -> Optional[str]:
    """SHA-256 hex digest of the raw body, None when nothing was read."""
    if not body:
        return None
    return hashlib.sha256(body).hexdigest()


def build_audit_record(
    raw: RawWebhookRequest,
    decision: str,
    reason: str,
    status_code: int,
    event_id: Optional[uuid.UUID] = None,
) -> IngressAuditRecord:
    return IngressAuditRecord(
        received_at=raw.received_at,
        source_id=raw.source_id[:100],
        decision=decision,
        reason=reason[:100],
        status_code=status_code,
        payload_hash=compute_payload_hash(raw.body_bytes),
        byte_size=raw.byte_size or None,
        client_ip=(raw.client_ip or "")[:64] or None,
        event_id=event_id,
        correlation_id=get_correlation_id(),
    )


def accepted_record(
    raw: RawWebhookRequest,
    event_id: Optional[uuid.UUID] = None,
    reason: str = "enqueued",
) -> IngressAuditRecord:
    """Audit row for the enqueue transaction."""
    return build_audit_record(raw, DECISION_ACCEPTED, reason, 200, event_id=event_id)


async def record_decision(raw: RawWebhookRequest, decision: str, reason: str, status_code: int) -> None:
    """Persist a decision on a separate session. Never raises."""
    try:
        async with async_session_factory() as db:
            db.add(build_audit_record(raw, decision, reason, status_code))
            await db.commit()
    except Exception as e:
        logger.warning("Failed to write ingress audit record: %s", str(e))


async def record_rejection(raw: RawWebhookRequest, reason: str, status_code: int) -> None:
    logger.warning(
        "Webhook rejected: source=%s status=%d reason=%s ip=%s",
        raw.source_id[:40], status_code, reason, raw.client_ip,
        extra={"source_id": raw.source_id, "error_code": reason},
    )
    await record_decision(raw, DECISION_REJECTED, reason, status_code)
