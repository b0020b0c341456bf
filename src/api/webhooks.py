"""
Webhook ingress - POST /webhooks/{source_id} for agents and GitHub.

Admission order (cheapest first):
1. Rate limiting (IP + source), before authentication
2. Declared Content-Length against the body ceiling
3. Bearer token authentication
4. Capped body read, content type, JSON parse, required fields
5. Normalize and durably enqueue, then answer 200

The response only waits for the queue write, never for handlers. Every
decision lands in the ingress_audit table.
"""
import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request

from src.config import get_settings
from src.database import async_session_factory
from src.models.ingress_audit import DECISION_ACCEPTED
from src.models.webhook_credential import SOURCE_TYPE_GITHUB
from src.schemas.api_responses import WebhookAcceptedResponse
from src.schemas.events import RawWebhookRequest
from src.services.credentials import CredentialMatch, authenticate
from src.services.event_queue import enqueue, notify_workers
from src.services.ingress_audit import accepted_record, record_decision, record_rejection
from src.services.normalizer import normalize, validate_structure
from src.utils.alerting import AlertType, send_alert
from src.utils.errors import (
    AuthenticationFailure,
    PayloadTooLarge,
    PipelineError,
    RateLimited,
    ValidationFailure,
)
from src.utils.logging import get_correlation_id
from src.utils.metrics import Timer
from src.utils.rate_limiter import check_webhook_rate_limits
from src.utils.timezone import utcnow

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

JSON_CONTENT_TYPES = ("application/json",)
MIN_ENQUEUE_SECONDS = 0.5

STATUS_BY_ERROR = {
    RateLimited: 429,
    PayloadTooLarge: 413,
    AuthenticationFailure: 401,
    ValidationFailure: 400,
}


def _presented_token(headers: dict[str, str]) -> Optional[str]:
    """Bearer token from Authorization, falling back to X-Webhook-Token."""
    auth = headers.get("authorization", "")
    scheme, _, value = auth.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return headers.get("x-webhook-token") or None


def _check_declared_length(headers: dict[str, str], max_bytes: int) -> None:
    declared = headers.get("content-length")
    if declared is None:
        return
    try:
        length = int(declared)
    except ValueError:
        raise ValidationFailure("Invalid Content-Length header")
    if length > max_bytes:
        raise PayloadTooLarge(f"Body of {length} bytes exceeds {max_bytes}")


async def _read_capped_body(request: Request, max_bytes: int) -> bytes:
    """Stream the body, stopping as soon as it passes the ceiling."""
    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise PayloadTooLarge(f"Body exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _parse_json_body(raw: RawWebhookRequest) -> Any:
    media_type = (raw.content_type or "").split(";")[0].strip().lower()
    if media_type not in JSON_CONTENT_TYPES:
        raise ValidationFailure(f"Unsupported content type '{media_type or 'missing'}'")
    if not raw.body_bytes:
        raise ValidationFailure("Empty body")
    try:
        return json.loads(raw.body_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationFailure(f"Malformed JSON: {e}") from e


def _http_error(error: PipelineError) -> HTTPException:
    status_code = next(
        (code for error_type, code in STATUS_BY_ERROR.items() if isinstance(error, error_type)),
        400,
    )
    if status_code == 401:
        # Unknown source, revoked credential and bad token look identical
        return HTTPException(status_code=401, detail="Invalid credentials")
    if status_code == 429:
        return HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(getattr(error, "retry_after", None) or 60)},
        )
    return HTTPException(status_code=status_code, detail=str(error))


async def _admit(request: Request, raw: RawWebhookRequest) -> tuple[CredentialMatch, Any]:
    """Run every admission check. Raises a PipelineError on rejection."""
    settings = get_settings()

    allowed, retry_after = await check_webhook_rate_limits(raw.client_ip or "unknown", raw.source_id)
    if not allowed:
        raise RateLimited(retry_after or settings.webhook_rate_window_seconds)

    _check_declared_length(raw.headers, settings.webhook_max_body_bytes)

    async with async_session_factory() as db:
        match = await authenticate(db, raw.source_id, _presented_token(raw.headers))
    if match is None:
        raise AuthenticationFailure("Invalid credentials")

    raw.body_bytes = await _read_capped_body(request, settings.webhook_max_body_bytes)
    raw.byte_size = len(raw.body_bytes)

    body = _parse_json_body(raw)
    validate_structure(match.source_type, raw.headers, body)
    return match, body


@router.post("/{source_id}", response_model=WebhookAcceptedResponse)
async def receive_webhook(source_id: str, request: Request):
    """
    Accept one webhook delivery. 200 means the event is durably queued and
    will be retried until applied or dead-lettered.
    """
    timer = Timer().start()
    settings = get_settings()
    headers = {key.lower(): value for key, value in request.headers.items()}
    raw = RawWebhookRequest(
        source_id=source_id,
        received_at=utcnow(),
        headers=headers,
        client_ip=request.client.host if request.client else "unknown",
        content_type=headers.get("content-type"),
    )

    try:
        match, body = await _admit(request, raw)
    except PipelineError as e:
        http_error = _http_error(e)
        await record_rejection(raw, e.error_code, http_error.status_code)
        raise http_error

    if match.source_type == SOURCE_TYPE_GITHUB and headers.get("x-github-event") == "ping":
        await record_decision(raw, DECISION_ACCEPTED, "ping", 200)
        return WebhookAcceptedResponse(status="pong")

    event = normalize(
        raw,
        body,
        match,
        bucket_seconds=settings.dedup_time_bucket_seconds,
        correlation_id=get_correlation_id(),
    )

    async def _persist() -> None:
        async with async_session_factory() as db:
            await enqueue(db, event, max_attempts=settings.queue_max_attempts)
            db.add(accepted_record(raw, event.event_id))
            await db.commit()

    budget = max(timer.remaining_seconds(settings.ingress_budget_seconds), MIN_ENQUEUE_SECONDS)
    try:
        await asyncio.wait_for(_persist(), timeout=budget)
    except Exception as e:
        error = "timeout" if isinstance(e, asyncio.TimeoutError) else type(e).__name__
        logger.error(
            "Enqueue failed for source %s after %dms: %s",
            source_id[:40], timer.elapsed_ms, error,
            extra={"source_id": source_id, "project_id": str(match.project_id), "error_code": "enqueue_failed"},
        )
        await record_rejection(raw, "enqueue_failed", 500)
        await send_alert(AlertType.ENQUEUE_FAILED, f"Enqueue failed for source {source_id[:40]}: {error}")
        raise HTTPException(status_code=500, detail="Event could not be queued, retry later")

    await notify_workers(event.event_id)

    logger.info(
        "Webhook accepted: source=%s kind=%s event=%s in %dms",
        source_id[:40], event.kind.value, str(event.event_id)[:8], timer.stop(),
        extra={"source_id": source_id, "project_id": str(match.project_id), "event_id": str(event.event_id)},
    )
    return WebhookAcceptedResponse(event_id=str(event.event_id), kind=event.kind.value)
