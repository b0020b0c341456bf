"""
Event normalizer - maps agent and GitHub webhook bodies to CanonicalEvent.

Pure: no I/O, no clock reads (received_at comes from the request).
Unknown or malformed-but-authentic events are kept as `unclassified` rather
than rejected; only bodies missing the fields needed to classify them at all
fail structural validation.
"""
import hashlib
import logging
from typing import Any, Optional

from pydantic import ValidationError

from src.models.webhook_credential import SOURCE_TYPE_GITHUB
from src.schemas.events import (
    CanonicalEvent,
    EventKind,
    PAYLOAD_MODELS,
    RawWebhookRequest,
    UnclassifiedPayload,
)
from src.schemas.webhook_payloads import AgentWebhookPayload, GITHUB_REQUIRED_FIELDS
from src.services.credentials import CredentialMatch
from src.utils.dedup import resolve_dedup_key
from src.utils.errors import ValidationFailure
from src.utils.timezone import parse_timestamp

logger = logging.getLogger(__name__)

MAX_EXTERNAL_ID_LENGTH = 200

AGENT_EVENT_KINDS: dict[str, EventKind] = {
    "task_started": EventKind.TASK_STARTED,
    "task_start": EventKind.TASK_STARTED,
    "code_commit": EventKind.CODE_COMMIT,
    "commit": EventKind.CODE_COMMIT,
    "test_execution": EventKind.TEST_EXECUTION,
    "test_run": EventKind.TEST_EXECUTION,
    "tests_executed": EventKind.TEST_EXECUTION,
    "task_completed": EventKind.TASK_COMPLETED,
    "task_complete": EventKind.TASK_COMPLETED,
    "blocker_identified": EventKind.BLOCKER_IDENTIFIED,
    "blocker": EventKind.BLOCKER_IDENTIFIED,
}

PULL_REQUEST_ACTIONS: dict[str, EventKind] = {
    "opened": EventKind.PULL_REQUEST_OPENED,
    "reopened": EventKind.PULL_REQUEST_REOPENED,
    "synchronize": EventKind.PULL_REQUEST_SYNCHRONIZED,
}


def _canonical_type(raw: str) -> str:
    return raw.strip().lower().replace(".", "_").replace("-", "_").replace(" ", "_")


def _clamp_external_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    text = str(value)
    if len(text) > MAX_EXTERNAL_ID_LENGTH:
        return "ext:" + hashlib.sha256(text.encode("utf-8")).hexdigest()
    return text


# ---------------------------------------------------------------------------
# Structural validation (called by ingress after authentication)
# ---------------------------------------------------------------------------

def validate_structure(source_type: str, headers: dict[str, str], body: Any) -> None:
    """Cheap checks that the body can be classified. Raises ValidationFailure."""
    if not isinstance(body, dict):
        raise ValidationFailure("Body must be a JSON object")

    if source_type == SOURCE_TYPE_GITHUB:
        event_name = headers.get("x-github-event", "")
        if not event_name:
            raise ValidationFailure("Missing X-GitHub-Event header")
        for required in GITHUB_REQUIRED_FIELDS.get(event_name, ()):
            if required not in body:
                raise ValidationFailure(f"Missing required field '{required}' for {event_name} event")
        return

    try:
        AgentWebhookPayload.model_validate(body)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise ValidationFailure(f"Invalid agent payload: {fields}") from e


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize(
    raw: RawWebhookRequest,
    body: dict,
    match: CredentialMatch,
    bucket_seconds: int = 300,
    correlation_id: Optional[str] = None,
) -> CanonicalEvent:
    """Convert an authenticated, structurally valid body into a CanonicalEvent."""
    if match.source_type == SOURCE_TYPE_GITHUB:
        kind, payload, occurred_raw, external_id = _from_github(raw.headers, body)
    else:
        kind, payload, occurred_raw, external_id = _from_agent(body)

    occurred_at = parse_timestamp(occurred_raw) or raw.received_at
    external_id = _clamp_external_id(external_id)
    dedup_key = resolve_dedup_key(
        external_id, match.source_id, kind.value, payload, occurred_at, bucket_seconds,
    )

    return CanonicalEvent(
        external_event_id=external_id,
        dedup_key=dedup_key,
        source_id=match.source_id,
        project_id=match.project_id,
        kind=kind,
        occurred_at=occurred_at,
        payload=payload,
        received_at=raw.received_at,
        attempt_count=0,
        available_at=raw.received_at,
        correlation_id=correlation_id,
    )


def _typed_or_unclassified(
    kind: EventKind,
    candidate: dict,
    original_type: str,
    raw_body: dict,
) -> tuple[EventKind, dict]:
    """Validate `candidate` against the kind's model; fall back to unclassified."""
    if kind == EventKind.UNCLASSIFIED:
        return kind, UnclassifiedPayload(original_type=original_type, raw=raw_body).model_dump(mode="json")

    try:
        model = PAYLOAD_MODELS[kind].model_validate(candidate)
        return kind, model.model_dump(mode="json", exclude_none=True)
    except ValidationError as e:
        logger.info("Payload for %s did not match its schema, storing as unclassified", kind.value)
        return EventKind.UNCLASSIFIED, UnclassifiedPayload(
            original_type=original_type,
            raw=raw_body,
            normalization_error=str(e)[:1000],
        ).model_dump(mode="json")


def _from_agent(body: dict) -> tuple[EventKind, dict, Any, Optional[str]]:
    agent = AgentWebhookPayload.model_validate(body)
    original_type = agent.event_type
    kind = AGENT_EVENT_KINDS.get(_canonical_type(original_type), EventKind.UNCLASSIFIED)

    candidate: dict[str, Any] = dict(agent.data)
    for key in ("task_id", "agent_id"):
        value = getattr(agent, key)
        if value is not None:
            candidate.setdefault(key, value)

    if kind == EventKind.CODE_COMMIT and "commits" not in candidate:
        sha = candidate.pop("sha", None) or candidate.pop("commit_sha", None)
        if sha:
            commit = {"sha": sha}
            for field_name in ("message", "author", "lines_added", "lines_deleted", "files_changed"):
                if field_name in candidate:
                    commit[field_name] = candidate.pop(field_name)
            commit["timestamp"] = agent.timestamp if isinstance(agent.timestamp, str) else None
            candidate["commits"] = [commit]

    kind, payload = _typed_or_unclassified(kind, candidate, original_type, body)

    external_id = agent.event_id
    if not external_id and kind == EventKind.CODE_COMMIT and len(payload["commits"]) == 1:
        external_id = f"commit:{payload['commits'][0]['sha']}"

    return kind, payload, agent.timestamp, external_id


def _from_github(headers: dict[str, str], body: dict) -> tuple[EventKind, dict, Any, Optional[str]]:
    event_name = headers.get("x-github-event", "")
    delivery_id = headers.get("x-github-delivery")
    action = body.get("action")
    original_type = f"{event_name}.{action}" if action else event_name

    if event_name == "pull_request":
        pr = body.get("pull_request") or {}
        merged = bool(pr.get("merged"))
        if action == "closed":
            kind = EventKind.PULL_REQUEST_MERGED if merged else EventKind.PULL_REQUEST_CLOSED
        else:
            kind = PULL_REQUEST_ACTIONS.get(action or "", EventKind.UNCLASSIFIED)

        candidate = {
            "repository": (body.get("repository") or {}).get("full_name"),
            "number": pr.get("number"),
            "action": action,
            "title": pr.get("title"),
            "author": (pr.get("user") or {}).get("login"),
            "head_branch": (pr.get("head") or {}).get("ref"),
            "merged": merged,
        }
        occurred = pr.get("merged_at") if kind == EventKind.PULL_REQUEST_MERGED else None
        occurred = occurred or pr.get("updated_at") or pr.get("created_at")
        kind, payload = _typed_or_unclassified(kind, candidate, original_type, body)
        return kind, payload, occurred, delivery_id

    if event_name == "push":
        commits = []
        for commit in body.get("commits") or []:
            author = commit.get("author") or {}
            commits.append({
                "sha": commit.get("id"),
                "message": (commit.get("message") or "")[:1000] or None,
                "author": author.get("username") or author.get("name"),
                "timestamp": commit.get("timestamp"),
            })
        kind = EventKind.CODE_COMMIT if commits else EventKind.UNCLASSIFIED
        candidate = {
            "commits": commits,
            "repository": (body.get("repository") or {}).get("full_name"),
            "ref": body.get("ref"),
        }
        occurred = (body.get("head_commit") or {}).get("timestamp")
        kind, payload = _typed_or_unclassified(kind, candidate, original_type, body)
        return kind, payload, occurred, delivery_id

    _, payload = _typed_or_unclassified(EventKind.UNCLASSIFIED, {}, original_type, body)
    return EventKind.UNCLASSIFIED, payload, None, delivery_id
