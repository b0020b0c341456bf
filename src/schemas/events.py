"""
Canonical event envelope and the per-kind payload variants.

Payloads are stored as JSON, but every known kind has a model; handlers
receive the parsed model, never the raw dict. Unrecognised kinds carry the
raw structured payload in UnclassifiedPayload.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class EventKind(str, Enum):
    # Agent lifecycle
    TASK_STARTED = "task_started"
    CODE_COMMIT = "code_commit"
    TEST_EXECUTION = "test_execution"
    TASK_COMPLETED = "task_completed"
    BLOCKER_IDENTIFIED = "blocker_identified"

    # Source control
    PULL_REQUEST_OPENED = "pull_request_opened"
    PULL_REQUEST_REOPENED = "pull_request_reopened"
    PULL_REQUEST_SYNCHRONIZED = "pull_request_synchronized"
    PULL_REQUEST_CLOSED = "pull_request_closed"
    PULL_REQUEST_MERGED = "pull_request_merged"

    UNCLASSIFIED = "unclassified"


TASK_LIFECYCLE_KINDS = frozenset({
    EventKind.TASK_STARTED,
    EventKind.TASK_COMPLETED,
    EventKind.BLOCKER_IDENTIFIED,
})

PULL_REQUEST_KINDS = frozenset({
    EventKind.PULL_REQUEST_OPENED,
    EventKind.PULL_REQUEST_REOPENED,
    EventKind.PULL_REQUEST_SYNCHRONIZED,
    EventKind.PULL_REQUEST_CLOSED,
    EventKind.PULL_REQUEST_MERGED,
})


# --- Payload variants ---

class TaskStartedPayload(BaseModel):
    task_id: str = Field(min_length=1, max_length=200)
    title: Optional[str] = Field(default=None, max_length=500)
    agent_id: Optional[str] = Field(default=None, max_length=100)


class TaskCompletedPayload(BaseModel):
    task_id: str = Field(min_length=1, max_length=200)
    title: Optional[str] = Field(default=None, max_length=500)
    agent_id: Optional[str] = Field(default=None, max_length=100)
    summary: Optional[str] = None


class BlockerPayload(BaseModel):
    task_id: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    severity: str = "medium"  # low, medium, high, critical
    agent_id: Optional[str] = Field(default=None, max_length=100)


class CommitInfo(BaseModel):
    sha: str = Field(min_length=7, max_length=64)
    message: Optional[str] = None
    author: Optional[str] = None
    timestamp: Optional[str] = None
    lines_added: Optional[int] = Field(default=None, ge=0)
    lines_deleted: Optional[int] = Field(default=None, ge=0)
    files_changed: Optional[int] = Field(default=None, ge=0)


class CodeCommitPayload(BaseModel):
    commits: list[CommitInfo] = Field(min_length=1)
    task_id: Optional[str] = Field(default=None, max_length=200)
    repository: Optional[str] = None
    ref: Optional[str] = None
    agent_id: Optional[str] = None


class TestExecutionPayload(BaseModel):
    __test__ = False  # not a pytest class

    task_id: Optional[str] = Field(default=None, max_length=200)
    total: int = Field(ge=0)
    passed: int = Field(ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    coverage_percent: Optional[float] = Field(default=None, ge=0, le=100)
    duration_ms: Optional[int] = Field(default=None, ge=0)
    agent_id: Optional[str] = None

    @model_validator(mode="after")
    def _counts_fit_total(self):
        if self.passed + self.failed + self.skipped > self.total:
            raise ValueError("passed + failed + skipped exceeds total")
        return self


class PullRequestPayload(BaseModel):
    repository: str = Field(min_length=1)
    number: int = Field(ge=1)
    action: str
    title: Optional[str] = None
    author: Optional[str] = None
    head_branch: Optional[str] = None
    merged: bool = False


class UnclassifiedPayload(BaseModel):
    original_type: str
    raw: dict[str, Any]
    normalization_error: Optional[str] = None


PAYLOAD_MODELS: dict[EventKind, type[BaseModel]] = {
    EventKind.TASK_STARTED: TaskStartedPayload,
    EventKind.TASK_COMPLETED: TaskCompletedPayload,
    EventKind.BLOCKER_IDENTIFIED: BlockerPayload,
    EventKind.CODE_COMMIT: CodeCommitPayload,
    EventKind.TEST_EXECUTION: TestExecutionPayload,
    EventKind.UNCLASSIFIED: UnclassifiedPayload,
    **{kind: PullRequestPayload for kind in PULL_REQUEST_KINDS},
}


def parse_payload(kind: str, payload: dict) -> BaseModel:
    """Rebuild the typed payload for a stored event."""
    model = PAYLOAD_MODELS.get(EventKind(kind), UnclassifiedPayload)
    return model.model_validate(payload)


# --- Envelopes ---

@dataclass
class RawWebhookRequest:
    """Transient view of one inbound HTTP request; never persisted."""
    source_id: str
    received_at: datetime
    headers: dict[str, str]
    body_bytes: bytes = b""
    byte_size: int = 0
    client_ip: Optional[str] = None
    content_type: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class CanonicalEvent(BaseModel):
    """Durable unit of work produced by the normalizer."""
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    external_event_id: Optional[str] = None
    dedup_key: str
    source_id: str
    project_id: uuid.UUID
    kind: EventKind
    occurred_at: datetime
    payload: dict[str, Any]
    received_at: datetime
    attempt_count: int = 0
    available_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
