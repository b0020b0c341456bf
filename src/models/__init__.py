"""
Database models - import all models here so Alembic can discover them.
"""
from src.models.project import Project
from src.models.webhook_credential import WebhookCredential
from src.models.queued_event import QueuedEvent
from src.models.idempotency_record import IdempotencyRecord
from src.models.dead_letter_entry import DeadLetterEntry
from src.models.ingress_audit import IngressAuditRecord
from src.models.agent_task import AgentTask
from src.models.metrics import CommitMetric, TestRun
from src.models.pull_request import PullRequest
from src.models.event_log import EventLog

__all__ = [
    "Project",
    "WebhookCredential",
    "QueuedEvent",
    "IdempotencyRecord",
    "DeadLetterEntry",
    "IngressAuditRecord",
    "AgentTask",
    "CommitMetric",
    "TestRun",
    "PullRequest",
    "EventLog",
]
