"""
Inbound webhook body schemas, before normalization.
GitHub payloads are large and versioned, so they are read as dicts and only
the fields the normalizer needs are checked.
"""
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class AgentWebhookPayload(BaseModel):
    """Lifecycle notification sent by an AI coding agent."""
    model_config = ConfigDict(extra="allow")

    event_type: str = Field(min_length=1, max_length=100)
    event_id: Optional[str] = None
    timestamp: Optional[Any] = None  # ISO-8601 string or epoch seconds
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


GITHUB_REQUIRED_FIELDS = {
    "pull_request": ("action", "pull_request", "repository"),
    "push": ("commits", "repository"),
}
