"""
Webhook credentials - per-project, per-source bearer tokens.
Only an HMAC-SHA256 hash of the token is stored; lookup is by hash.
A source_id belongs to one project for good; at most one active
(revoked_at IS NULL) credential per source.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from src.database import Base

SOURCE_TYPE_AGENT = "agent"
SOURCE_TYPE_GITHUB = "github"
SOURCE_TYPES = (SOURCE_TYPE_AGENT, SOURCE_TYPE_GITHUB)


class WebhookCredential(Base):
    __tablename__ = "webhook_credentials"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    source_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SOURCE_TYPE_AGENT
    )  # agent, github
    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_webhook_credentials_source_id", "source_id"),
        Index(
            "uq_webhook_credentials_active",
            "source_id",
            unique=True,
            postgresql_where=text("revoked_at IS NULL"),
            sqlite_where=text("revoked_at IS NULL"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    def __repr__(self) -> str:
        state = "active" if self.is_active else "revoked"
        return f"<WebhookCredential {self.source_id} ({state})>"
