"""
Webhook credential store - issue, rotate, revoke, authenticate.

Tokens are random URL-safe strings handed out once. Only a peppered
HMAC-SHA256 digest is stored, so lookup is by digest and a database leak
does not expose usable tokens. Raw tokens are never logged.
"""
import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.project import Project
from src.models.webhook_credential import SOURCE_TYPES, WebhookCredential
from src.utils.errors import PermanentProcessingFailure, SourceConflict, ValidationFailure

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class CredentialMatch:
    credential_id: uuid.UUID
    source_id: str
    source_type: str
    project_id: uuid.UUID


def hash_token(token: str, pepper: Optional[str] = None) -> str:
    """Deterministic, peppered digest of a presented token."""
    if pepper is None:
        from src.config import get_settings
        pepper = get_settings().token_hash_pepper
    return hmac.new(pepper.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


async def authenticate(
    db: AsyncSession,
    source_id: str,
    presented_token: Optional[str],
) -> Optional[CredentialMatch]:
    """
    Resolve a presented bearer token to an active credential for `source_id`.

    Returns None for every failure mode (no token, unknown token, revoked,
    wrong source) so callers cannot tell them apart.
    """
    if not presented_token:
        return None

    digest = hash_token(presented_token)
    result = await db.execute(
        select(WebhookCredential).where(
            WebhookCredential.token_hash == digest,
            WebhookCredential.revoked_at.is_(None),
        )
    )
    credential = result.scalar_one_or_none()
    if credential is None:
        return None

    # Both comparisons constant-time; source mismatch is indistinguishable from a bad token
    hash_ok = hmac.compare_digest(credential.token_hash, digest)
    source_ok = hmac.compare_digest(credential.source_id.encode("utf-8"), source_id.encode("utf-8"))
    if not (hash_ok and source_ok):
        return None

    return CredentialMatch(
        credential_id=credential.id,
        source_id=credential.source_id,
        source_type=credential.source_type,
        project_id=credential.project_id,
    )


async def issue_credential(
    db: AsyncSession,
    project_id: uuid.UUID,
    source_id: str,
    source_type: str = "agent",
) -> tuple[WebhookCredential, str, bool]:
    """
    Create a new credential for (project, source), revoking the active one if any.
    Raises SourceConflict when another project has ever held `source_id`.

    Revocation and insert happen in the caller's transaction, so rotation is
    atomic. Returns (credential, plaintext_token, rotated).
    """
    if source_type not in SOURCE_TYPES:
        raise ValidationFailure(f"Unknown source_type '{source_type}'")
    if not source_id or len(source_id) > 100:
        raise ValidationFailure("source_id must be 1-100 characters")

    project = await db.get(Project, project_id)
    if project is None or project.deleted_at is not None:
        raise PermanentProcessingFailure(f"Project {str(project_id)[:8]} not found")

    # A source keeps its first owner, even once revoked: ledger keys omit the project
    owner = await db.execute(
        select(WebhookCredential.project_id)
        .where(
            WebhookCredential.source_id == source_id,
            WebhookCredential.project_id != project_id,
        )
        .limit(1)
    )
    if owner.scalar_one_or_none() is not None:
        raise SourceConflict(f"source_id '{source_id}' belongs to another project")

    now = datetime.now(timezone.utc)
    revoked = await db.execute(
        update(WebhookCredential)
        .where(
            WebhookCredential.project_id == project_id,
            WebhookCredential.source_id == source_id,
            WebhookCredential.revoked_at.is_(None),
        )
        .values(revoked_at=now)
        .execution_options(synchronize_session=False)
    )
    rotated = (revoked.rowcount or 0) > 0

    token = generate_token()
    credential = WebhookCredential(
        project_id=project_id,
        source_id=source_id,
        source_type=source_type,
        token_hash=hash_token(token),
        created_at=now,
    )
    db.add(credential)
    await db.flush()

    logger.info(
        "Webhook credential %s: source=%s project=%s id=%s",
        "rotated" if rotated else "issued",
        source_id, str(project_id)[:8], str(credential.id)[:8],
        extra={"source_id": source_id, "project_id": str(project_id)},
    )
    return credential, token, rotated


async def revoke_credential(
    db: AsyncSession,
    project_id: uuid.UUID,
    source_id: str,
) -> bool:
    """Revoke the active credential for (project, source). Returns False if none."""
    result = await db.execute(
        update(WebhookCredential)
        .where(
            WebhookCredential.project_id == project_id,
            WebhookCredential.source_id == source_id,
            WebhookCredential.revoked_at.is_(None),
        )
        .values(revoked_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    revoked = (result.rowcount or 0) > 0
    if revoked:
        logger.info(
            "Webhook credential revoked: source=%s project=%s",
            source_id, str(project_id)[:8],
            extra={"source_id": source_id, "project_id": str(project_id)},
        )
    return revoked
