"""
Tests for src/services/credentials.py - issue, rotate, revoke, authenticate.
"""
import uuid

import pytest
from sqlalchemy import select

from src.models.project import Project
from src.models.webhook_credential import WebhookCredential
from src.services.credentials import (
    authenticate,
    generate_token,
    hash_token,
    issue_credential,
    revoke_credential,
)
from src.utils.errors import PermanentProcessingFailure, SourceConflict, ValidationFailure
from src.utils.timezone import utcnow


class TestHashToken:
    def test_deterministic(self):
        assert hash_token("abc", pepper="p") == hash_token("abc", pepper="p")

    def test_pepper_changes_digest(self):
        assert hash_token("abc", pepper="p1") != hash_token("abc", pepper="p2")

    def test_digest_is_hex_sha256(self):
        assert len(hash_token("abc", pepper="p")) == 64

    def test_generated_tokens_are_unique(self):
        assert generate_token() != generate_token()


class TestIssueCredential:
    async def test_issue_stores_only_hash(self, db, project):
        credential, token, rotated = await issue_credential(db, project.id, "agent-1")
        await db.commit()

        assert rotated is False
        assert credential.token_hash == hash_token(token)
        assert token not in credential.token_hash
        assert credential.source_type == "agent"

    async def test_rotation_revokes_previous(self, db, project):
        first, first_token, _ = await issue_credential(db, project.id, "agent-1")
        await db.commit()
        second, second_token, rotated = await issue_credential(db, project.id, "agent-1")
        await db.commit()

        assert rotated is True
        assert await authenticate(db, "agent-1", first_token) is None
        match = await authenticate(db, "agent-1", second_token)
        assert match is not None
        assert match.credential_id == second.id

        result = await db.execute(
            select(WebhookCredential).where(WebhookCredential.revoked_at.is_(None))
        )
        assert len(result.scalars().all()) == 1

    async def test_unknown_source_type_rejected(self, db, project):
        with pytest.raises(ValidationFailure):
            await issue_credential(db, project.id, "agent-1", source_type="gitlab")

    async def test_empty_source_id_rejected(self, db, project):
        with pytest.raises(ValidationFailure):
            await issue_credential(db, project.id, "")

    async def test_missing_project(self, db):
        with pytest.raises(PermanentProcessingFailure):
            await issue_credential(db, uuid.uuid4(), "agent-1")

    async def test_deleted_project(self, db):
        gone = Project(name="Old", deleted_at=utcnow())
        db.add(gone)
        await db.commit()
        with pytest.raises(PermanentProcessingFailure):
            await issue_credential(db, gone.id, "agent-1")

    async def test_source_owned_by_other_project_rejected(self, db, project):
        other = Project(name="Billing revamp", repository="acme/billing")
        db.add(other)
        await db.commit()
        await issue_credential(db, project.id, "agent-1")
        await db.commit()

        with pytest.raises(SourceConflict):
            await issue_credential(db, other.id, "agent-1")

    async def test_source_stays_with_owner_after_revoke(self, db, project):
        other = Project(name="Billing revamp", repository="acme/billing")
        db.add(other)
        await db.commit()
        await issue_credential(db, project.id, "agent-1")
        await revoke_credential(db, project.id, "agent-1")
        await db.commit()

        with pytest.raises(SourceConflict):
            await issue_credential(db, other.id, "agent-1")

        _, _, rotated = await issue_credential(db, project.id, "agent-1")
        assert rotated is False

    async def test_distinct_sources_per_project(self, db, project):
        other = Project(name="Billing revamp", repository="acme/billing")
        db.add(other)
        await db.commit()

        first, _, _ = await issue_credential(db, project.id, "agent-1")
        second, _, _ = await issue_credential(db, other.id, "agent-2")
        await db.commit()

        assert first.project_id == project.id
        assert second.project_id == other.id


class TestAuthenticate:
    async def test_valid_token(self, db, project):
        _, token, _ = await issue_credential(db, project.id, "agent-1")
        await db.commit()

        match = await authenticate(db, "agent-1", token)
        assert match is not None
        assert match.project_id == project.id
        assert match.source_type == "agent"

    async def test_missing_token(self, db, project):
        assert await authenticate(db, "agent-1", None) is None
        assert await authenticate(db, "agent-1", "") is None

    async def test_unknown_token(self, db, project):
        await issue_credential(db, project.id, "agent-1")
        await db.commit()
        assert await authenticate(db, "agent-1", "not-a-real-token") is None

    async def test_token_for_other_source(self, db, project):
        _, token, _ = await issue_credential(db, project.id, "agent-1")
        await db.commit()
        assert await authenticate(db, "agent-2", token) is None

    async def test_revoked_token(self, db, project):
        _, token, _ = await issue_credential(db, project.id, "agent-1")
        await db.commit()

        assert await revoke_credential(db, project.id, "agent-1") is True
        await db.commit()
        assert await authenticate(db, "agent-1", token) is None


class TestRevokeCredential:
    async def test_revoke_without_active_credential(self, db, project):
        assert await revoke_credential(db, project.id, "nobody") is False

    async def test_revoke_twice(self, db, project):
        await issue_credential(db, project.id, "agent-1")
        await db.commit()
        assert await revoke_credential(db, project.id, "agent-1") is True
        await db.commit()
        assert await revoke_credential(db, project.id, "agent-1") is False
