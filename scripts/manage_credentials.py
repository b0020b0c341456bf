"""
Issue, rotate or revoke webhook credentials directly against the database.

Usage:
    python scripts/manage_credentials.py create-project --name "Checkout rewrite" --repository acme/shop
    python scripts/manage_credentials.py issue --project <uuid> --source my-agent
    python scripts/manage_credentials.py issue --project <uuid> --source github --type github
    python scripts/manage_credentials.py revoke --project <uuid> --source my-agent
"""
import argparse
import asyncio
import logging
import uuid

from src.database import async_session_factory, dispose_engine
from src.models.project import Project
from src.services.credentials import issue_credential, revoke_credential
from src.utils.errors import PermanentProcessingFailure, ValidationFailure

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def create_project(name: str, repository: str | None) -> None:
    async with async_session_factory() as db:
        project = Project(name=name, repository=repository)
        db.add(project)
        await db.commit()
        logger.info("Created project %s (%s)", project.id, name)


async def issue(project_id: uuid.UUID, source_id: str, source_type: str) -> None:
    async with async_session_factory() as db:
        try:
            credential, token, rotated = await issue_credential(db, project_id, source_id, source_type)
        except (ValidationFailure, PermanentProcessingFailure) as e:
            logger.error("Could not issue credential: %s", str(e))
            return
        await db.commit()

    logger.info(
        "%s credential %s for source %s",
        "Rotated" if rotated else "Issued", str(credential.id)[:8], source_id,
    )
    # Printed, not logged: the plaintext token is shown exactly once
    print(token)


async def revoke(project_id: uuid.UUID, source_id: str) -> None:
    async with async_session_factory() as db:
        revoked = await revoke_credential(db, project_id, source_id)
        await db.commit()
    if revoked:
        logger.info("Revoked credential for source %s", source_id)
    else:
        logger.warning("No active credential for source %s", source_id)


async def main():
    parser = argparse.ArgumentParser(description="Manage webhook credentials")
    sub = parser.add_subparsers(dest="command", required=True)

    p_project = sub.add_parser("create-project")
    p_project.add_argument("--name", required=True)
    p_project.add_argument("--repository", default=None, help="owner/name on GitHub")

    p_issue = sub.add_parser("issue", help="Issue or rotate a credential")
    p_issue.add_argument("--project", required=True, type=uuid.UUID)
    p_issue.add_argument("--source", required=True)
    p_issue.add_argument("--type", default="agent", choices=["agent", "github"])

    p_revoke = sub.add_parser("revoke")
    p_revoke.add_argument("--project", required=True, type=uuid.UUID)
    p_revoke.add_argument("--source", required=True)

    args = parser.parse_args()
    try:
        if args.command == "create-project":
            await create_project(args.name, args.repository)
        elif args.command == "issue":
            await issue(args.project, args.source, args.type)
        elif args.command == "revoke":
            await revoke(args.project, args.source)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
