"""
List, replay or discard dead-lettered events.

Usage:
    python scripts/replay_dead_letters.py list
    python scripts/replay_dead_letters.py replay --id <entry uuid>
    python scripts/replay_dead_letters.py replay --all
    python scripts/replay_dead_letters.py discard --id <entry uuid>
"""
import argparse
import asyncio
import logging
import uuid

from src.database import async_session_factory, dispose_engine
from src.models.dead_letter_entry import DL_PENDING_REVIEW
from src.services.event_queue import notify_workers
from src.utils.dead_letter import (
    DeadLetterStateError,
    discard_dead_letter,
    list_dead_letters,
    replay_dead_letter,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RESOLVED_BY = "cli"


async def show(limit: int) -> None:
    async with async_session_factory() as db:
        rows, total = await list_dead_letters(db, status=DL_PENDING_REVIEW, limit=limit)
    logger.info("%d dead letters pending review", total)
    for entry, event in rows:
        print(
            f"{entry.id}  {event.kind:<24} source={event.source_id:<20} "
            f"attempts={entry.attempt_count} error={entry.last_error[:80]}"
        )


async def replay(entry_ids: list[uuid.UUID]) -> None:
    replayed = 0
    async with async_session_factory() as db:
        for entry_id in entry_ids:
            try:
                entry = await replay_dead_letter(db, entry_id, resolved_by=RESOLVED_BY)
            except DeadLetterStateError as e:
                logger.warning("%s", str(e))
                continue
            if entry is None:
                logger.warning("Dead letter %s not found", entry_id)
                continue
            await db.commit()
            await notify_workers(entry.event_id)
            replayed += 1
    logger.info("Replayed %d of %d dead letters", replayed, len(entry_ids))


async def discard(entry_id: uuid.UUID) -> None:
    async with async_session_factory() as db:
        try:
            entry = await discard_dead_letter(db, entry_id, resolved_by=RESOLVED_BY)
        except DeadLetterStateError as e:
            logger.warning("%s", str(e))
            return
        if entry is None:
            logger.warning("Dead letter %s not found", entry_id)
            return
        await db.commit()
    logger.info("Discarded dead letter %s", entry_id)


async def _pending_ids(limit: int) -> list[uuid.UUID]:
    async with async_session_factory() as db:
        rows, _ = await list_dead_letters(db, status=DL_PENDING_REVIEW, limit=limit)
    return [entry.id for entry, _ in rows]


async def main():
    parser = argparse.ArgumentParser(description="Dead letter review")
    sub = parser.add_subparsers(dest="command", required=True)

    p_list = sub.add_parser("list")
    p_list.add_argument("--limit", type=int, default=50)

    p_replay = sub.add_parser("replay")
    target = p_replay.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", type=uuid.UUID)
    target.add_argument("--all", action="store_true", help="Replay every pending entry")
    p_replay.add_argument("--limit", type=int, default=200)

    p_discard = sub.add_parser("discard")
    p_discard.add_argument("--id", type=uuid.UUID, required=True)

    args = parser.parse_args()
    try:
        if args.command == "list":
            await show(args.limit)
        elif args.command == "replay":
            ids = await _pending_ids(args.limit) if args.all else [args.id]
            await replay(ids)
        elif args.command == "discard":
            await discard(args.id)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
