"""
Simulate an AI agent lifecycle event via the webhook ingress.

Usage:
    python scripts/simulate_agent_event.py --source my-agent --token <token>
    python scripts/simulate_agent_event.py --source my-agent --token <token> --event code_commit
    python scripts/simulate_agent_event.py --source my-agent --token <token> --event task_completed --repeat 3
"""
import argparse
import asyncio
import logging
import uuid
from datetime import datetime, timezone

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def build_event(event_type: str, task_id: str, agent_id: str) -> dict:
    """Agent payload for one lifecycle event."""
    data: dict = {}
    if event_type == "task_started":
        data = {"title": f"Simulated task {task_id}"}
    elif event_type == "code_commit":
        data = {
            "sha": uuid.uuid4().hex + uuid.uuid4().hex[:8],
            "message": "Simulated commit",
            "lines_added": 42,
            "lines_deleted": 7,
            "files_changed": 3,
        }
    elif event_type == "test_execution":
        data = {"total": 120, "passed": 117, "failed": 2, "skipped": 1, "coverage_percent": 81.5}
    elif event_type == "blocker_identified":
        data = {"description": "Waiting on API credentials", "severity": "high"}

    return {
        "event_type": event_type,
        "event_id": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "task_id": task_id,
        "agent_id": agent_id,
        "data": data,
    }


async def send_event(base_url: str, source_id: str, token: str, payload: dict) -> httpx.Response:
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{base_url}/webhooks/{source_id}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        logger.info("%s response: %s %s", payload["event_type"], resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate AI agent webhook events")
    parser.add_argument("--source", required=True, help="Source id the token was issued for")
    parser.add_argument("--token", required=True)
    parser.add_argument(
        "--event",
        default="task_started",
        choices=["task_started", "code_commit", "test_execution", "task_completed", "blocker_identified"],
    )
    parser.add_argument("--task-id", default="SIM-1")
    parser.add_argument("--agent-id", default="sim-agent")
    parser.add_argument("--repeat", type=int, default=1, help="Send the same delivery N times (duplicates)")
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    payload = build_event(args.event, args.task_id, args.agent_id)
    logger.info("Simulating %s for task %s (%d deliveries)...", args.event, args.task_id, args.repeat)
    for _ in range(args.repeat):
        await send_event(args.base_url, args.source, args.token, payload)


if __name__ == "__main__":
    asyncio.run(main())
