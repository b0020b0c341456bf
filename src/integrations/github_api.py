"""
GitHub REST client for commit statistics - the rate-limited upstream used by
the commit-metrics handler. Every call goes through the shared circuit breaker.

Token refresh is handled outside this service; the configured token is
treated as opaque.
"""
import logging
from typing import Optional

import httpx

from src.utils.circuit_breaker import get_breaker
from src.utils.errors import PermanentProcessingFailure, TransientProcessingFailure

logger = logging.getLogger(__name__)

BREAKER_NAME = "github_api"


class GitHubAPIError(TransientProcessingFailure):
    """Upstream answered with a retryable error (rate limit, 5xx)."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API {status_code}: {message}")
        self.status_code = status_code


class GitHubAccessDenied(PermanentProcessingFailure):
    """Bad token or no access to the repository. Not an outage; the breaker ignores it."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"GitHub API {status_code}: {message}")
        self.status_code = status_code


def _is_rate_limited(response: httpx.Response) -> bool:
    # GitHub signals primary rate limits with 403 as well as 429
    if response.status_code == 429:
        return True
    return response.status_code == 403 and (
        response.headers.get("x-ratelimit-remaining") == "0"
        or "rate limit" in response.text.lower()
    )


def _headers(token: str) -> dict:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": "agentpulse-webhooks",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def _get_commit(repository: str, sha: str) -> Optional[dict]:
    from src.config import get_settings
    settings = get_settings()

    url = f"{settings.github_api_base_url.rstrip('/')}/repos/{repository}/commits/{sha}"
    try:
        async with httpx.AsyncClient(timeout=settings.github_api_timeout_seconds) as client:
            response = await client.get(url, headers=_headers(settings.github_api_token))
    except httpx.HTTPError as e:
        raise TransientProcessingFailure(f"GitHub API unreachable: {type(e).__name__}") from e

    if response.status_code in (404, 422):
        # Unknown or force-pushed-away commit: nothing to fetch, not an outage
        return None
    if response.status_code in (401, 403) and not _is_rate_limited(response):
        raise GitHubAccessDenied(response.status_code, response.text[:200])
    if response.status_code >= 400:
        raise GitHubAPIError(response.status_code, response.text[:200])
    return response.json()


async def fetch_commit_stats(repository: str, sha: str) -> Optional[dict]:
    """
    Return {"lines_added", "lines_deleted", "files_changed"} for a commit,
    or None when GitHub does not know it.

    Raises TransientProcessingFailure (CircuitOpenError while the breaker is open)
    and GitHubAccessDenied when the token cannot read the repository.
    """
    data = await get_breaker(BREAKER_NAME).call(lambda: _get_commit(repository, sha))
    if data is None:
        logger.info("Commit %s not found in %s", sha[:8], repository)
        return None

    stats = data.get("stats") or {}
    return {
        "lines_added": stats.get("additions"),
        "lines_deleted": stats.get("deletions"),
        "files_changed": len(data.get("files") or []),
    }
