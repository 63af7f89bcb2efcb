import aiohttp
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from snapshot_collector.domain.models import Budget

logger = logging.getLogger(__name__)

RATE_LIMIT_URL = "https://api.github.com/rate_limit"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=15, connect=5)

# Conservative figures used whenever the status probe fails
FALLBACK_REMAINING = 100
FALLBACK_TOTAL = 5000
FALLBACK_RESET = timedelta(hours=1)


class QuotaTracker:
    """
    Reads the token's current GitHub rate-limit status once per run.
    Never raises: a failed probe degrades to conservative defaults.
    """

    def __init__(self, token: str, reserve: int = 0):
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "repo-snapshot-collector",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.reserve = reserve

    def fallback_budget(self) -> Budget:
        return Budget(
            remaining=FALLBACK_REMAINING,
            total=FALLBACK_TOTAL,
            reset_at=datetime.now(timezone.utc) + FALLBACK_RESET,
            reserve=self.reserve,
        )

    def _parse(self, body: Dict[str, Any]) -> Budget:
        resources = body['resources']
        # Batched lookups spend GraphQL points; older tokens only report `core`
        bucket = resources.get('graphql') or resources['core']
        return Budget(
            remaining=int(bucket['remaining']),
            total=int(bucket['limit']),
            reset_at=datetime.fromtimestamp(int(bucket['reset']), tz=timezone.utc),
            reserve=self.reserve,
        )

    async def check_budget(self, session: aiohttp.ClientSession) -> Budget:
        try:
            async with session.get(RATE_LIMIT_URL, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                if response.status != 200:
                    raise ValueError(f"Rate limit check failed: {response.status}")
                body = await response.json(content_type=None)
                budget = self._parse(body)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Failed to check rate limit ({e!r}). Falling back to conservative defaults.")
            return self.fallback_budget()

        logger.info(f"GitHub API rate limit: {budget.remaining}/{budget.total} remaining.")
        return budget
