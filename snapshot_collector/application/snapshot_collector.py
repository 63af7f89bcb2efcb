import logging
import math
from datetime import datetime
from typing import Callable, Optional
import aiohttp

from snapshot_collector.application.priority_selector import select_candidates
from snapshot_collector.application.reconciler import Reconciler, utc_now
from snapshot_collector.config import Settings
from snapshot_collector.domain.models import MAX_CHUNK_SIZE, RunOutcome, RunSummary
from snapshot_collector.domain.policies import PriorityPolicy
from snapshot_collector.domain.results import ReconcileEffect
from snapshot_collector.infrastructure.database import PostgresRepository
from snapshot_collector.infrastructure.github_client import GitHubGraphQLClient
from snapshot_collector.infrastructure.quota_tracker import QuotaTracker

logger = logging.getLogger(__name__)

DEFAULT_MIN_REMAINING = 50
# Limit concurrent connections; chunks are sent one at a time anyway
CONNECTOR_LIMIT = 2


class SnapshotCollector:
    """
    Service responsible for one snapshot collection run:
    measure the rate budget, pick the repositories that are due, fetch them in
    batches and reconcile the results into the store.

    Runs never overlap inside one process, but nothing breaks if two processes
    collect at the same time: repository writes are upserts and snapshots are
    insert-only, so the worst case is a duplicate snapshot.
    """

    def __init__(
            self,
            github_client: GitHubGraphQLClient,
            quota_tracker: QuotaTracker,
            db_repository: PostgresRepository,
            reconciler: Optional[Reconciler] = None,
            policy: PriorityPolicy = PriorityPolicy(),
            min_remaining: int = DEFAULT_MIN_REMAINING,
            chunk_size: int = MAX_CHUNK_SIZE,
            clock: Callable[[], datetime] = utc_now,
    ):
        self.github_client = github_client
        self.quota_tracker = quota_tracker
        self.db_repository = db_repository
        self.reconciler = reconciler or Reconciler(db_repository, clock=clock)
        self.policy = policy
        self.min_remaining = min_remaining
        self.chunk_size = chunk_size
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "SnapshotCollector":
        db_repository = PostgresRepository(db_url=settings.database_url)
        return cls(
            github_client=GitHubGraphQLClient(
                token=settings.github_token,
                inter_chunk_delay=settings.inter_chunk_delay,
            ),
            quota_tracker=QuotaTracker(token=settings.github_token, reserve=settings.budget_reserve),
            db_repository=db_repository,
            min_remaining=settings.min_remaining,
            chunk_size=settings.chunk_size,
        )

    async def close(self) -> None:
        await self.db_repository.dispose()

    async def run(self, limit: int) -> RunSummary:
        """
        Collects snapshots for at most `limit` repositories.

        Returns:
            RunSummary: counters for the run. A low budget or an empty selection
            are normal outcomes, reported through `summary.outcome`.
        """
        summary = RunSummary(started_at=self.clock())
        logger.info(f"Starting snapshot collection (repo limit: {limit}).")

        async with aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT),
        ) as session:
            budget = await self.quota_tracker.check_budget(session)
            summary.budget_remaining = budget.remaining
            summary.budget_total = budget.total
            summary.reset_at = budget.reset_at

            if budget.remaining < self.min_remaining:
                reset_in = max(0, math.ceil((budget.reset_at - self.clock()).total_seconds() / 60))
                summary.outcome = RunOutcome.LOW_BUDGET
                summary.reason = (
                    f"Rate limit too low ({budget.remaining} remaining). "
                    f"Try again in {reset_in} minutes."
                )
                logger.warning(summary.reason)
                return self._finish(summary)

            population = await self.db_repository.fetch_population(self.policy, self.clock())
            logger.info(f"Found {len(population)} repos needing snapshots.")

            candidates = select_candidates(population, limit, budget, self.chunk_size)
            summary.candidates_selected = len(candidates)
            if not candidates:
                summary.outcome = RunOutcome.NOTHING_TO_DO
                summary.reason = "No repositories need snapshot updates at this time."
                return self._finish(summary)

            calls_before = self.github_client.calls_made
            results = await self.github_client.fetch_batched(
                session, [candidate.full_name for candidate in candidates], self.chunk_size,
            )
            summary.api_calls_made = self.github_client.calls_made - calls_before

        effects = await self.reconciler.reconcile_all(candidates, results)

        for result, effect in zip(results, effects):
            if result.kind == "resolved":
                summary.resolved += 1
            elif result.kind == "not_found":
                summary.not_found += 1
            else:
                summary.transient_failed += 1

            if effect is ReconcileEffect.PROMOTED:
                summary.promoted += 1
            if effect.wrote_snapshot:
                summary.snapshots_written += 1
            if effect is ReconcileEffect.WRITE_FAILED:
                summary.write_errors += 1

        summary.budget_remaining = max(0, budget.remaining - summary.api_calls_made)
        return self._finish(summary)

    def _finish(self, summary: RunSummary) -> RunSummary:
        summary.finished_at = self.clock()
        logger.info(
            f"Snapshot collection {summary.outcome.value}: {summary.snapshots_written} snapshots, "
            f"{summary.resolved} resolved, {summary.not_found} not found, "
            f"{summary.transient_failed} failed, {summary.api_calls_made} API calls."
        )
        return summary
