import logging
from datetime import datetime, timezone
from typing import Callable, List, Sequence

from snapshot_collector.domain.exceptions import DatabaseException
from snapshot_collector.domain.models import CollectionCandidate, FetchStatus, Snapshot
from snapshot_collector.domain.policies import RetryPolicy
from snapshot_collector.domain.results import (
    FetchResult,
    NotFound,
    ReconcileEffect,
    Resolved,
    TransientFailure,
)
from snapshot_collector.infrastructure.database import PostgresRepository

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """
    Writes fetch results back to the entity store.

    Resolved repositories are promoted (stubs) or refreshed (complete records),
    then get exactly one new snapshot. Failed lookups only update the fetch
    status. Each candidate is written independently of the others.
    """

    def __init__(
            self,
            db_repository: PostgresRepository,
            retry_policy: RetryPolicy = RetryPolicy(),
            clock: Callable[[], datetime] = utc_now,
    ):
        self.db_repository = db_repository
        self.retry_policy = retry_policy
        self.clock = clock

    @staticmethod
    def needs_promotion(candidate: CollectionCandidate) -> bool:
        return candidate.is_stub or candidate.possibly_incomplete

    async def reconcile(self, candidate: CollectionCandidate, result: FetchResult) -> ReconcileEffect:
        now = self.clock()
        try:
            if isinstance(result, Resolved):
                return await self._apply_resolved(candidate, result, now)
            if isinstance(result, NotFound):
                await self.db_repository.mark_not_found(candidate.full_name, result.reason, now)
                logger.info(f"{candidate.full_name} no longer resolves: {result.reason}")
                return ReconcileEffect.MARKED_NOT_FOUND
            if isinstance(result, TransientFailure):
                status = await self.db_repository.record_transient_failure(
                    candidate.full_name, result.reason, self.retry_policy, now,
                )
                if status is FetchStatus.UNREACHABLE:
                    logger.warning(f"{candidate.full_name} failed too often. Marked unreachable.")
                    return ReconcileEffect.MARKED_UNREACHABLE
                return ReconcileEffect.RETRY_SCHEDULED
            raise TypeError(f"Unknown fetch result: {result!r}")

        except DatabaseException as e:
            logger.error(f"Failed to reconcile {candidate.full_name}: {e}")
            if not isinstance(result, TransientFailure):
                await self._record_write_failure(candidate, f"Write failed: {e}", now)
            return ReconcileEffect.WRITE_FAILED

    async def _record_write_failure(self, candidate: CollectionCandidate, reason: str, now: datetime) -> None:
        """Backs off a candidate whose result could not be stored, so it is not fetched again every run."""
        try:
            await self.db_repository.record_transient_failure(candidate.full_name, reason, self.retry_policy, now)
        except DatabaseException as e:
            logger.error(f"Could not record write failure for {candidate.full_name}: {e}")

    async def _apply_resolved(
        self, candidate: CollectionCandidate, result: Resolved, now: datetime,
    ) -> ReconcileEffect:
        data = result.data

        if self.needs_promotion(candidate):
            await self.db_repository.promote_stub(candidate.full_name, data, now)
            effect = ReconcileEffect.PROMOTED
            logger.info(f"Promoted {candidate.full_name} to {data.full_name} (github_id={data.github_id}).")
        else:
            if candidate.github_id != data.github_id:
                logger.warning(
                    f"{candidate.full_name} resolved to github_id={data.github_id}, "
                    f"expected {candidate.github_id}."
                )
            updated = await self.db_repository.update_repository(data, now)
            if not updated:
                logger.warning(f"No stored row for github_id={data.github_id}; snapshot skipped.")
                await self._record_write_failure(
                    candidate, f"Resolved to github_id={data.github_id} with no stored row", now,
                )
                return ReconcileEffect.WRITE_FAILED
            effect = ReconcileEffect.UPDATED

        await self.db_repository.insert_snapshot(Snapshot.from_data(data, now))
        return effect

    async def reconcile_all(
        self, candidates: Sequence[CollectionCandidate], results: Sequence[FetchResult],
    ) -> List[ReconcileEffect]:
        if len(candidates) != len(results):
            raise ValueError(f"Got {len(results)} results for {len(candidates)} candidates.")

        return [
            await self.reconcile(candidate, result)
            for candidate, result in zip(candidates, results)
        ]
