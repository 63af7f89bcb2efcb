from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field

from snapshot_collector.domain.models import (
    PERMANENT_FETCH_STATUSES,
    CollectionCandidate,
    FetchStatus,
    TrackedRepository,
)


class StarTier(BaseModel):
    """Re-snapshot interval for repositories with at least `min_stars` stars."""
    model_config = ConfigDict(frozen=True)

    min_stars: int = Field(..., ge=0)
    interval_hours: float = Field(..., gt=0)
    score: int = Field(..., gt=0)


DEFAULT_STAR_TIERS = (
    StarTier(min_stars=10_000, interval_hours=20, score=800),
    StarTier(min_stars=1_000, interval_hours=22, score=700),
    StarTier(min_stars=100, interval_hours=44, score=500),
    StarTier(min_stars=10, interval_hours=68, score=300),
    StarTier(min_stars=0, interval_hours=7 * 24, score=100),
)


class PriorityPolicy(BaseModel):
    """
    Decides which tracked repositories are due for a new snapshot and in what order.

    Stubs always come first, then freshly discovered repositories, then repositories
    that were never snapshotted. Everything else falls into a star tier and is only
    due once the tier's interval has elapsed since its last snapshot.
    """
    model_config = ConfigDict(frozen=True)

    stub_score: int = 1100
    new_discovery_score: int = 1000
    never_snapshotted_score: int = 900
    new_discovery_window_hours: float = 48
    star_tiers: Tuple[StarTier, ...] = DEFAULT_STAR_TIERS

    @staticmethod
    def hours_since_last_snapshot(repo: TrackedRepository, now: datetime) -> float:
        reference = repo.last_snapshot_at or repo.discovered_at
        return max(0.0, (now - reference).total_seconds() / 3600.0)

    def score(self, repo: TrackedRepository, now: datetime) -> int:
        """
        Returns the priority score of a repository, or 0 when it is not due yet.
        """
        if repo.github_id is None:
            return self.stub_score

        if now - repo.discovered_at < timedelta(hours=self.new_discovery_window_hours):
            return self.new_discovery_score

        if repo.last_snapshot_at is None:
            return self.never_snapshotted_score

        elapsed = self.hours_since_last_snapshot(repo, now)
        for tier in sorted(self.star_tiers, key=lambda t: t.min_stars, reverse=True):
            if repo.stars >= tier.min_stars:
                return tier.score if elapsed >= tier.interval_hours else 0
        return 0

    @staticmethod
    def is_eligible(repo: TrackedRepository, now: datetime) -> bool:
        """Archived, disabled and permanently failed repositories are never collected."""
        if repo.is_archived or repo.is_disabled:
            return False
        if repo.fetch_status in PERMANENT_FETCH_STATUSES:
            return False
        if repo.fetch_status == FetchStatus.RETRY_LATER and repo.next_retry_after is not None:
            return repo.next_retry_after <= now
        return True

    def prioritize(
        self, repos: Iterable[TrackedRepository], now: datetime
    ) -> List[CollectionCandidate]:
        """
        Builds the ordered population of due candidates: score descending, then
        the stalest data first within a score.
        """
        candidates = []
        for repo in repos:
            if not self.is_eligible(repo, now):
                continue
            score = self.score(repo, now)
            if score <= 0:
                continue
            candidates.append(CollectionCandidate(
                github_id=repo.github_id,
                full_name=repo.full_name,
                priority_score=score,
                stars=repo.stars,
                hours_since_last_snapshot=self.hours_since_last_snapshot(repo, now),
                possibly_incomplete=repo.github_id is not None and repo.last_snapshot_at is None,
            ))

        candidates.sort(key=lambda c: (c.priority_score, c.hours_since_last_snapshot), reverse=True)
        return candidates


DEFAULT_RETRY_SCHEDULE_HOURS = (1, 6, 24, 7 * 24)


class RetryPolicy(BaseModel):
    """
    Escalating back-off for repositories whose lookup keeps failing.
    From the `permanent_after`-th consecutive failure on, the repository is
    considered unreachable until someone resets it.
    """
    model_config = ConfigDict(frozen=True)

    schedule_hours: Tuple[float, ...] = DEFAULT_RETRY_SCHEDULE_HOURS
    permanent_after: int = Field(5, ge=1)

    def after_failure(
        self, failure_count: int, now: datetime
    ) -> Tuple[FetchStatus, Optional[datetime]]:
        if failure_count >= self.permanent_after:
            return FetchStatus.UNREACHABLE, None
        step = min(max(failure_count, 1), len(self.schedule_hours)) - 1
        return FetchStatus.RETRY_LATER, now + timedelta(hours=self.schedule_hours[step])
