from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

MAX_CHUNK_SIZE = 100


class RepositoryState(str, Enum):
    """Two-state lifecycle of a tracked repository."""
    STUB = "stub"
    COMPLETE = "complete"


class FetchStatus(str, Enum):
    FETCHABLE = "fetchable"
    RETRY_LATER = "retry_later"
    NOT_FOUND = "not_found"
    UNREACHABLE = "unreachable"


PERMANENT_FETCH_STATUSES = frozenset({FetchStatus.NOT_FOUND, FetchStatus.UNREACHABLE})


class RepositoryData(BaseModel):
    """
    Complete repository state as returned by one GitHub GraphQL lookup.
    Produced by the translator and consumed by the reconciler.
    """
    model_config = ConfigDict(frozen=True)

    github_id: int = Field(..., description="Immutable GitHub database ID")
    owner: str = Field(..., description="Login name of the repository owner")
    name: str = Field(..., description="Name of the repository")
    description: Optional[str] = None
    homepage: Optional[str] = None
    language: Optional[str] = Field(None, description="Primary language")
    topics: List[str] = Field(default_factory=list)
    stars: int = Field(0, ge=0)
    forks: int = Field(0, ge=0)
    watchers: int = Field(0, ge=0)
    open_issues: int = Field(0, ge=0)
    size: int = Field(0, ge=0, description="Disk usage in KB")
    is_fork: bool = False
    is_archived: bool = False
    is_disabled: bool = False
    license: Optional[str] = None
    default_branch: Optional[str] = None
    github_created_at: Optional[datetime] = None
    github_updated_at: Optional[datetime] = None
    github_pushed_at: Optional[datetime] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class TrackedRepository(BaseModel):
    """
    A repository row as held by the entity store.
    A null github_id marks a stub that is known only by its full name.
    """
    model_config = ConfigDict(frozen=True)

    github_id: Optional[int] = None
    full_name: str = Field(..., min_length=3, description="owner/name display name")
    stars: int = Field(0, ge=0)
    forks: int = Field(0, ge=0)
    watchers: int = Field(0, ge=0)
    open_issues: int = Field(0, ge=0)
    size: int = Field(0, ge=0)
    is_fork: bool = False
    is_archived: bool = False
    is_disabled: bool = False
    discovered_at: datetime
    last_snapshot_at: Optional[datetime] = None
    discovery_context: Dict[str, Any] = Field(default_factory=dict)
    fetch_status: FetchStatus = FetchStatus.FETCHABLE
    fetch_failure_count: int = Field(0, ge=0)
    next_retry_after: Optional[datetime] = None

    @property
    def state(self) -> RepositoryState:
        return RepositoryState.STUB if self.github_id is None else RepositoryState.COMPLETE


class CollectionCandidate(BaseModel):
    """In-memory projection of a repository that is due for a snapshot in the current run."""
    model_config = ConfigDict(frozen=True)

    github_id: Optional[int] = None
    full_name: str
    priority_score: int = Field(..., gt=0)
    stars: int = Field(0, ge=0)
    hours_since_last_snapshot: float = Field(..., ge=0)
    # Has a GitHub ID but was never snapshotted, so its metadata may be partial
    possibly_incomplete: bool = False

    @property
    def is_stub(self) -> bool:
        return self.github_id is None


class Snapshot(BaseModel):
    """
    Immutable, append-only observation of a repository's counters.
    """
    model_config = ConfigDict(frozen=True)

    github_id: int
    stars: int = Field(..., ge=0)
    forks: int = Field(..., ge=0)
    watchers: int = Field(..., ge=0)
    open_issues: int = Field(..., ge=0)
    subscribers: int = Field(..., ge=0)
    size: int = Field(..., ge=0)
    recorded_at: datetime

    @classmethod
    def from_data(cls, data: RepositoryData, recorded_at: datetime) -> "Snapshot":
        return cls(
            github_id=data.github_id,
            stars=data.stars,
            forks=data.forks,
            watchers=data.watchers,
            open_issues=data.open_issues,
            subscribers=data.watchers,
            size=data.size,
            recorded_at=recorded_at,
        )


class Budget(BaseModel):
    """
    GitHub API allowance measured once at the start of a run.
    `available` keeps `reserve` calls back for everything else sharing the token.
    """
    model_config = ConfigDict(frozen=True)

    remaining: int = Field(..., ge=0)
    total: int = Field(..., ge=0)
    reset_at: datetime
    reserve: int = Field(0, ge=0)

    @property
    def available(self) -> int:
        return max(0, self.remaining - self.reserve)


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    NOTHING_TO_DO = "nothing_to_do"
    LOW_BUDGET = "low_budget"


class RunSummary(BaseModel):
    """Counters aggregated over a single collection run."""

    outcome: RunOutcome = RunOutcome.COMPLETED
    reason: Optional[str] = None
    candidates_selected: int = 0
    resolved: int = 0
    not_found: int = 0
    transient_failed: int = 0
    promoted: int = 0
    snapshots_written: int = 0
    write_errors: int = 0
    api_calls_made: int = 0
    budget_remaining: int = 0
    budget_total: int = 0
    reset_at: Optional[datetime] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.outcome is not RunOutcome.LOW_BUDGET
