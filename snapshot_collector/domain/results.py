from enum import Enum
from typing import Literal, Union
from pydantic import BaseModel, ConfigDict

from snapshot_collector.domain.models import RepositoryData


class Resolved(BaseModel):
    """The lookup returned complete repository data."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["resolved"] = "resolved"
    data: RepositoryData


class NotFound(BaseModel):
    """GitHub could not resolve the name; the repository is gone or was never valid."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["not_found"] = "not_found"
    reason: str


class TransientFailure(BaseModel):
    """The lookup failed in a way that may succeed on a later run."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["transient_failure"] = "transient_failure"
    reason: str


FetchResult = Union[Resolved, NotFound, TransientFailure]


class ReconcileEffect(str, Enum):
    PROMOTED = "promoted"
    UPDATED = "updated"
    MARKED_NOT_FOUND = "marked_not_found"
    RETRY_SCHEDULED = "retry_scheduled"
    MARKED_UNREACHABLE = "marked_unreachable"
    WRITE_FAILED = "write_failed"

    @property
    def wrote_snapshot(self) -> bool:
        return self in (ReconcileEffect.PROMOTED, ReconcileEffect.UPDATED)
