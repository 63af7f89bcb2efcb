import logging
from typing import List, Sequence

from snapshot_collector.domain.models import MAX_CHUNK_SIZE, Budget, CollectionCandidate

logger = logging.getLogger(__name__)


def select_candidates(
    population: Sequence[CollectionCandidate],
    requested_limit: int,
    budget: Budget,
    chunk_size: int = MAX_CHUNK_SIZE,
) -> List[CollectionCandidate]:
    """
    Bounds an already ordered population to what this run may collect.

    Each API call resolves up to `chunk_size` repositories, so the available
    budget caps the run at `budget.available * chunk_size` candidates.

    Args:
        population: Due candidates, highest priority first.
        requested_limit: Caller-supplied maximum number of repositories.
        budget: Rate budget measured at the start of the run.
        chunk_size: Repositories resolved per API call.

    Returns:
        The leading candidates of `population`, possibly empty.
    """
    effective_limit = max(0, min(len(population), requested_limit, budget.available * chunk_size))

    logger.info(
        f"Selecting {effective_limit} repos (limited by: repos={len(population)}, "
        f"max={requested_limit}, api_calls={budget.available})."
    )
    return list(population[:effective_limit])
