import aiohttp
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from snapshot_collector.domain.models import MAX_CHUNK_SIZE
from snapshot_collector.domain.results import FetchResult, NotFound, Resolved, TransientFailure
from snapshot_collector.infrastructure.acl import GitHubTranslator

logger = logging.getLogger(__name__)

# Every aliased lookup in a batch spreads this fragment, so one request
# returns the complete repository record needed to promote a stub.
REPOSITORY_FRAGMENT = """
fragment RepositoryFields on Repository {
  databaseId
  name
  owner {
    login
  }
  description
  homepageUrl
  primaryLanguage {
    name
  }
  repositoryTopics(first: 100) {
    nodes {
      topic {
        name
      }
    }
  }
  stargazerCount
  forkCount
  watchers {
    totalCount
  }
  issues(states: OPEN) {
    totalCount
  }
  diskUsage
  isFork
  isArchived
  isDisabled
  licenseInfo {
    name
  }
  defaultBranchRef {
    name
  }
  createdAt
  updatedAt
  pushedAt
}
"""

NOT_FOUND_MESSAGE = "Could not resolve to a Repository"
TRANSIENT_STATUSES = frozenset({502, 503, 504})
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # Doubles on every retry: 1s, 2s, 4s
INTER_CHUNK_DELAY = 1.1  # Seconds between chunks to stay under GitHub's secondary rate limits


def split_full_name(full_name: str) -> Optional[Tuple[str, str]]:
    """Returns (owner, name) or None when `full_name` is not of the form owner/name."""
    parts = full_name.strip().split('/')
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


class GitHubGraphQLClient:
    """
    Client for the GitHub GraphQL API.
    Resolves many repositories per request by aliasing one lookup per repository.
    """

    def __init__(self, token: str, inter_chunk_delay: float = INTER_CHUNK_DELAY):
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "User-Agent": "repo-snapshot-collector",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self.api_url = "https://api.github.com/graphql"
        self.inter_chunk_delay = inter_chunk_delay
        self.calls_made = 0

    @staticmethod
    def build_batch_query(lookups: Sequence[Tuple[int, str, str]]) -> Tuple[str, Dict[str, str]]:
        """
        Builds one aliased query for a chunk.

        Args:
            lookups: (position, owner, name) triples. The position becomes the alias
                suffix so results can be matched back to the chunk.

        Returns:
            Tuple of (query text, variables).
        """
        declarations = []
        selections = []
        variables: Dict[str, str] = {}
        for position, owner, name in lookups:
            declarations.append(f"$owner{position}: String!, $name{position}: String!")
            selections.append(
                f"  repo{position}: repository(owner: $owner{position}, name: $name{position}) {{\n"
                f"    ...RepositoryFields\n"
                f"  }}"
            )
            variables[f"owner{position}"] = owner
            variables[f"name{position}"] = name

        query = (
            f"query ({', '.join(declarations)}) {{\n"
            + "\n".join(selections)
            + "\n}\n"
            + REPOSITORY_FRAGMENT
        )
        return query, variables

    async def fetch_batched(
        self,
        session: aiohttp.ClientSession,
        full_names: Sequence[str],
        chunk_size: int = MAX_CHUNK_SIZE,
    ) -> List[FetchResult]:
        """
        Fetches the current state of every repository in `full_names`.

        Chunks are requested strictly one after another with a fixed pause in
        between, since they all draw from the same rate budget.

        Returns:
            One FetchResult per input name, in input order.
        """
        if not 1 <= chunk_size <= MAX_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and {MAX_CHUNK_SIZE}, got {chunk_size}.")

        results: List[FetchResult] = []
        for start in range(0, len(full_names), chunk_size):
            chunk = list(full_names[start:start + chunk_size])
            chunk_number = start // chunk_size + 1
            chunk_results = await self._fetch_chunk(session, chunk, chunk_number)
            results.extend(chunk_results)

            if start + chunk_size < len(full_names):
                await asyncio.sleep(self.inter_chunk_delay)

        resolved = sum(1 for result in results if isinstance(result, Resolved))
        logger.info(f"GraphQL batch fetch completed: {resolved}/{len(full_names)} resolved.")
        return results

    async def _fetch_chunk(
        self, session: aiohttp.ClientSession, chunk: List[str], chunk_number: int,
    ) -> List[FetchResult]:
        results: List[Optional[FetchResult]] = [None] * len(chunk)
        lookups = []
        for position, full_name in enumerate(chunk):
            parsed = split_full_name(full_name)
            if parsed is None:
                logger.warning(f"Invalid repository name '{full_name}'. Skipping lookup.")
                results[position] = NotFound(reason=f"Invalid repository name: {full_name!r}")
                continue
            lookups.append((position, parsed[0], parsed[1]))

        if lookups:
            query, variables = self.build_batch_query(lookups)
            body, error = await self._post_with_retry(session, {"query": query, "variables": variables}, chunk_number)

            if error is not None:
                logger.error(f"Chunk {chunk_number} failed: {error}")
                for position, _, _ in lookups:
                    results[position] = TransientFailure(reason=error)
            else:
                for position, result in self._read_chunk(body, lookups).items():
                    results[position] = result

        return results

    async def _post_with_retry(
        self, session: aiohttp.ClientSession, payload: Dict[str, Any], chunk_number: int,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """
        Posts one batch query, retrying transient failures with exponential back-off.

        Returns:
            Tuple of (parsed body, None) on success, or (None, error description)
            when the chunk cannot be trusted.
        """
        for attempt in range(MAX_RETRIES + 1):
            sleep_time = RETRY_BASE_DELAY * (2 ** attempt)
            try:
                self.calls_made += 1
                async with session.post(self.api_url, json=payload, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                    if response.status in TRANSIENT_STATUSES:
                        if attempt < MAX_RETRIES:
                            logger.warning(
                                f"Chunk {chunk_number}: server error ({response.status}), "
                                f"retrying in {sleep_time:.0f}s (attempt {attempt + 1}/{MAX_RETRIES + 1})..."
                            )
                            await asyncio.sleep(sleep_time)
                            continue
                        return None, f"GitHub returned {response.status} after {MAX_RETRIES + 1} attempts"

                    if not 200 <= response.status < 300:
                        error_text = await response.text()
                        return None, f"GraphQL API error {response.status}: {error_text[:200]}"

                    if 'json' not in (response.content_type or ''):
                        return None, f"Unexpected content type '{response.content_type}'"

                    try:
                        body = await response.json(content_type=None)
                    except ValueError as e:
                        return None, f"Malformed JSON body: {e}"

                    if not isinstance(body, dict) or not isinstance(body.get('data'), dict):
                        errors = body.get('errors') if isinstance(body, dict) else None
                        return None, f"Response carried no data object: {errors}"

                    return body, None

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if attempt < MAX_RETRIES:
                    logger.warning(
                        f"Chunk {chunk_number}: request failed ({e!r}), "
                        f"retrying in {sleep_time:.0f}s (attempt {attempt + 1}/{MAX_RETRIES + 1})..."
                    )
                    await asyncio.sleep(sleep_time)
                    continue
                return None, f"Network error after {MAX_RETRIES + 1} attempts: {e!r}"

        return None, f"Gave up after {MAX_RETRIES + 1} attempts"

    @staticmethod
    def _read_chunk(
        body: Dict[str, Any], lookups: Sequence[Tuple[int, str, str]],
    ) -> Dict[int, FetchResult]:
        data = body['data']
        errors = body.get('errors') or []
        if errors:
            # Partial errors are expected for renamed or deleted repositories
            logger.warning(f"GraphQL returned {len(errors)} error(s) alongside data.")

        not_found: Dict[str, str] = {}
        for error in errors:
            if not isinstance(error, dict):
                continue
            message = error.get('message') or ''
            if NOT_FOUND_MESSAGE not in message:
                continue
            for segment in error.get('path') or []:
                not_found[str(segment)] = message

        results: Dict[int, FetchResult] = {}
        for position, owner, name in lookups:
            alias = f"repo{position}"
            node = data.get(alias)
            if node:
                try:
                    results[position] = Resolved(data=GitHubTranslator.to_domain(node))
                except (ValueError, KeyError, TypeError, AttributeError) as e:
                    logger.warning(f"Unusable data for {owner}/{name}: {e}")
                    results[position] = TransientFailure(reason=f"Unusable repository data: {e}")
            elif alias in not_found:
                results[position] = NotFound(reason=not_found[alias])
            else:
                logger.warning(f"No data returned for repo: {owner}/{name}")
                results[position] = TransientFailure(reason="No data returned")
        return results
