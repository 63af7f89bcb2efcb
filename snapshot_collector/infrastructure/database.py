import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.dialects.postgresql import insert, ARRAY, JSONB
from sqlalchemy import (
    Table, Column, BigInteger, Boolean, ForeignKey, Identity, Index, Integer, DateTime,
    MetaData, Text, delete, func, or_, select, text, update,
)

from snapshot_collector.domain.exceptions import DatabaseException
from snapshot_collector.domain.models import (
    PERMANENT_FETCH_STATUSES,
    CollectionCandidate,
    FetchStatus,
    RepositoryData,
    Snapshot,
    TrackedRepository,
)
from snapshot_collector.domain.policies import PriorityPolicy, RetryPolicy
from snapshot_collector.infrastructure.github_client import split_full_name

logger = logging.getLogger(__name__)

# SQLAlchemy core Table definitions
metadata = MetaData()
repos_table = Table(
    'repos', metadata,
    Column('id', BigInteger, Identity(), primary_key=True),
    # NULL until the stub is resolved; never changes afterwards
    Column('github_id', BigInteger, unique=True, nullable=True),
    Column('full_name', Text, unique=True, nullable=False),
    Column('owner', Text, nullable=False),
    Column('name', Text, nullable=False),
    Column('description', Text),
    Column('homepage', Text),
    Column('language', Text),
    Column('topics', ARRAY(Text), server_default=text("ARRAY[]::TEXT[]")),
    Column('stars', Integer, nullable=False, server_default=text('0')),
    Column('forks', Integer, nullable=False, server_default=text('0')),
    Column('watchers', Integer, nullable=False, server_default=text('0')),
    Column('open_issues', Integer, nullable=False, server_default=text('0')),
    Column('size', Integer, nullable=False, server_default=text('0')),
    Column('is_fork', Boolean, nullable=False, server_default=text('false')),
    Column('is_archived', Boolean, nullable=False, server_default=text('false')),
    Column('is_disabled', Boolean, nullable=False, server_default=text('false')),
    Column('license', Text),
    Column('default_branch', Text),
    Column('github_created_at', DateTime(timezone=True)),
    Column('github_updated_at', DateTime(timezone=True)),
    Column('github_pushed_at', DateTime(timezone=True)),
    Column('discovered_at', DateTime(timezone=True), nullable=False, server_default=text('NOW()')),
    Column('discovery_context', JSONB, server_default=text("'{}'::jsonb")),
    Column('last_snapshot_at', DateTime(timezone=True)),
    Column('fetch_status', Text, nullable=False, server_default=text(f"'{FetchStatus.FETCHABLE.value}'")),
    Column('fetch_failure_count', Integer, nullable=False, server_default=text('0')),
    Column('next_retry_after', DateTime(timezone=True)),
    Column('last_fetch_attempt', DateTime(timezone=True)),
    Column('last_fetch_error', Text),
    Column('updated_at', DateTime(timezone=True), server_default=text('NOW()')),
)

snapshots_table = Table(
    'snapshots', metadata,
    Column('id', BigInteger, Identity(), primary_key=True),
    Column('github_id', BigInteger, ForeignKey('repos.github_id', ondelete='CASCADE'), nullable=False),
    Column('stars', Integer, nullable=False),
    Column('forks', Integer, nullable=False),
    Column('watchers', Integer, nullable=False),
    Column('open_issues', Integer, nullable=False),
    Column('subscribers', Integer, nullable=False),
    Column('size', Integer, nullable=False),
    Column('recorded_at', DateTime(timezone=True), nullable=False, server_default=text('NOW()')),
    Index('idx_snapshots_github_id_time', 'github_id', 'recorded_at'),
)


def _repository_values(data: RepositoryData, recorded_at: datetime) -> Dict[str, Any]:
    """Column values written whenever fresh data for a repository has been fetched."""
    return {
        'github_id': data.github_id,
        'full_name': data.full_name,
        'owner': data.owner,
        'name': data.name,
        'description': data.description,
        'homepage': data.homepage,
        'language': data.language,
        'topics': list(data.topics),
        'stars': data.stars,
        'forks': data.forks,
        'watchers': data.watchers,
        'open_issues': data.open_issues,
        'size': data.size,
        'is_fork': data.is_fork,
        'is_archived': data.is_archived,
        'is_disabled': data.is_disabled,
        'license': data.license,
        'default_branch': data.default_branch,
        'github_created_at': data.github_created_at,
        'github_updated_at': data.github_updated_at,
        'github_pushed_at': data.github_pushed_at,
        'last_snapshot_at': recorded_at,
        'fetch_status': FetchStatus.FETCHABLE.value,
        'fetch_failure_count': 0,
        'next_retry_after': None,
        'last_fetch_attempt': recorded_at,
        'last_fetch_error': None,
    }


class PostgresRepository:
    """
    Repository class for the `repos` and `snapshots` tables.

    Every public write runs in its own transaction so that a failure for one
    repository never rolls back work already done for another.
    """

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)

    @asynccontextmanager
    async def _transaction(self, operation: str) -> AsyncIterator[Any]:
        try:
            async with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise DatabaseException(f"{operation} failed: {e}") from e

    async def create_schema(self) -> None:
        async with self._transaction("create schema") as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def fetch_population(
        self, policy: PriorityPolicy, now: datetime
    ) -> List[CollectionCandidate]:
        """
        Loads every collectable repository with its latest snapshot time and
        returns the due ones ordered by priority.
        """
        latest = (
            select(
                snapshots_table.c.github_id,
                func.max(snapshots_table.c.recorded_at).label('latest_recorded_at'),
            )
            .group_by(snapshots_table.c.github_id)
            .subquery('latest_snapshot')
        )

        stmt = (
            select(
                repos_table.c.github_id,
                repos_table.c.full_name,
                func.coalesce(repos_table.c.stars, 0).label('stars'),
                repos_table.c.is_archived,
                repos_table.c.is_disabled,
                repos_table.c.discovered_at,
                func.coalesce(latest.c.latest_recorded_at, repos_table.c.last_snapshot_at).label('last_snapshot_at'),
                repos_table.c.fetch_status,
                repos_table.c.fetch_failure_count,
                repos_table.c.next_retry_after,
            )
            .select_from(repos_table.outerjoin(latest, latest.c.github_id == repos_table.c.github_id))
            .where(
                repos_table.c.is_archived.is_(False),
                repos_table.c.is_disabled.is_(False),
                repos_table.c.fetch_status.notin_([status.value for status in PERMANENT_FETCH_STATUSES]),
                or_(repos_table.c.next_retry_after.is_(None), repos_table.c.next_retry_after <= now),
            )
        )

        async with self._transaction("fetch population") as conn:
            result = await conn.execute(stmt)
            rows = result.mappings().all()

        repos = [TrackedRepository(**row) for row in rows]
        return policy.prioritize(repos, now)

    @staticmethod
    async def _holds_github_id(conn: Any, github_id: int) -> bool:
        result = await conn.execute(select(repos_table.c.id).where(repos_table.c.github_id == github_id))
        return result.first() is not None

    @staticmethod
    async def _drop_stub(conn: Any, full_name: str) -> None:
        await conn.execute(
            delete(repos_table).where(
                repos_table.c.full_name == full_name,
                repos_table.c.github_id.is_(None),
            )
        )

    async def promote_stub(self, stub_name: str, data: RepositoryData, recorded_at: datetime) -> None:
        """
        Completes a stub with freshly fetched data.

        A row that already carries the GitHub ID absorbs the record: a stub
        seeded under the current name is dropped first, then the row is updated
        in place. Otherwise the record is upserted on its full name, which
        assigns the ID to the stub. When GitHub resolved the stub under a
        different name, the stale stub row is dropped so it is not collected again.
        """
        values = _repository_values(data, recorded_at)

        async with self._transaction(f"promote {stub_name}") as conn:
            if await self._holds_github_id(conn, data.github_id):
                await self._drop_stub(conn, data.full_name)
                await conn.execute(
                    update(repos_table)
                    .where(repos_table.c.github_id == data.github_id)
                    .values(**values, updated_at=func.now())
                )
            else:
                stmt = insert(repos_table).values(values)
                upsert_stmt = stmt.on_conflict_do_update(
                    index_elements=['full_name'],
                    set_={
                        **{key: stmt.excluded[key] for key in values if key != 'full_name'},
                        'updated_at': text('NOW()'),
                    },
                )
                await conn.execute(upsert_stmt)

            if stub_name != data.full_name:
                await self._drop_stub(conn, stub_name)

    async def update_repository(self, data: RepositoryData, recorded_at: datetime) -> bool:
        """
        Refreshes metadata and counters of a complete repository, keyed by its GitHub ID.
        A stub seeded under the repository's current name is merged away first.
        """
        async with self._transaction(f"update {data.full_name}") as conn:
            if not await self._holds_github_id(conn, data.github_id):
                return False
            await self._drop_stub(conn, data.full_name)
            await conn.execute(
                update(repos_table)
                .where(repos_table.c.github_id == data.github_id)
                .values(**_repository_values(data, recorded_at), updated_at=func.now())
            )
        return True

    async def insert_snapshot(self, snapshot: Snapshot) -> None:
        async with self._transaction(f"insert snapshot for {snapshot.github_id}") as conn:
            await conn.execute(insert(snapshots_table).values(snapshot.model_dump()))

    async def mark_not_found(self, full_name: str, reason: str, now: datetime) -> None:
        async with self._transaction(f"mark {full_name} not found") as conn:
            await conn.execute(
                update(repos_table)
                .where(repos_table.c.full_name == full_name)
                .values(
                    fetch_status=FetchStatus.NOT_FOUND.value,
                    next_retry_after=None,
                    last_fetch_attempt=now,
                    last_fetch_error=reason,
                )
            )

    async def record_transient_failure(
        self, full_name: str, reason: str, retry_policy: RetryPolicy, now: datetime,
    ) -> Optional[FetchStatus]:
        """
        Bumps the consecutive-failure counter and schedules the next attempt.

        Returns:
            The new fetch status, or None when no row matched `full_name`.
        """
        async with self._transaction(f"record failure for {full_name}") as conn:
            result = await conn.execute(
                update(repos_table)
                .where(repos_table.c.full_name == full_name)
                .values(
                    fetch_failure_count=repos_table.c.fetch_failure_count + 1,
                    last_fetch_attempt=now,
                    last_fetch_error=reason,
                )
                .returning(repos_table.c.fetch_failure_count)
            )
            failure_count = result.scalar_one_or_none()
            if failure_count is None:
                return None

            status, next_retry_after = retry_policy.after_failure(failure_count, now)
            await conn.execute(
                update(repos_table)
                .where(repos_table.c.full_name == full_name)
                .values(fetch_status=status.value, next_retry_after=next_retry_after)
            )
        return status

    async def add_stubs(
        self, full_names: Iterable[str], discovery_context: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Registers repositories known only by name. Names already tracked are left untouched.

        Returns:
            Number of stubs actually inserted.
        """
        values = []
        for full_name in dict.fromkeys(full_names):
            parsed = split_full_name(full_name)
            if parsed is None:
                logger.warning(f"Ignoring invalid repository name '{full_name}'.")
                continue
            values.append({
                'full_name': f"{parsed[0]}/{parsed[1]}",
                'owner': parsed[0],
                'name': parsed[1],
                'discovery_context': discovery_context or {},
            })

        if not values:
            return 0

        async with self._transaction("add stubs") as conn:
            stmt = insert(repos_table).values(values).on_conflict_do_nothing(index_elements=['full_name'])
            result = await conn.execute(stmt)
        return max(result.rowcount or 0, 0)

    async def reset_fetch_status(self, full_name: str) -> bool:
        """Makes a repository that was given up on collectable again."""
        async with self._transaction(f"reset {full_name}") as conn:
            result = await conn.execute(
                update(repos_table)
                .where(repos_table.c.full_name == full_name)
                .values(
                    fetch_status=FetchStatus.FETCHABLE.value,
                    fetch_failure_count=0,
                    next_retry_after=None,
                    last_fetch_error=None,
                )
            )
        return bool(result.rowcount)
