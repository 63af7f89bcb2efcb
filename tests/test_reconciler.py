import unittest
from datetime import timedelta

from snapshot_collector.application.reconciler import Reconciler
from snapshot_collector.domain.models import CollectionCandidate, FetchStatus
from snapshot_collector.domain.results import NotFound, ReconcileEffect, Resolved, TransientFailure

from fakes import NOW, InMemoryRepositoryStore, make_data


def _candidate(github_id=None, full_name="a/b", hours=1.0, possibly_incomplete=False) -> CollectionCandidate:
    return CollectionCandidate(
        github_id=github_id,
        full_name=full_name,
        priority_score=1100 if github_id is None else 500,
        hours_since_last_snapshot=hours,
        possibly_incomplete=possibly_incomplete,
    )


class TestReconciler(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = InMemoryRepositoryStore()
        self.reconciler = Reconciler(self.store, clock=lambda: NOW)

    async def test_stub_is_promoted_and_snapshotted(self) -> None:
        self.store.add(full_name="a/b")

        effect = await self.reconciler.reconcile(_candidate(), Resolved(data=make_data(42, "a/b", stars=50)))

        self.assertEqual(effect, ReconcileEffect.PROMOTED)
        self.assertEqual(len(self.store.rows), 1)
        row = self.store.by_name("a/b")
        self.assertEqual(row["github_id"], 42)
        self.assertEqual(row["stars"], 50)
        self.assertEqual(row["last_snapshot_at"], NOW)
        self.assertEqual(len(self.store.snapshots), 1)
        self.assertEqual(self.store.snapshots[0].stars, 50)
        self.assertEqual(self.store.snapshots[0].recorded_at, NOW)

    async def test_renamed_stub_does_not_leave_stale_row(self) -> None:
        self.store.add(full_name="old/name")

        await self.reconciler.reconcile(
            _candidate(full_name="old/name"), Resolved(data=make_data(42, "new/name")),
        )

        self.assertEqual([row["full_name"] for row in self.store.rows], ["new/name"])

    async def test_stub_under_new_name_merges_into_tracked_repository(self) -> None:
        self.store.add(full_name="old/name", github_id=5, last_snapshot_at=NOW - timedelta(days=3))
        self.store.add(full_name="new/name")

        effect = await self.reconciler.reconcile(
            _candidate(full_name="new/name"), Resolved(data=make_data(5, "new/name")),
        )

        self.assertEqual(effect, ReconcileEffect.PROMOTED)
        self.assertEqual([(row["full_name"], row["github_id"]) for row in self.store.rows], [("new/name", 5)])

    async def test_reconcile_twice_adds_two_snapshots_one_row(self) -> None:
        self.store.add(full_name="a/b", github_id=42, last_snapshot_at=NOW - timedelta(days=3))
        candidate = _candidate(github_id=42, hours=72)
        result = Resolved(data=make_data(42, "a/b"))

        first = await self.reconciler.reconcile(candidate, result)
        second = await self.reconciler.reconcile(candidate, result)

        self.assertEqual(first, ReconcileEffect.UPDATED)
        self.assertEqual(second, ReconcileEffect.UPDATED)
        self.assertEqual(len(self.store.rows), 1)
        self.assertEqual(len(self.store.snapshots), 2)

    async def test_possibly_incomplete_record_goes_through_promotion(self) -> None:
        self.store.add(full_name="a/b", github_id=42)

        effect = await self.reconciler.reconcile(
            _candidate(github_id=42, possibly_incomplete=True), Resolved(data=make_data(42, "a/b")),
        )

        self.assertEqual(effect, ReconcileEffect.PROMOTED)
        self.assertEqual(len(self.store.rows), 1)

    async def test_not_found_is_permanent_and_writes_no_snapshot(self) -> None:
        self.store.add(full_name="a/b", github_id=42)

        effect = await self.reconciler.reconcile(_candidate(github_id=42), NotFound(reason="gone"))

        self.assertEqual(effect, ReconcileEffect.MARKED_NOT_FOUND)
        self.assertEqual(self.store.by_name("a/b")["fetch_status"], FetchStatus.NOT_FOUND)
        self.assertEqual(self.store.snapshots, [])

    async def test_transient_failures_escalate_to_unreachable(self) -> None:
        self.store.add(full_name="a/b")
        effects = []

        for _ in range(5):
            effects.append(await self.reconciler.reconcile(_candidate(), TransientFailure(reason="502")))

        row = self.store.by_name("a/b")
        self.assertEqual(effects[:4], [ReconcileEffect.RETRY_SCHEDULED] * 4)
        self.assertEqual(effects[4], ReconcileEffect.MARKED_UNREACHABLE)
        self.assertEqual(row["fetch_status"], FetchStatus.UNREACHABLE)
        self.assertEqual(row["fetch_failure_count"], 5)
        self.assertEqual(self.store.snapshots, [])

    async def test_first_transient_failure_retries_after_an_hour(self) -> None:
        self.store.add(full_name="a/b")

        await self.reconciler.reconcile(_candidate(), TransientFailure(reason="timeout"))

        row = self.store.by_name("a/b")
        self.assertEqual(row["fetch_status"], FetchStatus.RETRY_LATER)
        self.assertEqual(row["next_retry_after"], NOW + timedelta(hours=1))

    async def test_success_resets_failure_counter(self) -> None:
        self.store.add(full_name="a/b", fetch_failure_count=3, fetch_status=FetchStatus.RETRY_LATER)

        await self.reconciler.reconcile(_candidate(), Resolved(data=make_data(42, "a/b")))

        row = self.store.by_name("a/b")
        self.assertEqual(row["fetch_failure_count"], 0)
        self.assertEqual(row["fetch_status"], FetchStatus.FETCHABLE)

    async def test_write_failure_does_not_stop_other_candidates(self) -> None:
        self.store.add(full_name="a/broken")
        self.store.add(full_name="a/fine")
        self.store.fail_for.add("a/broken")

        effects = await self.reconciler.reconcile_all(
            [_candidate(full_name="a/broken"), _candidate(full_name="a/fine")],
            [Resolved(data=make_data(1, "a/broken")), Resolved(data=make_data(2, "a/fine"))],
        )

        self.assertEqual(effects, [ReconcileEffect.WRITE_FAILED, ReconcileEffect.PROMOTED])
        self.assertEqual([s.github_id for s in self.store.snapshots], [2])

    async def test_missing_row_for_complete_repository_skips_snapshot(self) -> None:
        effect = await self.reconciler.reconcile(_candidate(github_id=42), Resolved(data=make_data(42, "a/b")))

        self.assertEqual(effect, ReconcileEffect.WRITE_FAILED)
        self.assertEqual(self.store.snapshots, [])

    async def test_reconcile_all_requires_aligned_inputs(self) -> None:
        with self.assertRaises(ValueError):
            await self.reconciler.reconcile_all([_candidate()], [])

    async def test_failed_snapshot_write_schedules_a_retry(self) -> None:
        self.store.add(full_name="a/b", github_id=42, last_snapshot_at=NOW - timedelta(days=3))
        self.store.fail_for.add("snapshot:42")

        effect = await self.reconciler.reconcile(_candidate(github_id=42, hours=72), Resolved(data=make_data(42, "a/b")))

        row = self.store.by_name("a/b")
        self.assertEqual(effect, ReconcileEffect.WRITE_FAILED)
        self.assertEqual(row["fetch_status"], FetchStatus.RETRY_LATER)
        self.assertEqual(row["fetch_failure_count"], 1)
        self.assertEqual(row["next_retry_after"], NOW + timedelta(hours=1))

    async def test_github_id_mismatch_records_failure_reason(self) -> None:
        self.store.add(full_name="a/b", github_id=1, last_snapshot_at=NOW - timedelta(days=3))

        effect = await self.reconciler.reconcile(_candidate(github_id=1, hours=72), Resolved(data=make_data(2, "a/b")))

        row = self.store.by_name("a/b")
        self.assertEqual(effect, ReconcileEffect.WRITE_FAILED)
        self.assertEqual(row["fetch_failure_count"], 1)
        self.assertIn("github_id=2", row["last_fetch_error"])
