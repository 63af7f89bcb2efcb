import unittest
from datetime import timedelta

from snapshot_collector.domain.models import FetchStatus, RepositoryState, TrackedRepository
from snapshot_collector.domain.policies import PriorityPolicy, RetryPolicy

from fakes import NOW

OLD = NOW - timedelta(days=30)


def _repo(**fields) -> TrackedRepository:
    fields.setdefault("full_name", "octocat/hello")
    fields.setdefault("discovered_at", OLD)
    return TrackedRepository(**fields)


class TestPriorityPolicy(unittest.TestCase):
    def setUp(self) -> None:
        self.policy = PriorityPolicy()

    def test_stub_is_always_due_first(self) -> None:
        stub = _repo(github_id=None, discovered_at=NOW - timedelta(minutes=5))

        self.assertEqual(stub.state, RepositoryState.STUB)
        self.assertEqual(self.policy.score(stub, NOW), 1100)

    def test_recent_discovery_is_due_regardless_of_snapshot_age(self) -> None:
        repo = _repo(github_id=1, discovered_at=NOW - timedelta(hours=47), last_snapshot_at=NOW - timedelta(minutes=1))

        self.assertEqual(self.policy.score(repo, NOW), 1000)

    def test_never_snapshotted_after_window(self) -> None:
        repo = _repo(github_id=1, discovered_at=NOW - timedelta(hours=49))

        self.assertEqual(self.policy.score(repo, NOW), 900)

    def test_only_never_snapshotted_complete_records_are_possibly_incomplete(self) -> None:
        population = self.policy.prioritize([
            _repo(full_name="a/stub"),
            _repo(full_name="a/bare", github_id=1),
            _repo(full_name="a/known", github_id=2, last_snapshot_at=NOW - timedelta(days=10)),
        ], NOW)

        flags = {candidate.full_name: candidate.possibly_incomplete for candidate in population}
        self.assertEqual(flags, {"a/stub": False, "a/bare": True, "a/known": False})

    def test_star_tiers_and_intervals(self) -> None:
        cases = [
            (10_000, 20, 800),
            (1_000, 22, 700),
            (100, 44, 500),
            (10, 68, 300),
            (0, 168, 100),
        ]
        for stars, interval, score in cases:
            with self.subTest(stars=stars):
                due = _repo(github_id=1, stars=stars, last_snapshot_at=NOW - timedelta(hours=interval))
                early = _repo(github_id=1, stars=stars, last_snapshot_at=NOW - timedelta(hours=interval - 1))

                self.assertEqual(self.policy.score(due, NOW), score)
                self.assertEqual(self.policy.score(early, NOW), 0)

    def test_not_due_repositories_are_excluded(self) -> None:
        repo = _repo(github_id=7, stars=50, last_snapshot_at=NOW - timedelta(hours=10))

        self.assertEqual(self.policy.prioritize([repo], NOW), [])

    def test_tie_break_prefers_stalest_data(self) -> None:
        fresher = _repo(github_id=1, full_name="a/fresher", stars=500, last_snapshot_at=NOW - timedelta(hours=50))
        staler = _repo(github_id=2, full_name="a/staler", stars=900, last_snapshot_at=NOW - timedelta(hours=90))

        candidates = self.policy.prioritize([fresher, staler], NOW)

        self.assertEqual([c.full_name for c in candidates], ["a/staler", "a/fresher"])
        self.assertEqual(candidates[0].priority_score, candidates[1].priority_score)
        self.assertAlmostEqual(candidates[0].hours_since_last_snapshot, 90)

    def test_orders_by_tier_first(self) -> None:
        popular = _repo(github_id=1, full_name="a/popular", stars=20_000, last_snapshot_at=NOW - timedelta(hours=21))
        small = _repo(github_id=2, full_name="a/small", stars=3, last_snapshot_at=NOW - timedelta(days=60))
        stub = _repo(full_name="a/stub")

        candidates = self.policy.prioritize([small, popular, stub], NOW)

        self.assertEqual([c.full_name for c in candidates], ["a/stub", "a/popular", "a/small"])

    def test_ineligible_repositories_are_skipped(self) -> None:
        stale = NOW - timedelta(days=30)
        repos = [
            _repo(github_id=1, full_name="a/archived", is_archived=True, last_snapshot_at=stale),
            _repo(github_id=2, full_name="a/disabled", is_disabled=True, last_snapshot_at=stale),
            _repo(github_id=3, full_name="a/gone", fetch_status=FetchStatus.NOT_FOUND, last_snapshot_at=stale),
            _repo(github_id=4, full_name="a/dead", fetch_status=FetchStatus.UNREACHABLE, last_snapshot_at=stale),
            _repo(github_id=5, full_name="a/waiting", fetch_status=FetchStatus.RETRY_LATER,
                  next_retry_after=NOW + timedelta(hours=1), last_snapshot_at=stale),
            _repo(github_id=6, full_name="a/retry", fetch_status=FetchStatus.RETRY_LATER,
                  next_retry_after=NOW - timedelta(hours=1), last_snapshot_at=stale),
        ]

        candidates = self.policy.prioritize(repos, NOW)

        self.assertEqual([c.full_name for c in candidates], ["a/retry"])

    def test_tiers_are_configurable(self) -> None:
        policy = PriorityPolicy(star_tiers=(
            {"min_stars": 0, "interval_hours": 1, "score": 10},
        ))
        repo = _repo(github_id=1, stars=5, last_snapshot_at=NOW - timedelta(hours=2))

        self.assertEqual(policy.score(repo, NOW), 10)


class TestRetryPolicy(unittest.TestCase):
    def test_escalating_backoff(self) -> None:
        policy = RetryPolicy()
        expected = {1: 1, 2: 6, 3: 24, 4: 168}

        for failures, hours in expected.items():
            with self.subTest(failures=failures):
                status, next_retry_after = policy.after_failure(failures, NOW)
                self.assertEqual(status, FetchStatus.RETRY_LATER)
                self.assertEqual(next_retry_after, NOW + timedelta(hours=hours))

    def test_fifth_failure_is_permanent(self) -> None:
        policy = RetryPolicy()

        for failures in (5, 6, 12):
            status, next_retry_after = policy.after_failure(failures, NOW)
            self.assertEqual(status, FetchStatus.UNREACHABLE)
            self.assertIsNone(next_retry_after)
