from __future__ import annotations

from datetime import date, timedelta
import threading
import unittest

from attendance_core.models import AdminOverride, AttendanceStatus, LeaveStatus
from attendance_core.services.cache import SingleFlightCache
from attendance_core.services.caches import (
    LeaveWindowCache,
    PolicyCache,
    StatusCache,
    build_caches,
    leave_bucket,
)
from attendance_core.services.status_resolver import LeaveFact, PolicySettings, ResolvedStatus
from attendance_core.settings import Settings


class _FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class SingleFlightCacheTests(unittest.TestCase):
    def test_hit_until_ttl_expires(self) -> None:
        clock = _FakeClock()
        cache: SingleFlightCache[str, int] = SingleFlightCache("test", 60, clock=clock)
        calls: list[int] = []

        def compute() -> int:
            calls.append(1)
            return len(calls)

        self.assertEqual(cache.get_or_compute("k", compute), 1)
        clock.now += 59
        self.assertEqual(cache.get_or_compute("k", compute), 1)
        clock.now += 2
        self.assertEqual(cache.get_or_compute("k", compute), 2)
        stats = cache.stats()
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 2)

    def test_concurrent_misses_share_one_computation(self) -> None:
        cache: SingleFlightCache[str, str] = SingleFlightCache("test", 60)
        started = threading.Event()
        release = threading.Event()
        calls: list[int] = []
        results: list[str] = []

        def compute() -> str:
            calls.append(1)
            started.set()
            release.wait(5)
            return "value"

        def reader() -> None:
            results.append(cache.get_or_compute("k", compute))

        threads = [threading.Thread(target=reader) for _ in range(5)]
        threads[0].start()
        started.wait(5)
        for thread in threads[1:]:
            thread.start()
        # Let the waiters reach the in-flight future before releasing.
        while cache.stats()["shared"] < 4:
            threading.Event().wait(0.01)
        release.set()
        for thread in threads:
            thread.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, ["value"] * 5)

    def test_compute_error_propagates_and_is_not_cached(self) -> None:
        cache: SingleFlightCache[str, int] = SingleFlightCache("test", 60)

        def boom() -> int:
            raise RuntimeError("db down")

        with self.assertRaises(RuntimeError):
            cache.get_or_compute("k", boom)
        self.assertEqual(cache.get_or_compute("k", lambda: 7), 7)

    def test_invalidate_removes_all_keys_in_scope(self) -> None:
        cache: SingleFlightCache[tuple[int, str], int] = SingleFlightCache("test", 60, scope_of=lambda key: key[0])
        cache.get_or_compute((1, "a"), lambda: 1)
        cache.get_or_compute((1, "b"), lambda: 2)
        cache.get_or_compute((2, "a"), lambda: 3)

        self.assertEqual(cache.invalidate(1), 2)
        self.assertIsNone(cache.peek((1, "a")))
        self.assertEqual(cache.peek((2, "a")), 3)

    def test_reads_during_mutation_are_not_stored(self) -> None:
        cache: SingleFlightCache[str, int] = SingleFlightCache("test", 60)
        cache.get_or_compute("k", lambda: 1)
        with cache.mutating("k"):
            self.assertEqual(cache.get_or_compute("k", lambda: 2), 2)
            self.assertIsNone(cache.peek("k"))
        self.assertIsNone(cache.peek("k"))
        self.assertEqual(cache.get_or_compute("k", lambda: 3), 3)

    def test_computation_started_before_mutation_is_discarded(self) -> None:
        cache: SingleFlightCache[str, str] = SingleFlightCache("test", 60)
        started = threading.Event()
        release = threading.Event()

        def slow_compute() -> str:
            started.set()
            release.wait(5)
            return "stale"

        thread = threading.Thread(target=lambda: cache.get_or_compute("k", slow_compute))
        thread.start()
        started.wait(5)
        with cache.mutating("k"):
            pass
        release.set()
        thread.join(5)

        self.assertIsNone(cache.peek("k"))
        self.assertEqual(cache.stats()["discarded"], 1)
        self.assertEqual(cache.get_or_compute("k", lambda: "fresh"), "fresh")

    def test_fences_leave_no_per_scope_state_behind(self) -> None:
        cache: SingleFlightCache[tuple[int, int], int] = SingleFlightCache("test", 60)
        for employee_id in range(100):
            for day in range(100):
                with cache.mutating((employee_id, day)):
                    pass
        self.assertEqual(cache._entries, {})
        self.assertEqual(cache._inflight, {})
        self.assertEqual(len(cache._fenced), 0)
        self.assertEqual(cache.stats()["fenced_scopes"], 0)

    def test_mutating_all_blocks_every_scope(self) -> None:
        cache: SingleFlightCache[str, int] = SingleFlightCache("test", 60)
        cache.get_or_compute("a", lambda: 1)
        cache.get_or_compute("b", lambda: 2)
        with cache.mutating_all():
            self.assertIsNone(cache.peek("a"))
            self.assertEqual(cache.get_or_compute("b", lambda: 20), 20)
            self.assertIsNone(cache.peek("b"))
        self.assertEqual(cache.get_or_compute("a", lambda: 10), 10)
        self.assertEqual(cache.peek("a"), 10)

    def test_computation_started_before_mutating_all_is_discarded(self) -> None:
        cache: SingleFlightCache[str, str] = SingleFlightCache("test", 60)
        started = threading.Event()
        release = threading.Event()

        def slow_compute() -> str:
            started.set()
            release.wait(5)
            return "stale"

        thread = threading.Thread(target=lambda: cache.get_or_compute("k", slow_compute))
        thread.start()
        started.wait(5)
        with cache.mutating_all():
            pass
        release.set()
        thread.join(5)

        self.assertIsNone(cache.peek("k"))
        self.assertEqual(cache.stats()["discarded"], 1)

    def test_expired_entries_purged_past_max_entries(self) -> None:
        clock = _FakeClock()
        cache: SingleFlightCache[int, int] = SingleFlightCache("test", 10, max_entries=2, clock=clock)
        cache.get_or_compute(1, lambda: 1)
        cache.get_or_compute(2, lambda: 2)
        clock.now += 11
        cache.get_or_compute(3, lambda: 3)
        self.assertEqual(cache.stats()["entries"], 1)


class AttendanceCacheTests(unittest.TestCase):
    def test_status_cache_key_includes_override(self) -> None:
        cache = StatusCache(60)
        day = date(2026, 3, 2)
        present = cache.get_or_resolve(7, day, AdminOverride.NONE, lambda: ResolvedStatus(AttendanceStatus.PRESENT))
        overridden = cache.get_or_resolve(
            7,
            day,
            AdminOverride.HALF_DAY,
            lambda: ResolvedStatus(AttendanceStatus.HALF_DAY, is_half_day=True),
        )
        self.assertEqual(present.status, AttendanceStatus.PRESENT)
        self.assertEqual(overridden.status, AttendanceStatus.HALF_DAY)

    def test_status_invalidation_covers_every_override_variant(self) -> None:
        cache = StatusCache(60)
        day = date(2026, 3, 2)
        cache.get_or_resolve(7, day, AdminOverride.NONE, lambda: ResolvedStatus(AttendanceStatus.PRESENT))
        cache.get_or_resolve(7, day, AdminOverride.LATE, lambda: ResolvedStatus(AttendanceStatus.LATE))
        cache.invalidate(7, day)
        fresh = cache.get_or_resolve(7, day, AdminOverride.NONE, lambda: ResolvedStatus(AttendanceStatus.HALF_DAY))
        self.assertEqual(fresh.status, AttendanceStatus.HALF_DAY)
        self.assertEqual(cache.stats()["hits"], 0)

    def test_mutating_many_fences_each_key(self) -> None:
        cache = StatusCache(60)
        days = [date(2026, 3, 2), date(2026, 3, 3)]
        for day in days:
            cache.get_or_resolve(7, day, None, lambda: ResolvedStatus(AttendanceStatus.ABSENT))
        with cache.mutating_many([(7, day) for day in days]):
            pass
        for day in days:
            value = cache.get_or_resolve(7, day, None, lambda: ResolvedStatus(AttendanceStatus.LEAVE))
            self.assertEqual(value.status, AttendanceStatus.LEAVE)

    def test_mutating_many_handles_long_key_lists(self) -> None:
        cache = StatusCache(60)
        days = [date(2024, 1, 1) + timedelta(days=offset) for offset in range(1200)]
        keys = [(7, day) for day in days]
        cache.get_or_resolve(7, days[-1], None, lambda: ResolvedStatus(AttendanceStatus.PRESENT))

        with cache.mutating_many(keys + keys[:10]):
            value = cache.get_or_resolve(7, days[-1], None, lambda: ResolvedStatus(AttendanceStatus.ABSENT))
            self.assertEqual(value.status, AttendanceStatus.ABSENT)
            self.assertIsNone(cache._cache.peek((7, days[0], AdminOverride.NONE)))

        self.assertEqual(cache.stats()["fenced_scopes"], 0)
        value = cache.get_or_resolve(7, days[-1], None, lambda: ResolvedStatus(AttendanceStatus.HALF_DAY))
        self.assertEqual(value.status, AttendanceStatus.HALF_DAY)

    def test_status_clear_drops_every_day(self) -> None:
        cache = StatusCache(60)
        days = [date(2026, 3, 2), date(2026, 3, 3)]
        for day in days:
            cache.get_or_resolve(7, day, None, lambda: ResolvedStatus(AttendanceStatus.ABSENT))
        cache.clear()
        self.assertEqual(cache.stats()["entries"], 0)

    def test_policy_cache_loads_once(self) -> None:
        cache = PolicyCache(3600)
        calls: list[int] = []

        def loader() -> PolicySettings:
            calls.append(1)
            return PolicySettings(grace_period_minutes=15)

        self.assertEqual(cache.get(loader).grace_period_minutes, 15)
        self.assertEqual(cache.get(loader).grace_period_minutes, 15)
        self.assertEqual(len(calls), 1)
        cache.invalidate()
        cache.get(loader)
        self.assertEqual(len(calls), 2)

    def test_leave_window_loads_month_bucket(self) -> None:
        cache = LeaveWindowCache(300)
        windows: list[tuple[date, date]] = []

        def loader(start: date, end: date) -> dict[date, LeaveFact]:
            windows.append((start, end))
            return {date(2026, 2, 10): LeaveFact(status=LeaveStatus.APPROVED)}

        self.assertIsNotNone(cache.leave_for_date(3, date(2026, 2, 10), loader))
        self.assertIsNone(cache.leave_for_date(3, date(2026, 2, 11), loader))
        self.assertEqual(windows, [(date(2026, 2, 1), date(2026, 2, 28))])

        cache.invalidate(3)
        cache.leave_for_date(3, date(2026, 2, 11), loader)
        self.assertEqual(len(windows), 2)

    def test_leave_bucket_is_calendar_month(self) -> None:
        self.assertEqual(leave_bucket(date(2028, 2, 15)), (date(2028, 2, 1), date(2028, 2, 29)))

    def test_build_caches_uses_settings_ttls(self) -> None:
        caches = build_caches(Settings(policy_cache_ttl_seconds=10, status_cache_ttl_seconds=5, leave_cache_ttl_seconds=7))
        stats = caches.stats()
        self.assertEqual(stats["policy"]["ttl_seconds"], 10)
        self.assertEqual(stats["status"]["ttl_seconds"], 5)
        self.assertEqual(stats["leave_window"]["ttl_seconds"], 7)


if __name__ == "__main__":
    unittest.main()
