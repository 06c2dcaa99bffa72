from __future__ import annotations

import threading
import unittest

from leadflow.cache import MISS, TtlCache


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class SingleFlightTests(unittest.TestCase):
    def test_concurrent_misses_run_loader_once(self) -> None:
        cache = TtlCache(ttl_seconds=60)
        release = threading.Event()
        calls = []
        results = []
        lock = threading.Lock()

        def loader() -> dict:
            calls.append(1)
            release.wait(5)
            return {"lead": 7}

        def reader() -> None:
            value = cache.get_or_load("lead:7", loader)
            with lock:
                results.append(value)

        threads = [threading.Thread(target=reader) for _ in range(12)]
        for t in threads:
            t.start()
        release.set()
        for t in threads:
            t.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(len(results), 12)
        self.assertTrue(all(r == {"lead": 7} for r in results))
        self.assertEqual(cache.stats().loads, 1)

    def test_loader_error_is_raised_and_not_cached(self) -> None:
        cache = TtlCache()

        def broken() -> int:
            raise RuntimeError("backing store down")

        with self.assertRaises(RuntimeError):
            cache.get_or_load("leads:count", broken)
        self.assertIs(cache.get("leads:count"), MISS)
        self.assertEqual(cache.get_or_load("leads:count", lambda: 3), 3)

    def test_invalidation_during_load_drops_the_loaded_value(self) -> None:
        cache = TtlCache()
        started = threading.Event()
        release = threading.Event()

        def slow_loader() -> str:
            started.set()
            release.wait(5)
            return "old"

        worker = threading.Thread(target=lambda: cache.get_or_load("lead:1", slow_loader))
        worker.start()
        self.assertTrue(started.wait(5))
        cache.invalidate("lead:1")
        release.set()
        worker.join(5)

        self.assertIs(cache.get("lead:1"), MISS)

    def test_reader_after_invalidation_does_not_join_the_stale_load(self) -> None:
        for pattern in ("lead:1", "lead:*"):
            with self.subTest(pattern=pattern):
                cache = TtlCache()
                backing = {"lead:1": "old"}
                started = threading.Event()
                release = threading.Event()
                first = []

                def slow_loader() -> str:
                    value = backing["lead:1"]
                    started.set()
                    release.wait(5)
                    return value

                worker = threading.Thread(target=lambda: first.append(cache.get_or_load("lead:1", slow_loader)))
                worker.start()
                self.assertTrue(started.wait(5))

                backing["lead:1"] = "new"
                cache.invalidate(pattern)
                self.assertEqual(cache.get_or_load("lead:1", lambda: backing["lead:1"]), "new")

                release.set()
                worker.join(5)
                self.assertEqual(first, ["old"])
                self.assertEqual(cache.get("lead:1"), "new")
                self.assertEqual(cache.stats().loads, 2)


class ExpiryAndInvalidationTests(unittest.TestCase):
    def test_entries_expire_after_ttl(self) -> None:
        clock = FakeMonotonic()
        cache = TtlCache(ttl_seconds=60, clock=clock)
        cache.set("lead:1", "a")
        clock.value += 59
        self.assertEqual(cache.get("lead:1"), "a")
        clock.value += 2
        self.assertIs(cache.get("lead:1"), MISS)

    def test_exact_invalidation_is_immediate(self) -> None:
        cache = TtlCache()
        cache.set("lead:1", "a")
        cache.set("lead:2", "b")
        cache.invalidate("lead:1")
        self.assertIs(cache.get("lead:1"), MISS)
        self.assertEqual(cache.get("lead:2"), "b")

    def test_queued_pattern_hides_older_entries_until_sweep(self) -> None:
        cache = TtlCache()
        cache.set("leads:list:100:1", ["a"])
        cache.set("leads:count", 1)
        cache.set("lead:9", "keep")

        cache.invalidate("leads:*")
        self.assertEqual(cache.stats().pending_patterns, 1)
        self.assertIs(cache.get("leads:count"), MISS)

        cache.set("leads:count", 2)
        self.assertEqual(cache.get("leads:count"), 2)

        removed = cache.sweep()
        self.assertEqual(removed, 1)
        self.assertEqual(cache.stats().pending_patterns, 0)
        self.assertEqual(cache.get("leads:count"), 2)
        self.assertEqual(cache.get("lead:9"), "keep")
        self.assertIs(cache.get("leads:list:100:1"), MISS)

    def test_lru_eviction_beyond_max_entries(self) -> None:
        cache = TtlCache(max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        self.assertEqual(cache.get("a"), 1)
        self.assertIs(cache.get("b"), MISS)
        self.assertEqual(cache.get("c"), 3)

    def test_stats_count_hits_and_misses(self) -> None:
        cache = TtlCache()
        cache.get("x")
        cache.set("x", 1)
        cache.get("x")
        stats = cache.stats()
        self.assertEqual((stats.hits, stats.misses, stats.size), (1, 1, 1))
        self.assertAlmostEqual(stats.hit_rate, 0.5)

    def test_sweeper_thread_applies_patterns(self) -> None:
        cache = TtlCache()
        cache.set("sequences:name:a", 1)
        cache.invalidate("sequences:*")
        cache.start_sweeper(0.01)
        try:
            for _ in range(200):
                if cache.stats().pending_patterns == 0:
                    break
                threading.Event().wait(0.01)
        finally:
            cache.stop_sweeper()
        self.assertEqual(cache.stats().pending_patterns, 0)
        self.assertEqual(cache.stats().size, 0)


if __name__ == "__main__":
    unittest.main()
