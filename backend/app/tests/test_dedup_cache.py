"""Unit tests for the event deduplication cache.

WHAT:
    Event id derivation and the admit-once-per-window contract.

WHY:
    Every duplicate that slips through is a double-counted conversion in
    Meta Ads Manager.

REFERENCES:
    - app/services/dedup_cache.py (module under test)
"""

import hashlib
from concurrent.futures import ThreadPoolExecutor

from app.services.dedup_cache import MS_PER_HOUR, DeduplicationCache, generate_event_id


class TestGenerateEventId:
    """Test the md5(session_event_second) id."""

    def test_matches_pixel_formula(self):
        """WHAT: Same value the browser pixel computes.
        WHY: Meta dedups browser + server only when the ids are equal.
        """
        expected = hashlib.md5(b"sess_1_Purchase_1730000000").hexdigest()
        assert generate_event_id("sess_1", "Purchase", 1730000000456) == expected

    def test_same_second_shares_id(self):
        assert generate_event_id("s", "Lead", 1730000000001) == generate_event_id("s", "Lead", 1730000000999)

    def test_next_second_differs(self):
        assert generate_event_id("s", "Lead", 1730000000999) != generate_event_id("s", "Lead", 1730000001000)

    def test_session_and_name_are_part_of_the_key(self):
        base = generate_event_id("s1", "Lead", 1730000000000)
        assert generate_event_id("s2", "Lead", 1730000000000) != base
        assert generate_event_id("s1", "PageView", 1730000000000) != base


class TestAdmit:
    """Test admit/release/sweep semantics."""

    def test_second_admit_is_duplicate(self, cache):
        assert cache.admit("k1") is True
        assert cache.admit("k1") is False
        assert "k1" in cache
        assert len(cache) == 1

    def test_key_is_known_for_the_whole_window(self, cache, clock):
        cache.admit("k1")
        clock.advance(24 * MS_PER_HOUR)
        assert cache.admit("k1") is False

    def test_key_expires_after_the_window(self, cache, clock):
        """WHAT: Once older than the window, the key is admitted again.
        WHY: Memory is bounded by time only.
        """
        cache.admit("k1")
        clock.advance(24 * MS_PER_HOUR + 1)
        assert "k1" not in cache
        assert cache.admit("k1") is True

    def test_release_allows_readmission(self, cache):
        cache.admit("k1")
        cache.release("k1")
        assert cache.admit("k1") is True

    def test_release_unknown_key_is_noop(self, cache):
        cache.release("never-seen")
        assert len(cache) == 0

    def test_disabled_cache_admits_everything(self, clock):
        cache = DeduplicationCache(enabled=False, clock=clock)
        assert cache.admit("k1") is True
        assert cache.admit("k1") is True
        assert len(cache) == 0

    def test_sweep_removes_only_expired(self, cache, clock):
        cache.admit("old")
        clock.advance(23 * MS_PER_HOUR)
        cache.admit("recent")
        clock.advance(2 * MS_PER_HOUR)

        assert cache.sweep() == 1
        assert "old" not in cache
        assert "recent" in cache

    def test_max_entries_evicts_oldest(self, clock):
        cache = DeduplicationCache(max_entries=2, clock=clock)
        for key in ("a", "b", "c"):
            cache.admit(key)

        assert len(cache) == 2
        assert "a" not in cache
        assert "c" in cache

    def test_clear(self, cache):
        cache.admit("k1")
        cache.clear()
        assert cache.admit("k1") is True


class TestConcurrency:
    def test_concurrent_admits_accept_exactly_one(self, cache):
        """WHAT: Check-and-insert is a single critical section.
        WHY: Parallel requests for the same purchase must send it once.
        """
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(lambda _: cache.admit("same-key"), range(64)))

        assert results.count(True) == 1
        assert results.count(False) == 63
