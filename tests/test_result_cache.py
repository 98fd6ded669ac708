from __future__ import annotations

import pytest

from codex_bridge.engine.result_cache import ResultCache, fingerprint


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_fingerprint_is_deterministic_and_input_sensitive() -> None:
    base = fingerprint("prompt", "s1", "ctx", "o3")
    assert base == fingerprint("prompt", "s1", "ctx", "o3")
    assert len(base) == 64
    assert base != fingerprint("prompt", "s2", "ctx", "o3")
    assert base != fingerprint("prompt", "s1", None, "o3")
    assert base != fingerprint("prompt", "s1", "ctx", None)
    # Field boundaries matter.
    assert fingerprint("ab", "c") != fingerprint("a", "bc")


def test_lookup_returns_stored_text_until_ttl() -> None:
    clock = _Clock()
    cache = ResultCache(ttl=10, clock=clock)
    cache.store("k", "full text")

    clock.now += 9
    assert cache.lookup("k") == "full text"
    clock.now += 1
    assert cache.lookup("k") is None
    assert cache.get_entry("k") is None


def test_store_overwrites_and_resets_age() -> None:
    clock = _Clock()
    cache = ResultCache(ttl=10, clock=clock)
    cache.store("k", "old")
    clock.now += 8
    cache.store("k", "new")
    clock.now += 8
    assert cache.lookup("k") == "new"
    assert len(cache) == 1


def test_purge_expired_removes_only_expired_entries() -> None:
    clock = _Clock()
    cache = ResultCache(ttl=10, clock=clock)
    cache.store("old", "a")
    clock.now += 6
    cache.store("young", "b")
    clock.now += 5

    assert cache.purge_expired() == 1
    assert len(cache) == 1
    assert cache.lookup("young") == "b"


def test_oldest_entry_dropped_when_full() -> None:
    cache = ResultCache(ttl=60, max_entries=2)
    cache.store("a", "1")
    cache.store("b", "2")
    cache.store("c", "3")
    assert cache.lookup("a") is None
    assert cache.lookup("b") == "2"
    assert cache.lookup("c") == "3"


def test_clear_and_invalid_ttl() -> None:
    cache = ResultCache(ttl=60)
    cache.store("a", "1")
    cache.clear()
    assert len(cache) == 0
    with pytest.raises(ValueError):
        ResultCache(ttl=0)
