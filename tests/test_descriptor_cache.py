from gate_server.database import DescriptorCache

from .conftest import FakeClock


def make_cache(tmp_path, clock, ttl=60):
    return DescriptorCache(tmp_path / "cache", default_ttl=ttl, clock=clock)


def test_put_then_get_within_ttl(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[0.1, 0.2], [0.3, 0.4]])

    clock.advance(59)
    assert cache.get("descriptors_ana") == [[0.1, 0.2], [0.3, 0.4]]


def test_missing_key_returns_none(tmp_path, clock):
    assert make_cache(tmp_path, clock).get("descriptors_nobody") is None


def test_expired_entry_is_evicted_and_stays_gone(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[1.0]])

    clock.advance(61)
    assert cache.get("descriptors_ana") is None
    assert cache.keys() == []

    # Going back in time cannot bring it back
    clock.advance(-61)
    assert cache.get("descriptors_ana") is None


def test_max_age_overrides_default_ttl(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[1.0]])
    clock.advance(30)

    assert cache.get("descriptors_ana", max_age=10) is None


def test_per_entry_ttl(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("short", [[1.0]], ttl=5)
    cache.put("long", [[2.0]])
    clock.advance(6)

    assert cache.get("short") is None
    assert cache.get("long") == [[2.0]]


def test_put_replaces_whole_value(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[1.0], [2.0]])
    cache.put("descriptors_ana", [[3.0]])

    assert cache.get("descriptors_ana") == [[3.0]]


def test_corrupt_entry_is_a_miss(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[1.0]])
    path = cache._path("descriptors_ana")
    path.write_text("{not json")

    assert cache.get("descriptors_ana") is None
    assert not path.exists()


def test_invalidate_single_key(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[1.0]])

    assert cache.invalidate("descriptors_ana") == 1
    assert cache.invalidate("descriptors_ana") == 0
    assert cache.get("descriptors_ana") is None


def test_invalidate_by_prefix(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_ana", [[1.0]])
    cache.put("descriptors_ben", [[2.0]])
    cache.put("settings", {"theme": "dark"})

    assert cache.invalidate("descriptors_", prefix=True) == 2
    assert cache.keys() == ["settings"]


def test_keys_with_path_characters(tmp_path, clock):
    cache = make_cache(tmp_path, clock)
    cache.put("descriptors_a/b c", [[1.0]])

    assert cache.keys() == ["descriptors_a/b c"]
    assert cache.get("descriptors_a/b c") == [[1.0]]


def test_clear_removes_everything(tmp_path):
    cache = make_cache(tmp_path, FakeClock())
    cache.put("one", 1)
    cache.put("two", 2)

    assert cache.clear() == 2
    assert cache.keys() == []
