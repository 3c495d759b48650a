"""Unit tests for cache/store.py -- session store adapters.

Covers:
- MemorySessionStore TTL expiry, scan, establish/rotate/revoke atomic steps
- the refresh_owner index follows every establish, rotate and revoke
- access_latest outlives the access key for the refresh TTL
- expired entries are swept opportunistically from establish/rotate
- rotate() is a compare-and-swap
- UnavailableSessionStore refuses everything
- RedisSessionStore maps connection errors to StoreUnavailable, flips
  `available`, and recovers after the retry window
- build_session_store() picks the adapter from REDIS_URL
"""

from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from cache.store import (
    MemorySessionStore,
    RedisSessionStore,
    UnavailableSessionStore,
    access_key,
    build_session_store,
    latest_access_key,
    owner_key,
    refresh_key,
)
from core.errors import StoreUnavailable

# ---------------------------------------------------------------------------
# MemorySessionStore
# ---------------------------------------------------------------------------


def test_put_get_expires_with_ttl(session_store, clock):
    session_store.put("k", "v", ttl=10)
    assert session_store.get("k") == "v"
    clock.advance(9)
    assert session_store.get("k") == "v"
    clock.advance(1)
    assert session_store.get("k") is None


def test_delete_counts_removed_keys(session_store):
    session_store.put("a", "1", ttl=10)
    session_store.put("b", "2", ttl=10)
    assert session_store.delete("a", "b", "missing") == 2
    assert session_store.get("a") is None


def test_scan_filters_by_prefix_and_skips_expired(session_store, clock):
    session_store.put("refresh:1", "fp1", ttl=100)
    session_store.put("refresh:2", "fp2", ttl=5)
    session_store.put("access:1", "afp", ttl=100)
    clock.advance(6)
    assert dict(session_store.scan("refresh:")) == {"refresh:1": "fp1"}


def test_establish_writes_all_session_keys(session_store):
    session_store.establish("7", "afp", "rfp", 900, 3600)
    assert session_store.get(access_key("7")) == "afp"
    assert session_store.get(refresh_key("7")) == "rfp"
    assert session_store.owner_of("rfp") == "7"
    assert session_store.get(latest_access_key("7")) == "afp"


def test_establish_supersedes_previous_session(session_store):
    session_store.establish("7", "afp1", "rfp1", 900, 3600)
    session_store.establish("7", "afp2", "rfp2", 900, 3600)
    assert session_store.get(access_key("7")) == "afp2"
    assert session_store.owner_of("rfp1") is None
    assert session_store.owner_of("rfp2") == "7"


def test_rotate_is_compare_and_swap(session_store):
    session_store.establish("7", "afp1", "rfp1", 900, 3600)
    assert session_store.rotate("7", "rfp1", "afp2", "rfp2", 900, 3600) is True
    # Second attempt from the same starting artifact loses.
    assert session_store.rotate("7", "rfp1", "afp3", "rfp3", 900, 3600) is False
    assert session_store.get(access_key("7")) == "afp2"
    assert session_store.get(refresh_key("7")) == "rfp2"
    assert session_store.owner_of("rfp1") is None
    assert session_store.owner_of("rfp3") is None


def test_rotate_without_session_fails(session_store):
    assert session_store.rotate("7", "rfp1", "afp2", "rfp2", 900, 3600) is False
    assert session_store.get(access_key("7")) is None


def test_rotate_after_refresh_ttl_fails(session_store, clock):
    session_store.establish("7", "afp1", "rfp1", 900, 3600)
    clock.advance(3600)
    assert session_store.rotate("7", "rfp1", "afp2", "rfp2", 900, 3600) is False


def test_revoke_removes_record_and_index(session_store):
    session_store.establish("7", "afp", "rfp", 900, 3600)
    assert session_store.revoke("7") is True
    assert session_store.get(access_key("7")) is None
    assert session_store.get(refresh_key("7")) is None
    assert session_store.owner_of("rfp") is None
    assert session_store.get(latest_access_key("7")) is None
    assert session_store.revoke("7") is False


def test_purge_expired(session_store, clock):
    session_store.establish("7", "afp", "rfp", 900, 3600)
    clock.advance(1000)
    assert session_store.purge_expired() == 1
    assert session_store.get(refresh_key("7")) == "rfp"
    assert session_store.get(latest_access_key("7")) == "afp"


def test_latest_access_outlives_access_key(session_store, clock):
    session_store.establish("7", "afp1", "rfp1", 900, 3600)
    clock.advance(901)
    assert session_store.get(access_key("7")) is None
    assert session_store.get(latest_access_key("7")) == "afp1"
    assert session_store.rotate("7", "rfp1", "afp2", "rfp2", 900, 3600) is True
    assert session_store.get(latest_access_key("7")) == "afp2"


def test_establish_sweeps_expired_entries(session_store, clock):
    session_store.establish("7", "afp", "rfp", 900, 3600)
    session_store.put("stale", "x", ttl=1)
    clock.advance(1000)
    session_store.establish("8", "afp8", "rfp8", 900, 3600)
    # access:7 and stale were dropped without ever being read again.
    assert session_store.purge_expired() == 0


def test_sweep_waits_for_purge_interval(clock):
    store = MemorySessionStore(clock, purge_interval=60)
    store.put("stale", "x", ttl=1)
    clock.advance(30)
    store.establish("7", "afp", "rfp", 900, 3600)
    assert store.purge_expired() == 1


# ---------------------------------------------------------------------------
# UnavailableSessionStore
# ---------------------------------------------------------------------------


def test_unavailable_store_refuses_everything():
    store = UnavailableSessionStore()
    assert store.available is False
    assert store.ping() is False
    with pytest.raises(StoreUnavailable):
        store.get("k")
    with pytest.raises(StoreUnavailable):
        store.establish("7", "a", "r", 1, 2)
    with pytest.raises(StoreUnavailable):
        store.revoke("7")
    store.close()


# ---------------------------------------------------------------------------
# RedisSessionStore (client mocked)
# ---------------------------------------------------------------------------


def _redis_store(retry_seconds: float = 30.0):
    client = MagicMock()
    scripts = {}

    def register(source):
        scripts[source] = MagicMock(name="script")
        return scripts[source]

    client.register_script.side_effect = register
    store = RedisSessionStore(client, retry_seconds=retry_seconds)
    return store, client


def test_redis_rotate_runs_script_with_keys():
    store, _ = _redis_store()
    store._rotate.return_value = 1
    assert store.rotate("7", "old", "afp", "rfp", 900, 3600) is True
    kwargs = store._rotate.call_args.kwargs
    assert kwargs["keys"] == [access_key("7"), refresh_key("7"), owner_key("rfp"), latest_access_key("7")]
    assert kwargs["args"][:3] == ["old", "afp", "rfp"]


def test_redis_rotate_reports_lost_race():
    store, _ = _redis_store()
    store._rotate.return_value = 0
    assert store.rotate("7", "old", "afp", "rfp", 900, 3600) is False


def test_redis_revoke_and_owner_lookup():
    store, client = _redis_store()
    store._revoke.return_value = 2
    client.get.return_value = "7"
    assert store.revoke("7") is True
    assert store.owner_of("rfp") == "7"
    client.get.assert_called_with(owner_key("rfp"))


def test_redis_scan_uses_prefix_match():
    store, client = _redis_store()
    client.scan_iter.return_value = iter(["refresh:1", "refresh:2"])
    client.get.side_effect = ["fp1", None]
    assert list(store.scan("refresh:")) == [("refresh:1", "fp1")]
    assert client.scan_iter.call_args.kwargs["match"] == "refresh:*"


def test_redis_connection_error_marks_store_unavailable():
    store, client = _redis_store(retry_seconds=3600)
    client.get.side_effect = RedisConnectionError("refused")
    assert store.available is True
    with pytest.raises(StoreUnavailable):
        store.get("k")
    assert store.available is False
    client.ping.assert_not_called()


def test_redis_recovers_after_retry_window():
    store, client = _redis_store(retry_seconds=0)
    store._establish.side_effect = RedisConnectionError("refused")
    with pytest.raises(StoreUnavailable):
        store.establish("7", "afp", "rfp", 900, 3600)
    client.ping.return_value = True
    assert store.available is True
    client.ping.assert_called_once()


def test_redis_stays_down_while_ping_fails():
    store, client = _redis_store(retry_seconds=0)
    client.ping.side_effect = RedisConnectionError("refused")
    assert store.ping() is False
    assert store.available is False


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def test_factory_without_url_is_unavailable(settings):
    store = build_session_store(settings.model_copy(update={"redis_url": ""}))
    assert isinstance(store, UnavailableSessionStore)


def test_factory_memory_url(settings, clock):
    store = build_session_store(settings.model_copy(update={"redis_url": "memory://"}), clock)
    assert isinstance(store, MemorySessionStore)
    assert store.available


def test_factory_unreachable_redis_starts_degraded(settings, monkeypatch):
    client = MagicMock()
    client.ping.side_effect = RedisConnectionError("refused")
    monkeypatch.setattr("cache.store.Redis.from_url", MagicMock(return_value=client))
    store = build_session_store(settings.model_copy(update={"redis_url": "redis://cache:6379/0"}))
    assert isinstance(store, RedisSessionStore)
    assert store.available is False
