"""
cache/store.py -- TTL-keyed session store adapters.

The session store holds one record per identity, split across namespaced keys:

    access:<identity>        -> fingerprint of the current access token    (TTL = access TTL)
    refresh:<identity>       -> fingerprint of the current refresh artifact (TTL = refresh TTL)
    refresh_owner:<fp>       -> identity owning refresh artifact <fp>       (TTL = refresh TTL)
    access_latest:<identity> -> fingerprint of the current access token    (TTL = refresh TTL)

refresh_owner is the reverse index that turns the refresh flow into a single
point lookup. It is written and removed in the same atomic step as the
refresh key it mirrors. access_latest outlives the access token so logout
can still match a lapsed token against the live session. scan() walks a
namespace and exists for the slower lookup mode (REFRESH_LOOKUP=scan).

Atomicity:
  establish(), rotate() and revoke() are each one atomic step. Redis runs them
  as server-side Lua scripts, so there is never a read-then-write across two
  round trips. rotate() is a compare-and-swap on refresh:<identity>: of two
  concurrent rotations starting from the same artifact, exactly one succeeds.

Availability:
  Every adapter exposes `available`. A store that cannot be reached raises
  StoreUnavailable from each operation; the session manager decides per flow
  whether that degrades or fails the request. RedisSessionStore flips to
  unavailable on connection errors and pings it again once
  store_retry_seconds have passed.

Usage:
    store = build_session_store(settings)
    store.establish("42", access_fp, refresh_fp, 900, 604800)
    store.get(access_key("42"))          # returns str or None
    store.rotate("42", refresh_fp, new_access_fp, new_refresh_fp, 900, 604800)
    store.revoke("42")
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from typing import Protocol

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from core.clock import Clock, SystemClock
from core.config import Settings
from core.errors import StoreUnavailable

logger = logging.getLogger("sessionwarden.store")

ACCESS_PREFIX = "access:"
REFRESH_PREFIX = "refresh:"
OWNER_PREFIX = "refresh_owner:"
LATEST_PREFIX = "access_latest:"


def access_key(identity: str) -> str:
    return f"{ACCESS_PREFIX}{identity}"


def refresh_key(identity: str) -> str:
    return f"{REFRESH_PREFIX}{identity}"


def owner_key(refresh_fp: str) -> str:
    return f"{OWNER_PREFIX}{refresh_fp}"


def latest_access_key(identity: str) -> str:
    return f"{LATEST_PREFIX}{identity}"


class SessionStore(Protocol):
    """Operations the session manager needs from a TTL key/value store."""

    @property
    def available(self) -> bool: ...

    def ping(self) -> bool: ...

    def put(self, key: str, value: str, ttl: int) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, *keys: str) -> int: ...

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]: ...

    def establish(self, identity: str, access_fp: str, refresh_fp: str, access_ttl: int, refresh_ttl: int) -> None: ...

    def rotate(
        self,
        identity: str,
        expected_refresh_fp: str,
        access_fp: str,
        refresh_fp: str,
        access_ttl: int,
        refresh_ttl: int,
    ) -> bool: ...

    def owner_of(self, refresh_fp: str) -> str | None: ...

    def revoke(self, identity: str) -> bool: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-process store
# ---------------------------------------------------------------------------


class MemorySessionStore:
    """Thread-safe TTL map for single-process deployments and tests.

    One lock guards every operation, which gives establish/rotate/revoke the
    same all-or-nothing behaviour the Redis scripts have. Expired entries are
    dropped lazily on read, and establish()/rotate() sweep the whole map at
    most once per purge_interval seconds so index entries that are never read
    again do not accumulate.
    """

    def __init__(self, clock: Clock | None = None, purge_interval: float = 60.0) -> None:
        self._clock = clock or SystemClock()
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._purge_interval = purge_interval
        self._last_purge = self._now()

    @property
    def available(self) -> bool:
        return True

    def ping(self) -> bool:
        return True

    def _now(self) -> float:
        return self._clock.now().timestamp()

    def _get_locked(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._now() >= expires_at:
            del self._data[key]
            return None
        return value

    def _set_locked(self, key: str, value: str, ttl: int) -> None:
        self._data[key] = (value, self._now() + ttl)

    def _purge_locked(self) -> int:
        now = self._now()
        stale = [key for key, (_, expires_at) in self._data.items() if now >= expires_at]
        for key in stale:
            del self._data[key]
        self._last_purge = now
        return len(stale)

    def _write_session_locked(
        self, identity: str, access_fp: str, refresh_fp: str, access_ttl: int, refresh_ttl: int
    ) -> None:
        if self._now() - self._last_purge >= self._purge_interval:
            self._purge_locked()
        self._set_locked(access_key(identity), access_fp, access_ttl)
        self._set_locked(latest_access_key(identity), access_fp, refresh_ttl)
        self._set_locked(refresh_key(identity), refresh_fp, refresh_ttl)
        self._set_locked(owner_key(refresh_fp), identity, refresh_ttl)

    def put(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._set_locked(key, value, ttl)

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._get_locked(key)

    def delete(self, *keys: str) -> int:
        with self._lock:
            return sum(1 for key in keys if self._data.pop(key, None) is not None)

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        with self._lock:
            snapshot = [key for key in self._data if key.startswith(prefix)]
            pairs = [(key, self._get_locked(key)) for key in snapshot]
        for key, value in pairs:
            if value is not None:
                yield key, value

    def establish(self, identity: str, access_fp: str, refresh_fp: str, access_ttl: int, refresh_ttl: int) -> None:
        with self._lock:
            previous = self._get_locked(refresh_key(identity))
            if previous is not None:
                self._data.pop(owner_key(previous), None)
            self._write_session_locked(identity, access_fp, refresh_fp, access_ttl, refresh_ttl)

    def rotate(
        self,
        identity: str,
        expected_refresh_fp: str,
        access_fp: str,
        refresh_fp: str,
        access_ttl: int,
        refresh_ttl: int,
    ) -> bool:
        with self._lock:
            current = self._get_locked(refresh_key(identity))
            if current is None or current != expected_refresh_fp:
                return False
            self._data.pop(owner_key(current), None)
            self._write_session_locked(identity, access_fp, refresh_fp, access_ttl, refresh_ttl)
            return True

    def owner_of(self, refresh_fp: str) -> str | None:
        return self.get(owner_key(refresh_fp))

    def revoke(self, identity: str) -> bool:
        with self._lock:
            current = self._get_locked(refresh_key(identity))
            if current is not None:
                self._data.pop(owner_key(current), None)
            removed = [
                self._data.pop(key, None)
                for key in (access_key(identity), refresh_key(identity), latest_access_key(identity))
            ]
        return any(entry is not None for entry in removed)

    def purge_expired(self) -> int:
        """Drop all expired entries now. Returns the number removed."""
        with self._lock:
            return self._purge_locked()

    def close(self) -> None:
        with self._lock:
            self._data.clear()


# ---------------------------------------------------------------------------
# No store configured
# ---------------------------------------------------------------------------


class UnavailableSessionStore:
    """Stand-in when no session cache is configured.

    The service runs permanently in degraded mode: access tokens are accepted
    on signature and expiry alone, and refresh is not possible.
    """

    @property
    def available(self) -> bool:
        return False

    def ping(self) -> bool:
        return False

    def _fail(self, *args, **kwargs):
        raise StoreUnavailable("No session store configured.")

    put = get = delete = scan = establish = rotate = owner_of = revoke = _fail

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

# KEYS: access, refresh, new owner, latest access
# ARGV: access_fp, refresh_fp, access_ttl, refresh_ttl, owner_prefix, identity
_ESTABLISH_SCRIPT = """
local previous = redis.call('GET', KEYS[2])
if previous then
  redis.call('DEL', ARGV[5] .. previous)
end
redis.call('SET', KEYS[1], ARGV[1], 'EX', ARGV[3])
redis.call('SET', KEYS[2], ARGV[2], 'EX', ARGV[4])
redis.call('SET', KEYS[3], ARGV[6], 'EX', ARGV[4])
redis.call('SET', KEYS[4], ARGV[1], 'EX', ARGV[4])
return 1
"""

# KEYS: access, refresh, new owner, latest access
# ARGV: expected_refresh_fp, access_fp, refresh_fp, access_ttl, refresh_ttl, owner_prefix, identity
_ROTATE_SCRIPT = """
local current = redis.call('GET', KEYS[2])
if current ~= ARGV[1] then
  return 0
end
redis.call('DEL', ARGV[6] .. current)
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[4])
redis.call('SET', KEYS[2], ARGV[3], 'EX', ARGV[5])
redis.call('SET', KEYS[3], ARGV[7], 'EX', ARGV[5])
redis.call('SET', KEYS[4], ARGV[2], 'EX', ARGV[5])
return 1
"""

# KEYS: access, refresh, latest access   ARGV: owner_prefix
_REVOKE_SCRIPT = """
local current = redis.call('GET', KEYS[2])
if current then
  redis.call('DEL', ARGV[1] .. current)
end
return redis.call('DEL', KEYS[1], KEYS[2], KEYS[3])
"""

_UNREACHABLE = (RedisConnectionError, RedisTimeoutError)


class RedisSessionStore:
    """Session store backed by a shared Redis instance (redis-py, sync client).

    The owner index key of the *previous* artifact is derived inside the
    scripts from the stored fingerprint, so the scripts touch one key not
    listed in KEYS. That is fine on a single Redis node; a cluster deployment
    would need hash tags on the four namespaces.
    """

    def __init__(self, client: Redis, retry_seconds: float = 30.0) -> None:
        self._client = client
        self._retry_seconds = retry_seconds
        self._down_since: float | None = None
        self._establish = client.register_script(_ESTABLISH_SCRIPT)
        self._rotate = client.register_script(_ROTATE_SCRIPT)
        self._revoke = client.register_script(_REVOKE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 2.0, retry_seconds: float = 30.0) -> "RedisSessionStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client, retry_seconds=retry_seconds)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    @property
    def available(self) -> bool:
        """False while the store is known to be down.

        Once retry_seconds have elapsed since the last failure, the next read
        of this flag pings the server and restores availability on success.
        """
        if self._down_since is None:
            return True
        if time.monotonic() - self._down_since < self._retry_seconds:
            return False
        return self.ping()

    def ping(self) -> bool:
        try:
            self._client.ping()
        except _UNREACHABLE as exc:
            self._mark_down(exc)
            return False
        if self._down_since is not None:
            logger.info("Session store reachable again")
            self._down_since = None
        return True

    def _mark_down(self, exc: Exception) -> None:
        if self._down_since is None:
            logger.warning("Session store unreachable, entering degraded mode: %s", exc)
        self._down_since = time.monotonic()

    def _call(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except _UNREACHABLE as exc:
            self._mark_down(exc)
            raise StoreUnavailable("Session store unreachable.") from exc

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def put(self, key: str, value: str, ttl: int) -> None:
        self._call(self._client.set, key, value, ex=ttl)

    def get(self, key: str) -> str | None:
        return self._call(self._client.get, key)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._call(self._client.delete, *keys))

    def scan(self, prefix: str) -> Iterator[tuple[str, str]]:
        keys = self._call(lambda: list(self._client.scan_iter(match=f"{prefix}*", count=500)))
        for key in keys:
            value = self.get(key)
            if value is not None:
                yield key, value

    # ------------------------------------------------------------------
    # Session record operations (atomic, server-side)
    # ------------------------------------------------------------------

    def establish(self, identity: str, access_fp: str, refresh_fp: str, access_ttl: int, refresh_ttl: int) -> None:
        self._call(
            self._establish,
            keys=[access_key(identity), refresh_key(identity), owner_key(refresh_fp), latest_access_key(identity)],
            args=[access_fp, refresh_fp, access_ttl, refresh_ttl, OWNER_PREFIX, identity],
        )

    def rotate(
        self,
        identity: str,
        expected_refresh_fp: str,
        access_fp: str,
        refresh_fp: str,
        access_ttl: int,
        refresh_ttl: int,
    ) -> bool:
        swapped = self._call(
            self._rotate,
            keys=[access_key(identity), refresh_key(identity), owner_key(refresh_fp), latest_access_key(identity)],
            args=[expected_refresh_fp, access_fp, refresh_fp, access_ttl, refresh_ttl, OWNER_PREFIX, identity],
        )
        return bool(int(swapped))

    def owner_of(self, refresh_fp: str) -> str | None:
        return self.get(owner_key(refresh_fp))

    def revoke(self, identity: str) -> bool:
        removed = self._call(
            self._revoke,
            keys=[access_key(identity), refresh_key(identity), latest_access_key(identity)],
            args=[OWNER_PREFIX],
        )
        return int(removed) > 0

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_session_store(settings: Settings, clock: Clock | None = None) -> SessionStore:
    """Return the session store selected by REDIS_URL.

    ""          -> UnavailableSessionStore (stateless mode, logged as a warning)
    memory://   -> MemorySessionStore
    redis://... -> RedisSessionStore; an unreachable server at startup does not
                   prevent the service from starting, it starts degraded.
    """
    url = settings.redis_url.strip()
    if not url:
        logger.warning(
            "No REDIS_URL configured: sessions cannot be revoked or refreshed (stateless access tokens only)"
        )
        return UnavailableSessionStore()
    if url.startswith("memory://"):
        logger.info("Using in-process session store")
        return MemorySessionStore(clock)
    store = RedisSessionStore.from_url(
        url,
        socket_timeout=settings.redis_socket_timeout,
        retry_seconds=settings.store_retry_seconds,
    )
    if store.ping():
        logger.info("Redis session store connected")
    return store
