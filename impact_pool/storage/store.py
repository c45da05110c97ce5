"""
impact_pool/storage/store.py — Durable key-value store with expiry.

Two backends share one small interface:

    FileStore   — one JSON file per key, atomic write-then-rename. Suitable for
                  a single host (CLI runs, tests, one API process). Conditional
                  operations hold an flock on a sidecar file, so separate
                  processes sharing the directory stay mutually exclusive.
    RedisStore  — redis-py client; the multi-instance backend. Conditional
                  deletes and TTL refreshes run as Lua scripts so that the
                  compare and the write happen atomically on the server.

Values are JSON-serialisable objects. Every backend failure surfaces as
PersistenceError so callers handle one exception type.
"""

import fcntl
import json
import logging
import os
import threading
import time
import urllib.parse
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

import redis

from impact_pool.errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface implemented by every store backend."""

    backend_name = "base"

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        raise NotImplementedError

    def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        """Create *key* only if it does not exist (or has expired)."""
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def delete_if_field(self, key: str, field_name: str, expected: str) -> bool:
        """Delete *key* only if its dict value has ``value[field_name] == expected``."""
        raise NotImplementedError

    def expire_if_field(
        self,
        key: str,
        field_name: str,
        expected: str,
        ttl_seconds: float,
        updates: Optional[dict] = None,
    ) -> bool:
        """Reset the expiry of *key* only if ``value[field_name] == expected``.

        *updates* are merged into the dict value in the same atomic step.
        """
        raise NotImplementedError


# ---------------------------------------------------------------------------
# FileStore
# ---------------------------------------------------------------------------

class FileStore(KeyValueStore):
    """JSON-file store rooted at *root_dir*.

    Each key lives in ``{root_dir}/{quoted key}.json`` as
    ``{"value": ..., "expires_at": epoch seconds or null}``. Writes go to a
    uniquely named ``.tmp`` file first and are moved into place with
    os.replace, so readers never see a half-written entry.

    set_if_absent, delete_if_field and expire_if_field read, compare and
    write under an exclusive flock on ``{root_dir}/.mutex`` (plus a thread
    lock), so two stores on the same directory, in one process or in
    several, never both see an expired key as free.

    Args:
        root_dir: Directory holding the entries (created if missing).
        clock:    Time source returning epoch seconds; injectable for tests.
    """

    backend_name = "file"

    def __init__(self, root_dir: str, clock: Callable[[], float] = time.time) -> None:
        self._dir = root_dir
        self._clock = clock
        self._lock = threading.RLock()
        self._mutex_path = os.path.join(root_dir, ".mutex")
        try:
            os.makedirs(self._dir, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"Cannot create store directory {root_dir}: {exc}") from exc

    def _path(self, key: str) -> str:
        return os.path.join(self._dir, urllib.parse.quote(key, safe="") + ".json")

    def _tmp_path(self, target: str) -> str:
        return f"{target}.{os.getpid()}.{uuid.uuid4().hex}.tmp"

    def _entry(self, value: Any, ttl_seconds: Optional[float]) -> dict:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        return {"value": value, "expires_at": expires_at}

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the directory-wide mutex. Not reentrant across calls."""
        with self._lock:
            try:
                fh = open(self._mutex_path, "a+")
            except OSError as exc:
                raise PersistenceError(f"Cannot open store mutex {self._mutex_path}: {exc}") from exc
            with fh:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def _read(self, key: str) -> Optional[dict]:
        """Return the live entry for *key*, or None if absent/expired/corrupt."""
        path = self._path(key)
        try:
            with open(path, "r", encoding="utf-8") as fh:
                entry = json.load(fh)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            logger.warning("Corrupt store entry %s — treating as absent", path)
            return None
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc}") from exc

        expires_at = entry.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return entry

    def _write_tmp(self, target: str, entry: dict) -> str:
        tmp = self._tmp_path(target)
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(entry, fh, indent=2, default=str)
        return tmp

    def _replace(self, key: str, value: Any, ttl_seconds: Optional[float]) -> None:
        target = self._path(key)
        try:
            tmp = self._write_tmp(target, self._entry(value, ttl_seconds))
            os.replace(tmp, target)
        except (OSError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Cannot write {key}: {exc}") from exc

    def _remove(self, key: str) -> bool:
        try:
            os.remove(self._path(key))
            return True
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise PersistenceError(f"Cannot delete {key}: {exc}") from exc

    def _matching(self, key: str, field_name: str, expected: str) -> Optional[dict]:
        """Live dict value of *key* whose *field_name* equals *expected*, else None."""
        entry = self._read(key)
        if entry is None:
            return None
        value = entry.get("value")
        if not isinstance(value, dict) or str(value.get(field_name)) != expected:
            return None
        return value

    def get(self, key: str) -> Optional[Any]:
        entry = self._read(key)
        return None if entry is None else entry.get("value")

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._replace(key, value, ttl_seconds)

    def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        with self._exclusive():
            if self._read(key) is not None:
                return False
            # Expired or corrupt leftovers are simply overwritten.
            self._replace(key, value, ttl_seconds)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._remove(key)

    def delete_if_field(self, key: str, field_name: str, expected: str) -> bool:
        with self._exclusive():
            if self._matching(key, field_name, expected) is None:
                return False
            return self._remove(key)

    def expire_if_field(
        self,
        key: str,
        field_name: str,
        expected: str,
        ttl_seconds: float,
        updates: Optional[dict] = None,
    ) -> bool:
        with self._exclusive():
            value = self._matching(key, field_name, expected)
            if value is None:
                return False
            self._replace(key, {**value, **(updates or {})}, ttl_seconds)
            return True


# ---------------------------------------------------------------------------
# RedisStore
# ---------------------------------------------------------------------------

_DELETE_IF_FIELD_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
local ok, decoded = pcall(cjson.decode, current)
if ok and type(decoded) == 'table' and tostring(decoded[ARGV[1]]) == ARGV[2] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

_EXPIRE_IF_FIELD_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if not current then
  return 0
end
local ok, decoded = pcall(cjson.decode, current)
if ok and type(decoded) == 'table' and tostring(decoded[ARGV[1]]) == ARGV[2] then
  if ARGV[4] then
    for field, v in pairs(cjson.decode(ARGV[4])) do
      decoded[field] = v
    end
    redis.call('SET', KEYS[1], cjson.encode(decoded), 'EX', tonumber(ARGV[3]))
    return 1
  end
  return redis.call('EXPIRE', KEYS[1], tonumber(ARGV[3]))
end
return 0
"""


class RedisStore(KeyValueStore):
    """Redis-backed store. All keys are namespaced under *prefix*.

    Args:
        client: A redis.Redis client created with ``decode_responses=True``.
        prefix: Key namespace shared by all engine instances.
    """

    backend_name = "redis"

    def __init__(self, client: Any, prefix: str = "impact_pool:") -> None:
        self._redis = client
        self._prefix = prefix
        self._delete_if_field = self._redis.register_script(_DELETE_IF_FIELD_SCRIPT)
        self._expire_if_field = self._redis.register_script(_EXPIRE_IF_FIELD_SCRIPT)

    @classmethod
    def from_url(cls, url: str, prefix: str = "impact_pool:") -> "RedisStore":
        client = redis.Redis.from_url(url, encoding="utf-8", decode_responses=True)
        return cls(client, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _ttl(ttl_seconds: Optional[float]) -> Optional[int]:
        return max(1, int(ttl_seconds)) if ttl_seconds else None

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self._redis.get(self._key(key))
        except redis.RedisError as exc:
            raise PersistenceError(f"Redis GET {key} failed: {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Corrupt Redis value for %s — treating as absent", key)
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        try:
            self._redis.set(self._key(key), json.dumps(value, default=str), ex=self._ttl(ttl_seconds))
        except (redis.RedisError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Redis SET {key} failed: {exc}") from exc

    def set_if_absent(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> bool:
        try:
            created = self._redis.set(
                self._key(key),
                json.dumps(value, default=str),
                nx=True,
                ex=self._ttl(ttl_seconds),
            )
        except (redis.RedisError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Redis SET NX {key} failed: {exc}") from exc
        return bool(created)

    def delete(self, key: str) -> bool:
        try:
            return bool(self._redis.delete(self._key(key)))
        except redis.RedisError as exc:
            raise PersistenceError(f"Redis DEL {key} failed: {exc}") from exc

    def delete_if_field(self, key: str, field_name: str, expected: str) -> bool:
        try:
            result = self._delete_if_field(keys=[self._key(key)], args=[field_name, expected])
        except redis.RedisError as exc:
            raise PersistenceError(f"Redis conditional DEL {key} failed: {exc}") from exc
        return bool(int(result or 0))

    def expire_if_field(
        self,
        key: str,
        field_name: str,
        expected: str,
        ttl_seconds: float,
        updates: Optional[dict] = None,
    ) -> bool:
        args = [field_name, expected, str(self._ttl(ttl_seconds))]
        if updates:
            args.append(json.dumps(updates, default=str))
        try:
            result = self._expire_if_field(keys=[self._key(key)], args=args)
        except redis.RedisError as exc:
            raise PersistenceError(f"Redis conditional EXPIRE {key} failed: {exc}") from exc
        return bool(int(result or 0))


def open_store(url: str) -> KeyValueStore:
    """Return a RedisStore for ``redis://``/``rediss://`` URLs, else a FileStore."""
    if url.startswith(("redis://", "rediss://", "unix://")):
        logger.info("Using Redis store at %s", url.split("@")[-1])
        return RedisStore.from_url(url)
    logger.info("Using file store at %s", os.path.abspath(url))
    return FileStore(url)
