from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote

from redis.exceptions import RedisError

from ..config import StorageConfig

if TYPE_CHECKING:

    class RedisClient(Protocol):  # pragma: no cover - typing only
        def get(self, name: str) -> bytes | None: ...
        def delete(self, *names: str) -> int: ...
        def set(self, name: str, value: bytes) -> bool | None: ...

    def redis_from_url(url: str, *, decode_responses: bool = False) -> RedisClient: ...

else:  # pragma: no cover - runtime only

    def redis_from_url(url: str, *, decode_responses: bool = False) -> RedisClient:
        import redis

        return redis.Redis.from_url(url, decode_responses=decode_responses)


class RedisFactory(Protocol):  # pragma: no cover - typing only
    def __call__(self, url: str, *, decode_responses: bool = False) -> RedisClient: ...


class KeyValueStore(Protocol):
    def put(self, key: str, blob: bytes) -> None: ...
    def get(self, key: str) -> bytes | None: ...
    def delete(self, key: str) -> None: ...


_STORE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    RuntimeError,
    ValueError,
    TypeError,
    ConnectionError,
)


class MemoryStore:
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def put(self, key: str, blob: bytes) -> None:
        self._data[key] = bytes(blob)

    def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileStore:
    """One file per key under ``root``; writes go through a temp file and ``os.replace``."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def _path(self, key: str) -> Path:
        return self._root / quote(key, safe="-_.")

    def put(self, key: str, blob: bytes) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        dest = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(blob)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, dest)
        except OSError as exc:
            logging.getLogger("sketch_learner").error(
                "file_store_put_failed key=%s error=%s", key, exc
            )
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes | None:
        p = self._path(key)
        if not p.exists():
            return None
        return p.read_bytes()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class RedisStore:
    def __init__(self, url: str, *, redis_factory: RedisFactory | None = None) -> None:
        self._url = url
        self._redis_factory: RedisFactory = redis_factory or redis_from_url

    def put(self, key: str, blob: bytes) -> None:
        try:
            self._redis_factory(self._url).set(key, blob)
        except _STORE_ERRORS as e:
            logging.getLogger("sketch_learner").error("redis_put_error key=%s error=%s", key, e)
            raise
        except RedisError as e:
            logging.getLogger("sketch_learner").error("redis_put_error key=%s error=%s", key, e)
            raise ConnectionError(f"redis put failed: {e}") from e

    def get(self, key: str) -> bytes | None:
        try:
            val = self._redis_factory(self._url).get(key)
        except _STORE_ERRORS as e:
            logging.getLogger("sketch_learner").error("redis_get_error key=%s error=%s", key, e)
            raise
        except RedisError as e:
            logging.getLogger("sketch_learner").error("redis_get_error key=%s error=%s", key, e)
            raise ConnectionError(f"redis get failed: {e}") from e
        return bytes(val) if val is not None else None

    def delete(self, key: str) -> None:
        try:
            self._redis_factory(self._url).delete(key)
        except _STORE_ERRORS as e:
            logging.getLogger("sketch_learner").error("redis_delete_error key=%s error=%s", key, e)
            raise
        except RedisError as e:
            logging.getLogger("sketch_learner").error("redis_delete_error key=%s error=%s", key, e)
            raise ConnectionError(f"redis delete failed: {e}") from e


def make_store(cfg: StorageConfig) -> KeyValueStore:
    if cfg.backend == "memory":
        return MemoryStore()
    if cfg.backend == "redis":
        return RedisStore(cfg.redis_url)
    return FileStore(cfg.root)
