from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
import torch
from redis import exceptions as redis_exc

from sketch_learner.errors import AppError, ErrorCode
from sketch_learner.inference.types import LiveModel
from sketch_learner.persistence import FileStore, MemoryStore, PersistenceManager, RedisStore
from sketch_learner.persistence.manager import parse_labels
from sketch_learner.training.model import build_network


def _live(labels: tuple[str, ...]) -> LiveModel:
    torch.manual_seed(0)
    return LiveModel(
        net=build_network(len(labels)),
        labels=labels,
        model_id="m-1",
        created_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC),
    )


def _same_weights(a: LiveModel, b: LiveModel) -> bool:
    sa = a.net.state_dict()
    sb = b.net.state_dict()
    return sa.keys() == sb.keys() and all(torch.equal(sa[k], sb[k]) for k in sa)


def test_round_trip_preserves_labels_and_weights() -> None:
    store = MemoryStore()
    mgr = PersistenceManager(store, "k")
    live = _live(("circle", "square", "triangle"))
    mgr.save(live)
    assert store.keys() == ["k/labels", "k/weights"]
    res = mgr.load()
    assert res.model is not None and res.labels_restored
    assert res.model.labels == ("circle", "square", "triangle")
    assert res.model.model_id == "m-1"
    assert res.model.created_at == live.created_at
    assert _same_weights(live, res.model)


def test_load_missing_is_absent() -> None:
    res = PersistenceManager(MemoryStore(), "k").load()
    assert res.absent and res.reason == "missing"


def test_missing_labels_fall_back_to_placeholders() -> None:
    store = MemoryStore()
    mgr = PersistenceManager(store, "k")
    mgr.save(_live(("a", "b")))
    store.delete("k/labels")
    res = mgr.load()
    assert res.model is not None
    assert res.model.labels == ("class_0", "class_1")
    assert res.labels_restored is False


def test_malformed_labels_fall_back_to_placeholders() -> None:
    store = MemoryStore()
    mgr = PersistenceManager(store, "k")
    mgr.save(_live(("a", "b")))
    store.put("k/labels", b"{not json")
    res = mgr.load()
    assert res.model is not None and res.model.labels == ("class_0", "class_1")


def test_inconsistent_labels_are_absent() -> None:
    store = MemoryStore()
    mgr = PersistenceManager(store, "k")
    mgr.save(_live(("a", "b")))
    store.put("k/labels", json.dumps(["a", "b", "c"]).encode())
    res = mgr.load()
    assert res.absent and res.reason == "inconsistent"


def test_corrupt_weights_are_absent() -> None:
    store = MemoryStore()
    store.put("k/weights", b"not a torch file")
    store.put("k/labels", b'["a"]')
    res = PersistenceManager(store, "k").load()
    assert res.absent and res.reason == "weights_unreadable"


def test_save_without_model_fails() -> None:
    with pytest.raises(AppError) as ei:
        PersistenceManager(MemoryStore(), "k").save(None)
    assert ei.value.code is ErrorCode.save_failed


class _FailingLabelsStore(MemoryStore):
    def put(self, key: str, blob: bytes) -> None:
        if key.endswith("/labels"):
            raise OSError("disk full")
        super().put(key, blob)


def test_labels_write_failure_rolls_back_new_weights() -> None:
    store = _FailingLabelsStore()
    mgr = PersistenceManager(store, "k")
    with pytest.raises(AppError) as ei:
        mgr.save(_live(("a", "b")))
    assert ei.value.code is ErrorCode.save_failed
    assert store.get("k/weights") is None


def test_labels_write_failure_restores_previous_weights() -> None:
    store = _FailingLabelsStore()
    store.put("k/weights", b"previous")
    mgr = PersistenceManager(store, "k")
    with pytest.raises(AppError):
        mgr.save(_live(("a", "b")))
    assert store.get("k/weights") == b"previous"


def test_file_store_round_trip(tmp_path: Path) -> None:
    root = tmp_path / "models"
    mgr = PersistenceManager(FileStore(root), "sketch/model")
    live = _live(("x", "y"))
    mgr.save(live)
    assert not [p for p in root.iterdir() if p.name.startswith(".tmp-")]
    res = PersistenceManager(FileStore(root), "sketch/model").load()
    assert res.model is not None and res.model.labels == ("x", "y")
    assert _same_weights(live, res.model)


def test_file_store_get_missing(tmp_path: Path) -> None:
    store = FileStore(tmp_path)
    assert store.get("nope") is None
    store.delete("nope")


class _FakeRedis:
    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}

    def get(self, name: str) -> bytes | None:
        return self.data.get(name)

    def set(self, name: str, value: bytes) -> bool:
        self.data[name] = value
        return True

    def delete(self, *names: str) -> int:
        n = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                n += 1
        return n


def test_redis_store_with_injected_client() -> None:
    fake = _FakeRedis()
    seen: list[str] = []

    def factory(url: str, *, decode_responses: bool = False) -> _FakeRedis:
        seen.append(url)
        return fake

    store = RedisStore("redis://example:6379/0", redis_factory=factory)
    mgr = PersistenceManager(store, "k")
    mgr.save(_live(("a", "b")))
    assert set(fake.data) == {"k/weights", "k/labels"}
    res = mgr.load()
    assert res.model is not None and res.model.labels == ("a", "b")
    assert seen and all(u == "redis://example:6379/0" for u in seen)


class _DownRedis(_FakeRedis):
    def get(self, name: str) -> bytes | None:
        raise redis_exc.ConnectionError("Error 111 connecting to down:6379. Connection refused.")

    def set(self, name: str, value: bytes) -> bool:
        raise redis_exc.ConnectionError("Error 111 connecting to down:6379. Connection refused.")

    def delete(self, *names: str) -> int:
        raise redis_exc.TimeoutError("Timeout reading from socket")


def _down_store() -> RedisStore:
    def factory(url: str, *, decode_responses: bool = False) -> _FakeRedis:
        return _DownRedis()

    return RedisStore("redis://down:6379/0", redis_factory=factory)


def test_redis_outage_surfaces_as_connection_error() -> None:
    store = _down_store()
    with pytest.raises(ConnectionError) as ei:
        store.get("k/weights")
    assert isinstance(ei.value.__cause__, redis_exc.ConnectionError)
    with pytest.raises(ConnectionError):
        store.put("k/weights", b"x")
    with pytest.raises(ConnectionError):
        store.delete("k/weights")


def test_redis_outage_load_is_absent_and_save_fails_cleanly() -> None:
    mgr = PersistenceManager(_down_store(), "k")
    res = mgr.load()
    assert res.absent and res.reason == "weights_unreadable"
    with pytest.raises(AppError) as ei:
        mgr.save(_live(("a", "b")))
    assert ei.value.code is ErrorCode.save_failed


def test_parse_labels_rejects_bad_shapes() -> None:
    assert parse_labels(b'["a","b"]') == ("a", "b")
    assert parse_labels(b"[]") is None
    assert parse_labels(b'["a","a"]') is None
    assert parse_labels(b'["a", 1]') is None
    assert parse_labels(b'{"a": 1}') is None


def test_save_rejects_width_label_mismatch() -> None:
    live = LiveModel(
        net=build_network(3), labels=("a", "b"), model_id="m", created_at=datetime.now(UTC)
    )
    store = MemoryStore()
    with pytest.raises(AppError) as ei:
        PersistenceManager(store, "k").save(live)
    assert ei.value.code is ErrorCode.save_failed
    assert store.keys() == []


class _NoRollbackStore(_FailingLabelsStore):
    def delete(self, key: str) -> None:
        raise OSError("disk full")


def test_failed_rollback_still_reports_save_failed() -> None:
    store = _NoRollbackStore()
    mgr = PersistenceManager(store, "k")
    with pytest.raises(AppError) as ei:
        mgr.save(_live(("a", "b")))
    assert ei.value.code is ErrorCode.save_failed
    assert "could not be restored" in ei.value.message
