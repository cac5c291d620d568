from __future__ import annotations

import io
import json
import pickle
import zipfile
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

import torch
from torch import Tensor

from ..errors import ErrorCode, app_error
from ..inference.types import LiveModel
from ..logging import get_logger, log_event
from ..preprocess import preprocess_signature
from ..training.model import ARCH, build_network, output_width, validate_state_dict
from .store import KeyValueStore

SCHEMA_VERSION: Final[str] = "v1"
DEFAULT_KEY: Final[str] = "sketch-learner-model"
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    KeyError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)
_STORE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    RuntimeError,
    ValueError,
    TypeError,
    ConnectionError,
)


@dataclass(frozen=True)
class LoadResult:
    model: LiveModel | None
    reason: str | None = None
    labels_restored: bool = False

    @property
    def absent(self) -> bool:
        return self.model is None


class PersistenceManager:
    """Stores the live model as two co-located artifacts: weights and label order.

    ``<key>/weights`` holds a torch-serialized state dict with metadata and
    ``<key>/labels`` a JSON list of label names. Saves are both-or-neither.
    """

    def __init__(self, store: KeyValueStore, key: str = DEFAULT_KEY) -> None:
        self._store = store
        self._key = key

    @property
    def weights_key(self) -> str:
        return f"{self._key}/weights"

    @property
    def labels_key(self) -> str:
        return f"{self._key}/labels"

    def save(self, live: LiveModel | None) -> None:
        if live is None:
            raise app_error(ErrorCode.save_failed, "No trained model to save")
        if output_width(live.net) != live.n_classes:
            raise app_error(ErrorCode.save_failed, "Model outputs do not match its label list")
        log = get_logger()
        try:
            weights_blob = serialize_weights(live)
            labels_blob = json.dumps(list(live.labels)).encode("utf-8")
        except (RuntimeError, ValueError, TypeError, pickle.PicklingError) as exc:
            raise app_error(ErrorCode.save_failed, f"Save failed: {exc}") from exc
        try:
            previous = self._store.get(self.weights_key)
        except _STORE_ERRORS as exc:
            raise app_error(ErrorCode.save_failed, f"Save failed: {exc}") from exc
        try:
            self._store.put(self.weights_key, weights_blob)
        except _STORE_ERRORS as exc:
            raise app_error(ErrorCode.save_failed, f"Save failed: {exc}") from exc
        try:
            self._store.put(self.labels_key, labels_blob)
        except _STORE_ERRORS as exc:
            log.error("labels_write_failed key=%s error=%s", self.labels_key, exc)
            if not self._rollback_weights(previous):
                raise app_error(
                    ErrorCode.save_failed,
                    f"Save failed: {exc}; previous weights could not be restored",
                ) from exc
            raise app_error(ErrorCode.save_failed, f"Save failed: {exc}") from exc
        log_event(
            "model_saved",
            fields={
                "model_id": live.model_id,
                "n_classes": live.n_classes,
                "bytes": len(weights_blob),
            },
        )

    def _rollback_weights(self, previous: bytes | None) -> bool:
        try:
            if previous is None:
                self._store.delete(self.weights_key)
            else:
                self._store.put(self.weights_key, previous)
        except _STORE_ERRORS as exc:
            get_logger().error("weights_rollback_failed key=%s error=%s", self.weights_key, exc)
            return False
        return True

    def load(self) -> LoadResult:
        log = get_logger()
        try:
            raw = self._store.get(self.weights_key)
        except _STORE_ERRORS as exc:
            log.info("weights_read_failed error=%s", exc)
            return LoadResult(model=None, reason="weights_unreadable")
        if raw is None:
            return LoadResult(model=None, reason="missing")
        try:
            net_sd, meta = deserialize_weights(raw)
            n_classes = validate_state_dict(net_sd)
        except _LOAD_ERRORS as exc:
            log.info("weights_invalid error=%s", exc)
            return LoadResult(model=None, reason="weights_unreadable")
        if meta.get("preprocess_hash") != preprocess_signature():
            log.info("weights_incompatible preprocess_hash=%s", meta.get("preprocess_hash"))
            return LoadResult(model=None, reason="incompatible")
        net = build_network(n_classes)
        try:
            net.load_state_dict(net_sd)
        except _LOAD_ERRORS as exc:
            log.info("state_dict_invalid error=%s", exc)
            return LoadResult(model=None, reason="weights_unreadable")
        net.eval()

        labels = self._read_labels()
        labels_restored = labels is not None
        if labels is None:
            log.warning("labels_missing n_classes=%d", n_classes)
            labels = tuple(f"class_{i}" for i in range(n_classes))
        elif len(labels) != n_classes:
            log.warning("labels_inconsistent labels=%d n_classes=%d", len(labels), n_classes)
            return LoadResult(model=None, reason="inconsistent")

        live = LiveModel(
            net=net,
            labels=labels,
            model_id=str(meta.get("model_id") or f"{ARCH}-restored"),
            created_at=_parse_created(meta.get("created_at")),
        )
        log_event(
            "model_loaded",
            fields={
                "model_id": live.model_id,
                "n_classes": n_classes,
                "labels_restored": labels_restored,
            },
        )
        return LoadResult(model=live, labels_restored=labels_restored)

    def _read_labels(self) -> tuple[str, ...] | None:
        try:
            raw = self._store.get(self.labels_key)
        except _STORE_ERRORS as exc:
            get_logger().info("labels_read_failed error=%s", exc)
            return None
        if raw is None:
            return None
        return parse_labels(raw)


def serialize_weights(live: LiveModel) -> bytes:
    state = {k: v.detach().cpu().clone() for k, v in live.net.state_dict().items()}
    payload: dict[str, object] = {
        "schema_version": SCHEMA_VERSION,
        "arch": ARCH,
        "model_id": live.model_id,
        "created_at": live.created_at.isoformat(),
        "n_classes": live.n_classes,
        "preprocess_hash": preprocess_signature(),
        "state_dict": state,
    }
    buf = io.BytesIO()
    torch.save(payload, buf)
    return buf.getvalue()


def deserialize_weights(raw: bytes) -> tuple[dict[str, Tensor], dict[str, object]]:
    obj: object = torch.load(io.BytesIO(raw), map_location=torch.device("cpu"), weights_only=True)
    if not isinstance(obj, dict):
        raise ValueError("weights artifact must be a dict")
    if obj.get("schema_version") != SCHEMA_VERSION or obj.get("arch") != ARCH:
        raise ValueError("unsupported weights schema or architecture")
    sd_obj = obj.get("state_dict")
    if not isinstance(sd_obj, dict):
        raise ValueError("weights artifact has no state dict")
    sd: dict[str, Tensor] = {}
    for k, v in sd_obj.items():
        if isinstance(k, str) and torch.is_tensor(v):
            sd[k] = v
        else:
            raise ValueError("invalid state dict entry")
    meta = {str(k): v for k, v in obj.items() if k != "state_dict"}
    return sd, meta


def parse_labels(raw: bytes) -> tuple[str, ...] | None:
    """Decode the JSON label list; None when it is not a list of unique non-empty strings."""
    try:
        obj: object = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(obj, list) or not obj:
        return None
    out: list[str] = []
    for item in obj:
        if not isinstance(item, str) or not item.strip():
            return None
        out.append(item)
    if len(set(out)) != len(out):
        return None
    return tuple(out)


def _parse_created(val: object) -> datetime:
    if isinstance(val, str) and val:
        try:
            return datetime.fromisoformat(val)
        except ValueError:
            return datetime.now(UTC)
    return datetime.now(UTC)
