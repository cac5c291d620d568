from __future__ import annotations

import os
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor

import torch
from torch import Tensor

from ..config import Settings
from ..errors import ErrorCode, app_error
from ..logging import get_logger
from ..preprocess import TENSOR_SHAPE
from .slot import ModelSlot
from .types import Prediction


class InferenceEngine:
    """Runs single-sample predictions against the live model in a ModelSlot."""

    def __init__(self, slot: ModelSlot, settings: Settings) -> None:
        self._slot = slot
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)

    @property
    def ready(self) -> bool:
        return self._slot.ready

    def submit_predict(
        self, tensor: Tensor, labels: Sequence[str] | None = None
    ) -> Future[Prediction]:
        return self._pool.submit(self.predict, tensor, labels)

    def predict(self, tensor: Tensor, labels: Sequence[str] | None = None) -> Prediction:
        live = self._slot.get()
        if live is None:
            raise app_error(ErrorCode.model_not_ready)
        x = _as_batch(tensor)
        live.net.eval()
        with torch.no_grad():
            logits = live.net(x)
            probs = torch.softmax(logits, dim=1)[0]
            probs_py = tuple(float(p) for p in probs.tolist())
        del x, logits, probs
        if len(probs_py) != live.n_classes:
            raise app_error(
                ErrorCode.model_not_ready, "model output width does not match its labels"
            )
        top_idx = argmax_first(probs_py)
        stale = labels is not None and tuple(labels) != live.labels
        if stale:
            self._logger.warning(
                "prediction_stale model_id=%s model_labels=%d current_labels=%d",
                live.model_id,
                live.n_classes,
                len(labels) if labels is not None else 0,
            )
        return Prediction(
            label=live.labels[top_idx],
            index=top_idx,
            confidence=probs_py[top_idx],
            probs=probs_py,
            labels=live.labels,
            stale=stale,
            model_id=live.model_id,
        )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)


def argmax_first(values: Sequence[float]) -> int:
    """Index of the maximum; ties resolve to the lowest index."""
    if not values:
        raise ValueError("empty probability vector")
    top_idx = 0
    best = values[0]
    for i in range(1, len(values)):
        if values[i] > best:
            best = values[i]
            top_idx = i
    return top_idx


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(4, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


def _as_batch(x: Tensor) -> Tensor:
    t = x
    if t.ndim == 3:
        # (28, 28, 1) -> add batch
        t = t.unsqueeze(0)
    if tuple(t.shape) != TENSOR_SHAPE:
        raise app_error(
            ErrorCode.preprocessing_failed,
            f"expected tensor shape {TENSOR_SHAPE}, got {tuple(t.shape)}",
        )
    return t.to(dtype=torch.float32)
