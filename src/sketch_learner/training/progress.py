from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class EpochProgress:
    epoch: int  # 1-based
    total_epochs: int
    loss: float | None
    accuracy: float | None


class EpochCallback(Protocol):
    def __call__(self, progress: EpochProgress) -> None: ...


def format_epoch_status(progress: EpochProgress) -> str:
    loss_str = f"{progress.loss:.4f}" if progress.loss is not None else "N/A"
    acc_str = f"{progress.accuracy:.3f}" if progress.accuracy is not None else "N/A"
    return f"Epoch {progress.epoch}/{progress.total_epochs} - loss: {loss_str} acc: {acc_str}"


def emit_epoch(callback: EpochCallback | None, progress: EpochProgress) -> None:
    if callback is None:
        return
    try:
        callback(progress)
    except (RuntimeError, ValueError, TypeError) as exc:
        logging.getLogger("sketch_learner").error("progress_callback_failed error=%s", exc)
        raise
