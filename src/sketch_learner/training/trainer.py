from __future__ import annotations

import random
import secrets
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

import torch
from threadpoolctl import threadpool_limits
from torch import Tensor
from torch.utils.data import DataLoader, TensorDataset

from ..config import SketchConfig
from ..errors import AppError, ErrorCode, app_error
from ..inference.slot import ModelSlot
from ..inference.types import LiveModel
from ..labels import LabelSet
from ..logging import get_logger, log_event
from .dataset import Dataset
from .loops import evaluate, train_epoch
from .model import ARCH, build_model
from .progress import EpochCallback, EpochProgress, emit_epoch

_TRAIN_ERRORS: tuple[type[BaseException], ...] = (RuntimeError, ValueError, TypeError)


@dataclass(frozen=True)
class TrainConfig:
    epochs: int = 10
    batch_size: int = 16
    lr: float = 0.001
    shuffle: bool = True
    seed: int | None = None
    device: str = "cpu"
    threads: int = 0

    @staticmethod
    def from_settings(cfg: SketchConfig, threads: int = 0) -> TrainConfig:
        return TrainConfig(
            epochs=int(cfg.epochs),
            batch_size=int(cfg.batch_size),
            lr=float(cfg.lr),
            seed=cfg.seed,
            device=str(cfg.device),
            threads=int(threads),
        )


@dataclass(frozen=True)
class TrainResult:
    model_id: str
    epochs: int
    n_examples: int
    history: tuple[EpochProgress, ...]
    train_accuracy: float
    time_s: float


def new_model_id() -> str:
    ts = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    return f"{ARCH}-{ts}-{secrets.token_hex(3)}"


class Trainer:
    """Runs one training job at a time and publishes the result into a ModelSlot."""

    def __init__(self, slot: ModelSlot, cfg: TrainConfig | None = None) -> None:
        self._slot = slot
        self._cfg = cfg or TrainConfig()
        self._run_lock = threading.Lock()

    @property
    def config(self) -> TrainConfig:
        return self._cfg

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def train(
        self,
        dataset: Dataset,
        labels: LabelSet,
        *,
        on_epoch: EpochCallback | None = None,
    ) -> TrainResult:
        n_labels = len(labels)
        if dataset.usable_count(labels) < n_labels:
            raise app_error(
                ErrorCode.insufficient_data,
                f"Need at least 1 example per class ({n_labels} total)",
            )
        if not self._run_lock.acquire(blocking=False):
            raise app_error(ErrorCode.training_in_progress)
        try:
            return self._run(dataset, labels, on_epoch)
        finally:
            self._run_lock.release()

    def _run(
        self, dataset: Dataset, labels: LabelSet, on_epoch: EpochCallback | None
    ) -> TrainResult:
        log = get_logger()
        cfg = self._cfg
        snapshot = labels.snapshot()
        n_used = dataset.usable_count(labels)
        t0 = time.perf_counter()
        try:
            with _thread_limits(cfg.threads), dataset.batch(labels) as (x_all, y_all):
                live, history, acc = self._fit(x_all, y_all, snapshot, on_epoch)
        except AppError:
            raise
        except _TRAIN_ERRORS as exc:
            log.error("training_failed error=%s", exc)
            raise app_error(ErrorCode.training_failed, f"Training failed: {exc}") from exc
        finally:
            if cfg.device.startswith("cuda") and torch.cuda.is_available():
                torch.cuda.empty_cache()
        self._slot.swap(live)
        dt = time.perf_counter() - t0
        log_event(
            "training_complete",
            fields={
                "model_id": live.model_id,
                "n_classes": len(snapshot),
                "n_examples": n_used,
                "accuracy": acc,
                "time_s": round(dt, 3),
            },
        )
        return TrainResult(
            model_id=live.model_id,
            epochs=len(history),
            n_examples=n_used,
            history=tuple(history),
            train_accuracy=acc,
            time_s=dt,
        )

    def _fit(
        self,
        x_all: Tensor,
        y_all: Tensor,
        snapshot: tuple[str, ...],
        on_epoch: EpochCallback | None,
    ) -> tuple[LiveModel, list[EpochProgress], float]:
        cfg = self._cfg
        log = get_logger()
        device = torch.device(cfg.device)
        if cfg.seed is not None:
            _set_seed(cfg.seed)
        compiled = build_model(len(snapshot), lr=cfg.lr)
        net = compiled.net.to(device)
        loader: DataLoader[tuple[Tensor, ...]] = DataLoader(
            TensorDataset(x_all, y_all), batch_size=cfg.batch_size, shuffle=cfg.shuffle
        )
        log.info(
            f"training_started n_examples={int(x_all.shape[0])} n_classes={len(snapshot)} "
            f"epochs={cfg.epochs} batch_size={cfg.batch_size} device={device}"
        )
        history: list[EpochProgress] = []
        for ep in range(1, cfg.epochs + 1):
            loss, acc = train_epoch(
                net, _pairs(loader), device, compiled.optimizer, ep=ep, ep_total=cfg.epochs
            )
            progress = EpochProgress(epoch=ep, total_epochs=cfg.epochs, loss=loss, accuracy=acc)
            history.append(progress)
            log.info(f"epoch_done idx={ep} loss={loss:.4f} accuracy={acc:.4f}")
            emit_epoch(on_epoch, progress)
        train_acc = evaluate(net, _pairs(loader), device)
        net.eval()
        live = LiveModel(
            net=net.cpu(),
            labels=snapshot,
            model_id=new_model_id(),
            created_at=datetime.now(UTC),
        )
        return live, history, float(train_acc)


def _pairs(loader: DataLoader[tuple[Tensor, ...]]) -> Iterator[tuple[Tensor, Tensor]]:
    for batch in loader:
        x, y = batch
        yield x, y


@contextmanager
def _thread_limits(threads: int) -> Iterator[None]:
    """Cap torch and BLAS threads for one run, restoring the previous torch setting."""
    if threads <= 0:
        yield
        return
    previous = torch.get_num_threads()
    torch.set_num_threads(threads)
    try:
        with threadpool_limits(limits=threads):
            yield
    finally:
        torch.set_num_threads(previous)


def _set_seed(seed: int) -> None:
    random.seed(seed)
    torch.manual_seed(seed)
