from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace

from PIL import Image
from torch import Tensor

from .config import Settings
from .errors import AppError, ErrorCode, app_error, default_message
from .inference.engine import InferenceEngine
from .inference.slot import ModelSlot
from .inference.types import Prediction
from .labels import LabelSet
from .logging import get_logger
from .persistence.manager import PersistenceManager
from .persistence.store import KeyValueStore, make_store
from .preprocess import CanvasSource, to_tensor
from .training.dataset import Dataset
from .training.progress import EpochCallback, EpochProgress, format_epoch_status
from .training.trainer import TrainConfig, Trainer, TrainResult

StatusListener = Callable[[str], None]


@dataclass(frozen=True)
class StatusReport:
    ok: bool
    message: str
    code: ErrorCode | None = None
    prediction: Prediction | None = None
    train_result: TrainResult | None = None


class SketchSession:
    """One user's labels, examples and live model behind a single status line.

    Every public action returns a StatusReport; failures never propagate.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: KeyValueStore | None = None,
        engine: InferenceEngine | None = None,
    ) -> None:
        self._settings = settings
        self._lock = threading.RLock()
        self._labels = LabelSet(settings.sketch.default_labels)
        self._current = self._labels.label_at(0)
        self._dataset = Dataset()
        self._slot = ModelSlot()
        self._trainer = Trainer(
            self._slot, TrainConfig.from_settings(settings.sketch, threads=settings.app.threads)
        )
        self._engine = engine or InferenceEngine(self._slot, settings)
        self._persistence = PersistenceManager(
            store if store is not None else make_store(settings.storage),
            key=settings.storage.key,
        )
        self._status = "Ready"
        self._listeners: list[StatusListener] = []

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels.snapshot()

    @property
    def current_label(self) -> str:
        return self._current

    @property
    def status(self) -> str:
        return self._status

    @property
    def slot(self) -> ModelSlot:
        return self._slot

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    @property
    def dataset(self) -> Dataset:
        return self._dataset

    @property
    def training(self) -> bool:
        return self._trainer.running

    def label_counts(self) -> dict[str, int]:
        counts = self._dataset.label_counts()
        return {label: counts.get(label, 0) for label in self._labels}

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def _set_status(self, message: str) -> None:
        self._status = message
        for listener in list(self._listeners):
            listener(message)

    def _ok(
        self,
        message: str,
        *,
        prediction: Prediction | None = None,
        train_result: TrainResult | None = None,
    ) -> StatusReport:
        self._set_status(message)
        return StatusReport(
            ok=True, message=message, prediction=prediction, train_result=train_result
        )

    def _fail(self, exc: AppError, prefix: str | None = None) -> StatusReport:
        msg = exc.message or default_message(exc.code)
        if prefix and not msg.startswith(prefix):
            msg = f"{prefix}: {msg}"
        get_logger().info("action_failed code=%s", exc.code.value)
        self._set_status(msg)
        return StatusReport(ok=False, message=msg, code=exc.code)

    # Labels

    def add_label(self, name: str) -> StatusReport:
        with self._lock:
            try:
                added = self._labels.add(name)
            except AppError as exc:
                return self._fail(exc)
            self._current = added
            return self._ok(f'Added label "{added}"')

    def remove_label(self, name: str | None = None) -> StatusReport:
        with self._lock:
            target = name if name is not None else self._current
            try:
                self._labels.remove(target)
            except AppError as exc:
                return self._fail(exc)
            if self._current not in self._labels:
                self._current = self._labels.label_at(0)
            return self._ok(f'Removed label "{target}"')

    def select_label(self, name: str) -> StatusReport:
        with self._lock:
            if name not in self._labels:
                return self._fail(app_error(ErrorCode.unknown_label, f'Label "{name}" not found'))
            self._current = name
            return self._ok(f'Selected label "{name}"')

    # Examples

    def capture_example(self, source: CanvasSource, label: str | None = None) -> StatusReport:
        return self.add_example(source.capture(), label)

    def add_example(self, img: Image.Image | None, label: str | None = None) -> StatusReport:
        with self._lock:
            target = label if label is not None else self._current
            try:
                tensor = to_tensor(img)
                self._dataset.add_example(tensor, target, self._labels)
            except AppError as exc:
                return self._fail(exc, prefix="Failed to add example")
            return self._ok(f'Added example for "{target}"')

    def reset_examples(self) -> StatusReport:
        with self._lock:
            self._dataset.reset()
            return self._ok("Cleared all examples")

    # Training

    def train(self, on_epoch: EpochCallback | None = None) -> StatusReport:
        def _progress(p: EpochProgress) -> None:
            self._set_status(format_epoch_status(p))
            if on_epoch is not None:
                on_epoch(p)

        with self._lock:
            dataset = self._dataset.copy()
            labels = LabelSet(self._labels.snapshot())
            self._set_status("Training model...")
        # The fit runs on this snapshot, outside the session lock.
        try:
            result = self._trainer.train(dataset, labels, on_epoch=_progress)
        except AppError as exc:
            return self._fail(exc)
        return self._ok("Training complete!", train_result=result)

    # Prediction

    def capture_predict(self, source: CanvasSource) -> StatusReport:
        return self.predict(source.capture())

    def predict(self, img: Image.Image | None, *, timeout: float | None = None) -> StatusReport:
        if not self._slot.ready:
            return self._fail(app_error(ErrorCode.model_not_ready))
        try:
            tensor = to_tensor(img)
            pred = self._run_predict(tensor, timeout)
        except AppError as exc:
            return self._fail(exc, prefix="Prediction failed")
        msg = f'Prediction: "{pred.label}" ({pred.confidence * 100:.1f}%)'
        if pred.stale:
            msg += " - labels changed since training, retrain to update"
        return self._ok(msg, prediction=pred)

    def _run_predict(self, tensor: Tensor, timeout: float | None) -> Prediction:
        labels = self._labels.snapshot()
        if timeout is None:
            return self._engine.predict(tensor, labels)
        fut = self._engine.submit_predict(tensor, labels)
        try:
            return fut.result(timeout=timeout)
        except FutureTimeout:
            fut.cancel()
            raise app_error(ErrorCode.timeout, "Prediction timed out") from None

    # Persistence

    def save(self) -> StatusReport:
        with self._lock:
            try:
                self._persistence.save(self._slot.get())
            except AppError as exc:
                return self._fail(exc)
            return self._ok("Model saved")

    def load(self) -> StatusReport:
        with self._lock:
            result = self._persistence.load()
            if result.model is None:
                msg = default_message(ErrorCode.load_absent)
                if result.reason == "inconsistent":
                    msg = "Saved model ignored: label list does not match model outputs"
                self._set_status(msg)
                return StatusReport(ok=True, message=msg, code=ErrorCode.load_absent)
            live = result.model
            if not result.labels_restored and live.n_classes == len(self._labels):
                # Label names were not saved; keep the current names when the width fits.
                live = replace(live, labels=self._labels.snapshot())
            self._slot.swap(live)
            if live.labels != self._labels.snapshot():
                self._labels = LabelSet(live.labels)
                self._current = self._labels.label_at(0)
            if not result.labels_restored:
                return self._ok("Model loaded (label names were not saved)")
            return self._ok("Model loaded")
