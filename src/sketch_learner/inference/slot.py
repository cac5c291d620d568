from __future__ import annotations

import threading

from .types import LiveModel


class ModelSlot:
    """Single-writer holder for the live model.

    Readers get either a complete model or None; ``swap`` replaces the whole
    reference under the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._model: LiveModel | None = None

    def get(self) -> LiveModel | None:
        with self._lock:
            return self._model

    def swap(self, model: LiveModel) -> LiveModel | None:
        with self._lock:
            old = self._model
            self._model = model
        return old

    def clear(self) -> LiveModel | None:
        with self._lock:
            old = self._model
            self._model = None
        return old

    @property
    def ready(self) -> bool:
        return self.get() is not None
