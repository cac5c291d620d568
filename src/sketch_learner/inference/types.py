from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from torch import nn


@dataclass(frozen=True)
class LiveModel:
    """A trained (or restored) network bound to the label snapshot it was trained on."""

    net: nn.Module
    labels: tuple[str, ...]
    model_id: str
    created_at: datetime

    @property
    def n_classes(self) -> int:
        return len(self.labels)


@dataclass(frozen=True)
class Prediction:
    label: str
    index: int
    confidence: float
    probs: tuple[float, ...]  # aligned with the model's label snapshot
    labels: tuple[str, ...]
    stale: bool
    model_id: str
