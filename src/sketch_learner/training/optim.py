from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from torch.nn.parameter import Parameter
from torch.optim.adam import Adam
from torch.optim.optimizer import Optimizer


class _TrainableModel(Protocol):
    def parameters(self) -> Iterable[Parameter]: ...  # pragma: no cover - typing only


def build_optimizer(model: _TrainableModel, *, lr: float) -> Optimizer:
    if lr <= 0.0:
        raise ValueError("lr must be > 0")
    return Adam(model.parameters(), lr=lr)
