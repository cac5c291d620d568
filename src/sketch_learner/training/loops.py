from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

import torch
import torch.nn.functional as F  # noqa: N812
from torch import Tensor
from torch.optim.optimizer import Optimizer

from ..logging import get_logger


class _TrainableModel(Protocol):
    def train(self, mode: bool = True) -> object: ...  # pragma: no cover - typing only
    def eval(self) -> object: ...  # pragma: no cover - typing only
    def __call__(self, x: Tensor) -> Tensor: ...  # pragma: no cover - typing only


def train_epoch(
    model: _TrainableModel,
    loader: Iterable[tuple[Tensor, Tensor]],
    device: torch.device,
    optimizer: Optimizer,
    *,
    ep: int,
    ep_total: int,
) -> tuple[float, float]:
    """Run one pass over ``loader``; return (mean loss, accuracy).

    Targets are one-hot rows, so the loss is categorical cross-entropy over
    the softmax of the logits.
    """
    log = get_logger()
    model.train()
    total = 0
    correct = 0
    loss_sum = 0.0
    n_batches = 0
    for x, y in loader:
        x = x.to(device)
        y = y.to(device)
        optimizer.zero_grad(set_to_none=True)
        logits = model(x)
        loss = F.cross_entropy(logits, y)
        if not torch.isfinite(loss):
            raise RuntimeError(f"non-finite loss at epoch {ep}")
        loss.backward()
        optimizer.step()
        n = int(y.size(0))
        total += n
        n_batches += 1
        loss_sum += float(loss.item()) * n
        with torch.no_grad():
            correct += int((logits.argmax(dim=1) == y.argmax(dim=1)).sum().item())
    avg_loss = loss_sum / total if total > 0 else 0.0
    acc = correct / total if total > 0 else 0.0
    log.debug(
        f"train_epoch_done epoch={ep}/{ep_total} batches={n_batches} "
        f"loss={avg_loss:.4f} accuracy={acc:.4f}"
    )
    return avg_loss, acc


def evaluate(
    model: _TrainableModel, loader: Iterable[tuple[Tensor, Tensor]], device: torch.device
) -> float:
    model.eval()
    total = 0
    correct = 0
    with torch.no_grad():
        for x, y in loader:
            preds = model(x.to(device)).argmax(dim=1)
            correct += int((preds.cpu() == y.argmax(dim=1).cpu()).sum().item())
            total += int(y.size(0))
    return (correct / total) if total > 0 else 0.0
