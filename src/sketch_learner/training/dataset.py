from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import torch
from torch import Tensor

from ..errors import ErrorCode, app_error
from ..labels import LabelSet
from ..preprocess import TENSOR_SHAPE


@dataclass(frozen=True)
class Example:
    tensor: Tensor  # (1, 28, 28, 1)
    target: Tensor  # (1, n_classes) one-hot
    label: str


def one_hot(idx: int, n_classes: int) -> Tensor:
    t = torch.zeros((1, n_classes), dtype=torch.float32)
    t[0, idx] = 1.0
    return t


class Dataset:
    """In-memory accumulator of labeled drawings.

    There is no eviction: memory grows with every committed example until
    ``reset()`` is called.
    """

    def __init__(self) -> None:
        self._examples: list[Example] = []
        self._counts: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._examples)

    def add_example(self, tensor: Tensor, label: str, labels: LabelSet) -> Example:
        idx = labels.index_of(label)
        if tuple(tensor.shape) != TENSOR_SHAPE:
            raise app_error(
                ErrorCode.preprocessing_failed,
                f"expected tensor shape {TENSOR_SHAPE}, got {tuple(tensor.shape)}",
            )
        ex = Example(
            tensor=tensor.detach().to(dtype=torch.float32).clone(),
            target=one_hot(idx, len(labels)),
            label=label,
        )
        self._examples.append(ex)
        self._counts[label] = self._counts.get(label, 0) + 1
        return ex

    def label_counts(self) -> dict[str, int]:
        return dict(self._counts)

    def examples(self) -> tuple[Example, ...]:
        return tuple(self._examples)

    def copy(self) -> Dataset:
        """Shallow copy; examples are immutable so they are shared."""
        out = Dataset()
        out._examples = list(self._examples)
        out._counts = dict(self._counts)
        return out

    def reset(self) -> None:
        self._examples.clear()
        self._counts.clear()

    def usable_count(self, labels: LabelSet) -> int:
        return sum(1 for ex in self._examples if ex.label in labels)

    @contextmanager
    def batch(self, labels: LabelSet) -> Iterator[tuple[Tensor, Tensor]]:
        """Yield ``(X, Y)`` stacked over all examples; both are dropped on exit.

        Targets committed under an older label layout are re-encoded from the
        example's label; examples of removed labels are left out.
        """
        n_classes = len(labels)
        xs: list[Tensor] = []
        ys: list[Tensor] = []
        for ex in self._examples:
            if ex.label not in labels:
                continue
            idx = labels.index_of(ex.label)
            xs.append(ex.tensor)
            if int(ex.target.shape[1]) == n_classes and float(ex.target[0, idx]) == 1.0:
                ys.append(ex.target)
            else:
                ys.append(one_hot(idx, n_classes))
        if not xs:
            raise app_error(ErrorCode.insufficient_data, "No examples for the current labels")
        x_all: Tensor | None = None
        y_all: Tensor | None = None
        try:
            x_all = torch.cat(xs, dim=0)
            y_all = torch.cat(ys, dim=0)
            yield x_all, y_all
        finally:
            del x_all, y_all
            xs.clear()
            ys.clear()
