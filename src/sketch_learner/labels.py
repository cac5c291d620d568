from __future__ import annotations

from collections.abc import Iterable, Iterator

from .errors import ErrorCode, app_error


class LabelSet:
    """Ordered vocabulary of class names; position is the one-hot index.

    Always holds at least one unique, non-empty label.
    """

    def __init__(self, labels: Iterable[str]) -> None:
        items = [str(s) for s in labels]
        if not items:
            raise app_error(ErrorCode.invalid_label, "label set must not be empty")
        for s in items:
            if not s.strip():
                raise app_error(ErrorCode.invalid_label, "labels must be non-empty")
        if len(set(items)) != len(items):
            raise app_error(ErrorCode.invalid_label, "labels must be unique")
        self._labels: list[str] = items

    def __len__(self) -> int:
        return len(self._labels)

    def __iter__(self) -> Iterator[str]:
        return iter(tuple(self._labels))

    def __contains__(self, label: object) -> bool:
        return label in self._labels

    def __eq__(self, other: object) -> bool:
        if isinstance(other, LabelSet):
            return self._labels == other._labels
        return NotImplemented

    def __repr__(self) -> str:
        return f"LabelSet({self._labels!r})"

    def snapshot(self) -> tuple[str, ...]:
        return tuple(self._labels)

    def index_of(self, label: str) -> int:
        try:
            return self._labels.index(label)
        except ValueError:
            raise app_error(ErrorCode.unknown_label, f'Label "{label}" not found') from None

    def label_at(self, idx: int) -> str:
        return self._labels[idx]

    def add(self, label: str) -> str:
        name = label.strip() if isinstance(label, str) else ""
        if not name:
            raise app_error(ErrorCode.invalid_label, "Label must not be empty")
        if name in self._labels:
            raise app_error(ErrorCode.invalid_label, f'Label "{name}" already exists')
        self._labels.append(name)
        return name

    def remove(self, label: str) -> None:
        if label not in self._labels:
            raise app_error(ErrorCode.unknown_label, f'Label "{label}" not found')
        if len(self._labels) <= 1:
            raise app_error(ErrorCode.last_label, "Cannot remove the last label")
        self._labels.remove(label)
