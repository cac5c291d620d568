from __future__ import annotations

from pydantic import BaseModel
from pydantic.dataclasses import dataclass as pydantic_dataclass


class LabelIn(BaseModel):
    label: str


@pydantic_dataclass(frozen=True)
class LabelsResponse:
    labels: list[str]
    current: str
    counts: dict[str, int]
    status: str


@pydantic_dataclass(frozen=True)
class EpochOut:
    epoch: int
    total_epochs: int
    loss: float | None
    accuracy: float | None


@pydantic_dataclass(frozen=True)
class TrainResponse:
    model_id: str
    epochs: list[EpochOut]
    n_examples: int
    train_accuracy: float
    status: str


@pydantic_dataclass(frozen=True)
class PredictResponse:
    label: str
    confidence: float
    probs: dict[str, float]
    stale: bool
    model_id: str
    latency_ms: int
    status: str


@pydantic_dataclass(frozen=True)
class StatusResponse:
    ok: bool
    status: str
    code: str | None
