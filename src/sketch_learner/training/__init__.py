from __future__ import annotations

from .dataset import Dataset, Example, one_hot
from .model import CompiledModel, build_model, build_network
from .progress import EpochProgress, format_epoch_status
from .trainer import TrainConfig, Trainer, TrainResult

__all__ = [
    "CompiledModel",
    "Dataset",
    "EpochProgress",
    "Example",
    "TrainConfig",
    "TrainResult",
    "Trainer",
    "build_model",
    "build_network",
    "format_epoch_status",
    "one_hot",
]
