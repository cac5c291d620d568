from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from torch import Tensor, nn
from torch.optim.optimizer import Optimizer

from .optim import build_optimizer

ARCH: Final[str] = "sketchcnn_v1"
DEFAULT_LR: Final[float] = 0.001
_FLAT_FEATURES: Final[int] = 32 * 5 * 5
# Parameter names and shapes with the class count left open (-1).
_EXPECTED_SHAPES: Final[dict[str, tuple[int, ...]]] = {
    "1.weight": (16, 1, 3, 3),
    "1.bias": (16,),
    "4.weight": (32, 16, 3, 3),
    "4.bias": (32,),
    "8.weight": (64, _FLAT_FEATURES),
    "8.bias": (64,),
    "11.weight": (-1, 64),
    "11.bias": (-1,),
}
HEAD_WEIGHT: Final[str] = "11.weight"


class ChannelsFirst(nn.Module):
    """Permute NHWC input to the NCHW layout torch convolutions expect."""

    def forward(self, x: Tensor) -> Tensor:
        return x.permute(0, 3, 1, 2)


def build_network(n_classes: int) -> nn.Sequential:
    if n_classes < 1:
        raise ValueError("n_classes must be >= 1")
    return nn.Sequential(
        ChannelsFirst(),
        nn.Conv2d(1, 16, kernel_size=3),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Conv2d(16, 32, kernel_size=3),
        nn.ReLU(),
        nn.MaxPool2d(2),
        nn.Flatten(),
        nn.Linear(_FLAT_FEATURES, 64),
        nn.ReLU(),
        nn.Dropout(0.25),
        nn.Linear(64, n_classes),
    )


@dataclass(frozen=True)
class CompiledModel:
    """Network plus its optimizer; the network emits logits, softmax is applied downstream."""

    net: nn.Sequential
    optimizer: Optimizer
    n_classes: int


def build_model(n_classes: int, *, lr: float = DEFAULT_LR) -> CompiledModel:
    net = build_network(n_classes)
    return CompiledModel(net=net, optimizer=build_optimizer(net, lr=lr), n_classes=n_classes)


def output_width(net: nn.Module) -> int:
    sd = net.state_dict()
    w = sd.get(HEAD_WEIGHT)
    if w is None:
        raise ValueError("network has no classifier head")
    return int(w.shape[0])


def validate_state_dict(sd: dict[str, Tensor]) -> int:
    """Check parameter names and shapes; return the encoded class count."""
    if set(sd) != set(_EXPECTED_SHAPES):
        raise ValueError("state dict keys do not match the sketch network")
    head = sd[HEAD_WEIGHT]
    if head.ndim != 2 or int(head.shape[0]) < 1:
        raise ValueError("invalid classifier head")
    n_classes = int(head.shape[0])
    for name, expected in _EXPECTED_SHAPES.items():
        want = tuple(n_classes if d == -1 else d for d in expected)
        if tuple(sd[name].shape) != want:
            raise ValueError(f"unexpected shape for {name}")
    return n_classes
