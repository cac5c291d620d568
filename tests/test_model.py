from __future__ import annotations

import pytest
import torch
from torch.optim.adam import Adam

from sketch_learner.training.model import (
    build_model,
    build_network,
    output_width,
    validate_state_dict,
)


def test_build_model_output_width_and_layers() -> None:
    cm = build_model(3)
    assert cm.n_classes == 3
    cm.net.eval()
    out = cm.net(torch.zeros((5, 28, 28, 1)))
    assert tuple(out.shape) == (5, 3)
    assert output_width(cm.net) == 3
    kinds = [type(m).__name__ for m in cm.net]
    assert kinds == [
        "ChannelsFirst",
        "Conv2d",
        "ReLU",
        "MaxPool2d",
        "Conv2d",
        "ReLU",
        "MaxPool2d",
        "Flatten",
        "Linear",
        "ReLU",
        "Dropout",
        "Linear",
    ]


def test_optimizer_is_adam_with_lr() -> None:
    cm = build_model(2)
    assert isinstance(cm.optimizer, Adam)
    assert cm.optimizer.param_groups[0]["lr"] == pytest.approx(0.001)


def test_no_weight_sharing_between_builds() -> None:
    a = build_network(2)
    b = build_network(2)
    for pa, pb in zip(a.parameters(), b.parameters(), strict=True):
        assert pa.data_ptr() != pb.data_ptr()


def test_dropout_only_in_train_mode() -> None:
    net = build_network(2)
    x = torch.rand((4, 28, 28, 1))
    net.eval()
    with torch.no_grad():
        assert torch.equal(net(x), net(x))


def test_validate_state_dict() -> None:
    net = build_network(4)
    assert validate_state_dict(dict(net.state_dict())) == 4
    bad = dict(net.state_dict())
    bad["8.weight"] = torch.zeros((64, 10))
    with pytest.raises(ValueError):
        validate_state_dict(bad)
    missing = dict(net.state_dict())
    missing.pop("1.bias")
    with pytest.raises(ValueError):
        validate_state_dict(missing)


def test_zero_classes_rejected() -> None:
    with pytest.raises(ValueError):
        build_network(0)
