from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

from torch.nn.parameter import Parameter
from torch.optim.sgd import SGD

if TYPE_CHECKING:
    from torch.optim.optimizer import Optimizer


class _TrainableModel(Protocol):
    def parameters(self) -> Iterable[Parameter]: ...  # pragma: no cover - typing only


class _Cfg(Protocol):
    @property
    def learning_rate(self) -> float: ...

    @property
    def momentum(self) -> float: ...

    @property
    def weight_decay(self) -> float: ...


def build_optimizer(model: _TrainableModel, cfg: _Cfg) -> Optimizer:
    # The schedule overwrites lr before every step
    return SGD(
        model.parameters(),
        lr=cfg.learning_rate,
        momentum=cfg.momentum,
        weight_decay=cfg.weight_decay,
    )


def set_learning_rate(optimizer: Optimizer, lr: float) -> None:
    for group in optimizer.param_groups:
        group["lr"] = float(lr)


def get_learning_rate(optimizer: Optimizer) -> float:
    return float(optimizer.param_groups[0]["lr"])
