from __future__ import annotations

import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, TypedDict

import torch
from PIL import Image
from torch import Tensor
from torch.nn.parameter import Parameter
from torchvision.transforms.functional import pil_to_tensor

from detection_trainer.logging import get_logger

from .boxes import LabeledBox
from .optim import build_optimizer, get_learning_rate, set_learning_rate


@dataclass(frozen=True)
class Detection:
    left: float
    top: float
    right: float
    bottom: float
    label: str
    confidence: float


class InferenceModel(Protocol):
    def detect(
        self, images: Sequence[Image.Image], confidence_threshold: float
    ) -> list[list[Detection]]: ...  # pragma: no cover - typing only


class DetectorTrainer(Protocol):
    """What the training loop needs from the network and its optimizer."""

    def train_step(
        self, images: Sequence[Image.Image], boxes: Sequence[Sequence[LabeledBox]]
    ) -> float: ...  # pragma: no cover - typing only

    def test_step(
        self, images: Sequence[Image.Image], boxes: Sequence[Sequence[LabeledBox]]
    ) -> float: ...  # pragma: no cover - typing only

    def set_learning_rate(self, lr: float) -> None: ...  # pragma: no cover - typing only
    def get_learning_rate(self) -> float: ...  # pragma: no cover - typing only
    def snapshot_for_inference(self) -> InferenceModel: ...  # pragma: no cover - typing only
    def save(self, path: Path) -> None: ...  # pragma: no cover - typing only
    def load(self, path: Path) -> None: ...  # pragma: no cover - typing only


class BoxTarget(TypedDict):
    boxes: Tensor
    labels: list[str]
    ignore: Tensor


class DetectionModule(Protocol):
    """A ``torch.nn.Module`` that owns its loss and decoding."""

    def compute_loss(
        self, images: Tensor, targets: list[BoxTarget]
    ) -> Tensor: ...  # pragma: no cover - typing only

    def detect(
        self, images: Tensor, threshold: float
    ) -> list[list[Detection]]: ...  # pragma: no cover - typing only

    def train(self, mode: bool = True) -> object: ...  # pragma: no cover - typing only
    def eval(self) -> object: ...  # pragma: no cover - typing only
    def to(self, device: torch.device) -> object: ...  # pragma: no cover - typing only
    def parameters(self) -> Iterable[Parameter]: ...  # pragma: no cover - typing only
    def state_dict(self) -> dict[str, Tensor]: ...  # pragma: no cover - typing only
    def load_state_dict(self, state: dict[str, Tensor]) -> object: ...  # pragma: no cover


def images_to_tensor(images: Sequence[Image.Image], device: torch.device) -> Tensor:
    """Stack RGB images into a float ``N x 3 x H x W`` batch scaled to [0, 1]."""
    batch = torch.stack([pil_to_tensor(img.convert("RGB")) for img in images])
    return batch.to(device=device, dtype=torch.float32).div_(255.0)


def boxes_to_targets(
    boxes: Sequence[Sequence[LabeledBox]], device: torch.device
) -> list[BoxTarget]:
    out: list[BoxTarget] = []
    for per_image in boxes:
        rects = [[b.left, b.top, b.right, b.bottom] for b in per_image]
        out.append(
            {
                "boxes": torch.tensor(rects, dtype=torch.float32, device=device).reshape(-1, 4),
                "labels": [b.label for b in per_image],
                "ignore": torch.tensor(
                    [b.ignore for b in per_image], dtype=torch.bool, device=device
                ),
            }
        )
    return out


class TorchInferenceModel:
    def __init__(self, module: DetectionModule, device: torch.device) -> None:
        self._module = module
        self._device = device
        self._module.eval()

    def detect(
        self, images: Sequence[Image.Image], confidence_threshold: float
    ) -> list[list[Detection]]:
        x = images_to_tensor(images, self._device)
        with torch.no_grad():
            return self._module.detect(x, float(confidence_threshold))


class _Cfg(Protocol):
    @property
    def learning_rate(self) -> float: ...

    @property
    def momentum(self) -> float: ...

    @property
    def weight_decay(self) -> float: ...

    @property
    def device(self) -> str: ...


class TorchDetectorTrainer:
    """Adapts a detection module plus an SGD optimizer to ``DetectorTrainer``."""

    def __init__(self, module: DetectionModule, cfg: _Cfg) -> None:
        self._device = torch.device(cfg.device)
        module.to(self._device)
        self._module = module
        self._optimizer = build_optimizer(module, cfg)

    @property
    def module(self) -> DetectionModule:
        return self._module

    def train_step(
        self, images: Sequence[Image.Image], boxes: Sequence[Sequence[LabeledBox]]
    ) -> float:
        self._module.train()
        x = images_to_tensor(images, self._device)
        targets = boxes_to_targets(boxes, self._device)
        self._optimizer.zero_grad(set_to_none=True)
        loss = self._module.compute_loss(x, targets)
        torch.autograd.backward((loss,))
        self._optimizer.step()
        return float(loss.item())

    def test_step(
        self, images: Sequence[Image.Image], boxes: Sequence[Sequence[LabeledBox]]
    ) -> float:
        self._module.eval()
        x = images_to_tensor(images, self._device)
        targets = boxes_to_targets(boxes, self._device)
        with torch.no_grad():
            loss = self._module.compute_loss(x, targets)
        return float(loss.item())

    def set_learning_rate(self, lr: float) -> None:
        set_learning_rate(self._optimizer, lr)

    def get_learning_rate(self) -> float:
        return get_learning_rate(self._optimizer)

    def snapshot_for_inference(self) -> InferenceModel:
        return TorchInferenceModel(copy.deepcopy(self._module), self._device)

    def save(self, path: Path) -> None:
        torch.save(
            {"model": self._module.state_dict(), "optimizer": self._optimizer.state_dict()},
            path.as_posix(),
        )
        get_logger().info(f"model_saved path={path} size_bytes={path.stat().st_size}")

    def load(self, path: Path) -> None:
        payload = torch.load(path.as_posix(), map_location=self._device, weights_only=True)
        self._module.load_state_dict(payload["model"])
        self._optimizer.load_state_dict(payload["optimizer"])
        get_logger().info(f"model_loaded path={path}")


__all__ = [
    "BoxTarget",
    "Detection",
    "DetectionModule",
    "DetectorTrainer",
    "InferenceModel",
    "TorchDetectorTrainer",
    "TorchInferenceModel",
    "boxes_to_targets",
    "images_to_tensor",
]
