from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from detection_trainer.errors import AppError, ErrorCode


def _check_probability(name: str, value: float) -> None:
    if not (0.0 <= float(value) <= 1.0):
        raise AppError(ErrorCode.invalid_config, f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class AugmentPolicy:
    image_size: int = 512
    mirror_prob: float = 0.5
    mosaic_prob: float = 0.5
    crop_prob: float = 0.5
    blur_prob: float = 0.2
    perspective_prob: float = 0.2
    color_offset_prob: float = 0.5
    solarize_prob: float = 0.1
    angle: float = 5.0
    shift: float = 0.2
    gamma: float = 0.5
    color: float = 0.2
    min_coverage: float = 0.75
    # (long side, short side) in pixels, boxes below are ignored in crops
    min_object_size: tuple[int, int] = (64, 32)
    # fraction of the crop the object may span at most
    max_object_size: float = 0.9

    def __post_init__(self) -> None:
        if int(self.image_size) <= 1:
            raise AppError(ErrorCode.invalid_config, "image_size must be > 1")
        for name in (
            "mirror_prob",
            "mosaic_prob",
            "crop_prob",
            "blur_prob",
            "perspective_prob",
            "color_offset_prob",
            "solarize_prob",
            "color",
            "min_coverage",
        ):
            _check_probability(name, getattr(self, name))
        if float(self.gamma) < 0.0:
            raise AppError(ErrorCode.invalid_config, "gamma must be >= 0")
        if float(self.angle) < 0.0 or float(self.shift) < 0.0:
            raise AppError(ErrorCode.invalid_config, "angle and shift must be >= 0")
        long_px, short_px = self.min_object_size
        if int(long_px) < int(short_px) or int(short_px) < 0:
            raise AppError(ErrorCode.invalid_config, "min_object_size must be (long >= short >= 0)")
        if not (0.0 < float(self.max_object_size) <= 1.0):
            raise AppError(ErrorCode.invalid_config, "max_object_size must be within (0, 1]")

    @staticmethod
    def identity(image_size: int) -> AugmentPolicy:
        """Policy under which augmentation only letterboxes."""
        return AugmentPolicy(
            image_size=image_size,
            mirror_prob=0.0,
            mosaic_prob=0.0,
            crop_prob=0.0,
            blur_prob=0.0,
            perspective_prob=0.0,
            color_offset_prob=0.0,
            solarize_prob=0.0,
            angle=0.0,
            shift=0.0,
            gamma=0.0,
            color=0.0,
            min_coverage=0.0,
        )


@dataclass(frozen=True)
class TrainConfig:
    data_root: Path
    out_dir: Path = Path(".")
    name: str = "yolo"
    batch_per_device: int = 8
    num_devices: int = 1
    warmup_epochs: int = 3
    cosine_epochs: int = 0
    learning_rate: float = 0.001
    min_learning_rate: float = 1e-6
    momentum: float = 0.9
    weight_decay: float = 0.0005
    # None means "not given": defaults to 3 unless a cosine schedule is used
    patience: int | None = None
    min_delta: float = 0.0
    test_period: int = 0
    num_workers: int = 0
    seed: int = 0
    device: str = "cpu"
    sync_interval_s: float = 30 * 60.0
    keep_checkpoints: int = 0
    confidence_threshold: float = 0.25
    events_redis_url: str = ""
    augment: AugmentPolicy = field(default_factory=AugmentPolicy)

    def __post_init__(self) -> None:
        if not self.name or any(c in self.name for c in "/\\ "):
            raise AppError(ErrorCode.invalid_config, "name must be a plain non-empty token")
        if int(self.batch_per_device) <= 0 or int(self.num_devices) <= 0:
            raise AppError(ErrorCode.invalid_config, "batch_per_device and num_devices must be > 0")
        if int(self.warmup_epochs) < 0 or int(self.cosine_epochs) < 0:
            raise AppError(ErrorCode.invalid_config, "epoch counts must be >= 0")
        if self.patience is not None and self.cosine_epochs > 0:
            raise AppError(
                ErrorCode.invalid_config, "patience and cosine_epochs are mutually exclusive"
            )
        if self.cosine_epochs > 0 and self.cosine_epochs <= self.warmup_epochs:
            raise AppError(ErrorCode.invalid_config, "cosine_epochs must exceed warmup_epochs")
        if self.patience is not None and int(self.patience) < 0:
            raise AppError(ErrorCode.invalid_config, "patience must be >= 0")
        if not (0.0 < float(self.min_learning_rate) <= float(self.learning_rate)):
            raise AppError(
                ErrorCode.invalid_config, "min_learning_rate must be within (0, learning_rate]"
            )
        if int(self.test_period) < 0 or int(self.num_workers) < 0:
            raise AppError(ErrorCode.invalid_config, "test_period and num_workers must be >= 0")
        if int(self.test_period) == 1:
            raise AppError(ErrorCode.invalid_config, "test_period must be 0 or >= 2")
        if int(self.keep_checkpoints) < 0:
            raise AppError(ErrorCode.invalid_config, "keep_checkpoints must be >= 0")
        _check_probability("confidence_threshold", self.confidence_threshold)

    @property
    def batch_size(self) -> int:
        return int(self.batch_per_device) * int(self.num_devices)

    @property
    def train_dataset_path(self) -> Path:
        return self.data_root / "training.xml"

    @property
    def test_dataset_path(self) -> Path:
        return self.data_root / "testing.xml"

    @property
    def sync_state_path(self) -> Path:
        return self.out_dir / f"{self.name}_sync.json"

    @property
    def sync_model_path(self) -> Path:
        return self.out_dir / f"{self.name}_sync.pt"

    @property
    def best_metrics_path(self) -> Path:
        return self.out_dir / f"{self.name}_best_metrics.json"
