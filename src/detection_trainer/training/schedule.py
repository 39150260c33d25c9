from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Final

from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.logging import get_logger

SHRINK_FACTOR: Final[float] = 0.1
_RAMP_START: Final[float] = 1e-99


class SchedulePhase(str, Enum):
    warmup = "warmup"
    steady = "steady"
    cosine = "cosine"


def linspace(start: float, stop: float, num: int) -> list[float]:
    """``num`` evenly spaced values from ``start`` to ``stop`` inclusive."""
    if num <= 0:
        return []
    if num == 1:
        return [float(stop)]
    step = (stop - start) / (num - 1)
    return [start + i * step for i in range(num)]


@dataclass(frozen=True)
class ScheduleConfig:
    learning_rate: float
    min_learning_rate: float
    warmup_epochs: int
    cosine_epochs: int
    steps_per_epoch: int
    patience: int | None = None
    test_period: int = 0
    test_epoch_in_steps: int = 0
    shrink_factor: float = SHRINK_FACTOR
    min_delta: float = 0.0

    def __post_init__(self) -> None:
        if self.learning_rate <= 0.0 or self.min_learning_rate <= 0.0:
            raise AppError(ErrorCode.invalid_config, "learning rates must be > 0")
        if self.steps_per_epoch <= 0:
            raise AppError(ErrorCode.invalid_config, "steps_per_epoch must be > 0")
        if self.warmup_epochs < 0 or self.cosine_epochs < 0:
            raise AppError(ErrorCode.invalid_config, "epoch counts must be >= 0")
        if self.cosine_epochs > 0 and self.patience is not None:
            raise AppError(ErrorCode.invalid_config, "patience and cosine_epochs are exclusive")
        if self.cosine_epochs > 0 and self.cosine_epochs <= self.warmup_epochs:
            raise AppError(ErrorCode.invalid_config, "cosine_epochs must exceed warmup_epochs")
        if not 0.0 < self.shrink_factor < 1.0:
            raise AppError(ErrorCode.invalid_config, "shrink_factor must be in (0, 1)")

    @property
    def warmup_steps(self) -> int:
        return self.warmup_epochs * self.steps_per_epoch

    @property
    def cosine_steps(self) -> int:
        if self.cosine_epochs <= 0:
            return 0
        return self.cosine_epochs * self.steps_per_epoch - self.warmup_steps

    @property
    def effective_patience(self) -> int:
        return 3 if self.patience is None else int(self.patience)

    @property
    def train_threshold(self) -> int:
        """Train steps without progress before a decay."""
        if self.test_period > 0:
            return self.effective_patience * self.test_period * self.steps_per_epoch
        return self.effective_patience * self.steps_per_epoch

    @property
    def test_threshold(self) -> int:
        """Test steps without progress before a decay; 0 disables the test counter."""
        if self.test_period > 0:
            return self.effective_patience * self.test_epoch_in_steps
        return 0


@dataclass(frozen=True)
class ScheduleState:
    """Everything needed to resume the schedule; persisted with the trainer state."""

    phase: SchedulePhase
    learning_rate: float
    min_learning_rate: float
    steps: int = 0
    phase_start_step: int = 0
    train_steps_without_progress: int = 0
    test_steps_without_progress: int = 0
    best_train_loss: float | None = None
    best_test_loss: float | None = None
    test_steps: int = 0


def cosine_sequence(cfg: ScheduleConfig) -> list[float]:
    total = cfg.cosine_steps
    return [_cosine_value(cfg, t) for t in linspace(0.0, float(total), total)]


def _cosine_value(cfg: ScheduleConfig, t: float) -> float:
    total = cfg.cosine_steps
    span = cfg.learning_rate - cfg.min_learning_rate
    return cfg.min_learning_rate + 0.5 * span * (1.0 + math.cos(math.pi * t / total))


class LearningRateScheduler:
    """Warm-up ramp followed by either plateau decay or a cosine schedule.

    Every decision derives from the count of train steps already taken, so a
    scheduler built from a persisted ``ScheduleState`` continues where the
    previous process stopped. A warm-up interrupted part way is not replayed;
    the cosine sequence still ends at ``cosine_epochs`` epochs.
    """

    def __init__(self, config: ScheduleConfig, state: ScheduleState | None = None) -> None:
        self._cfg = config
        self._ramp: list[float] = []
        self._cosine: list[float] = []
        if state is None:
            state = ScheduleState(
                phase=SchedulePhase.warmup,
                learning_rate=config.learning_rate,
                min_learning_rate=config.min_learning_rate,
            )
        if state.steps < 0:
            raise AppError(ErrorCode.state_invalid, "steps must be >= 0")
        self._state = state
        if state.phase is SchedulePhase.warmup:
            if state.steps == 0 and config.warmup_steps > 0:
                self._ramp = linspace(_RAMP_START, config.learning_rate, config.warmup_steps)
                self._state = replace(state, learning_rate=self._ramp[0])
                get_logger().info(
                    f"warmup_started epochs={config.warmup_epochs} steps={config.warmup_steps}"
                )
            else:
                self._decide()
        elif state.phase is SchedulePhase.cosine:
            self._cosine = cosine_sequence(self._cfg)
            get_logger().info(
                f"schedule_resumed phase=cosine steps={state.steps} lr={state.learning_rate}"
            )
        else:
            get_logger().info(
                f"schedule_resumed phase=steady steps={state.steps} lr={state.learning_rate}"
            )

    def _decide(self) -> None:
        cfg = self._cfg
        s = self._state
        if cfg.cosine_epochs > 0:
            # Indexed from the end of warm-up; earlier steps take the first value
            self._cosine = cosine_sequence(self._cfg)
            self._state = replace(
                s,
                phase=SchedulePhase.cosine,
                learning_rate=self._cosine_at(s.steps, cfg.warmup_steps),
                phase_start_step=cfg.warmup_steps,
            )
            get_logger().info(
                f"schedule_decided phase=cosine steps={s.steps} cosine_steps={cfg.cosine_steps}"
            )
            return
        self._state = replace(
            s,
            phase=SchedulePhase.steady,
            learning_rate=cfg.learning_rate,
            min_learning_rate=cfg.min_learning_rate,
            phase_start_step=s.steps,
            train_steps_without_progress=0,
            test_steps_without_progress=0,
        )
        get_logger().info(
            f"schedule_decided phase=steady steps={s.steps} "
            f"train_threshold={cfg.train_threshold} test_threshold={cfg.test_threshold}"
        )

    def _cosine_at(self, steps: int, start: int) -> float:
        if not self._cosine:
            return self._cfg.min_learning_rate
        idx = min(max(0, steps - start), len(self._cosine) - 1)
        return self._cosine[idx]

    @property
    def config(self) -> ScheduleConfig:
        return self._cfg

    @property
    def phase(self) -> SchedulePhase:
        return self._state.phase

    @property
    def steps(self) -> int:
        return self._state.steps

    @property
    def learning_rate(self) -> float:
        """Learning rate to use for the next train step."""
        return self._state.learning_rate

    @property
    def state(self) -> ScheduleState:
        return self._state

    @property
    def finished(self) -> bool:
        s = self._state
        if s.phase is SchedulePhase.cosine:
            return s.steps - s.phase_start_step >= len(self._cosine)
        if s.phase is SchedulePhase.steady:
            return s.learning_rate < s.min_learning_rate
        return False

    def _improved(self, loss: float, best: float | None) -> bool:
        return best is None or loss < best - self._cfg.min_delta

    def _shrink(self, reason: str) -> None:
        s = self._state
        lr = s.learning_rate * self._cfg.shrink_factor
        self._state = replace(
            s, learning_rate=lr, train_steps_without_progress=0, test_steps_without_progress=0
        )
        get_logger().info(f"learning_rate_decayed reason={reason} steps={s.steps} lr={lr}")

    def record_train_step(self, loss: float) -> None:
        s = self._state
        steps = s.steps + 1
        if s.phase is SchedulePhase.warmup:
            if steps >= self._cfg.warmup_steps:
                self._state = replace(s, steps=steps)
                get_logger().info(f"warmup_finished steps={steps}")
                self._decide()
            else:
                self._state = replace(s, steps=steps, learning_rate=self._ramp[steps])
            return
        if s.phase is SchedulePhase.cosine:
            lr = self._cosine_at(steps, s.phase_start_step)
            self._state = replace(s, steps=steps, learning_rate=lr)
            return
        if self._improved(loss, s.best_train_loss):
            self._state = replace(
                s, steps=steps, best_train_loss=float(loss), train_steps_without_progress=0
            )
            return
        self._state = replace(
            s, steps=steps, train_steps_without_progress=s.train_steps_without_progress + 1
        )
        threshold = self._cfg.train_threshold
        if threshold > 0 and self._state.train_steps_without_progress >= threshold:
            self._shrink("train_plateau")

    def record_test_step(self, loss: float) -> None:
        s = replace(self._state, test_steps=self._state.test_steps + 1)
        self._state = s
        if s.phase is not SchedulePhase.steady:
            return
        if self._improved(loss, s.best_test_loss):
            self._state = replace(s, best_test_loss=float(loss), test_steps_without_progress=0)
            return
        self._state = replace(s, test_steps_without_progress=s.test_steps_without_progress + 1)
        threshold = self._cfg.test_threshold
        if threshold > 0 and self._state.test_steps_without_progress >= threshold:
            self._shrink("test_plateau")


__all__ = [
    "SHRINK_FACTOR",
    "LearningRateScheduler",
    "ScheduleConfig",
    "SchedulePhase",
    "ScheduleState",
    "cosine_sequence",
    "linspace",
]
