from __future__ import annotations

import random
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import torch
from threadpoolctl import threadpool_limits

from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.events import training as events
from detection_trainer.logging import get_logger, init_logging, log_event
from detection_trainer.monitoring import log_memory_snapshot, log_system_info
from detection_trainer.run_context import run_id_var

from .artifacts import write_final_model
from .augment import Augmenter
from .batches import MiniBatch, assemble_batch
from .boxes import Sample
from .dataset import DatasetIndex, load_imglab_dataset, log_dataset_summary
from .evaluation import EvaluationController
from .loaders import TEST_LOADER_WORKERS, LoaderPool, TestSampleSource, TrainSampleSource
from .model import DetectorTrainer
from .progress import try_emit_event
from .resources import detect_resource_limits
from .sample_queue import SampleQueue, capacity_for_test_queue, capacity_for_train_queue
from .schedule import LearningRateScheduler, ScheduleConfig
from .state import BestMetrics, read_schedule_state, write_schedule_state
from .train_config import TrainConfig

StepKind = Literal["train", "test"]


@dataclass(frozen=True)
class StepOutcome:
    kind: StepKind
    loss: float
    learning_rate: float


@dataclass(frozen=True)
class TrainResult:
    model_path: Path
    steps: int
    best: BestMetrics


def schedule_config_for(
    cfg: TrainConfig, steps_per_epoch: int, test_epoch_in_steps: int
) -> ScheduleConfig:
    return ScheduleConfig(
        learning_rate=cfg.learning_rate,
        min_learning_rate=cfg.min_learning_rate,
        warmup_epochs=cfg.warmup_epochs,
        cosine_epochs=cfg.cosine_epochs,
        steps_per_epoch=steps_per_epoch,
        patience=cfg.patience,
        test_period=cfg.test_period,
        test_epoch_in_steps=test_epoch_in_steps,
        min_delta=cfg.min_delta,
    )


class TrainingLoop:
    """Single-threaded driver: one call to ``step`` trains or tests one mini-batch.

    Loader pools run beside it on their own threads. The scheduler and the
    evaluation controller are owned here and never touched by loaders.
    """

    def __init__(
        self,
        cfg: TrainConfig,
        model: DetectorTrainer,
        train_index: DatasetIndex,
        test_index: DatasetIndex,
        *,
        loader_workers: int,
        ctx: events.Context | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        batch_size = cfg.batch_size
        if len(train_index) < batch_size:
            raise AppError(
                ErrorCode.dataset_invalid,
                f"{len(train_index)} training images cannot fill a batch of {batch_size}",
            )
        self._cfg = cfg
        self._model = model
        self._clock = clock
        self._ctx = ctx or events.Context(name=cfg.name, run_id=run_id_var.get() or None)
        self._steps_per_epoch = len(train_index) // batch_size
        self._test_epoch_in_steps = len(test_index) // batch_size
        self._schedule_cfg = schedule_config_for(
            cfg, self._steps_per_epoch, self._test_epoch_in_steps
        )
        self._scheduler: LearningRateScheduler | None = None
        self._calls = 0
        self._last_sync = clock()

        self._train_queue: SampleQueue[Sample] = SampleQueue(capacity_for_train_queue(batch_size))
        self._train_pool = LoaderPool(
            "train",
            self._train_queue,
            TrainSampleSource(train_index, Augmenter(cfg.augment)),
            loader_workers,
            cfg.seed,
        )
        self._test_queue: SampleQueue[Sample] | None = None
        self._test_pool: LoaderPool | None = None
        if cfg.test_period > 0:
            self._test_queue = SampleQueue(capacity_for_test_queue(batch_size, cfg.num_devices))
            self._test_pool = LoaderPool(
                "test",
                self._test_queue,
                TestSampleSource(test_index, cfg.augment.image_size),
                TEST_LOADER_WORKERS,
                cfg.seed + 10_000,
            )
        self._controller = EvaluationController(
            cfg,
            test_index,
            self._steps_per_epoch,
            num_workers=loader_workers,
            ctx=self._ctx,
        )

    @property
    def steps_per_epoch(self) -> int:
        return self._steps_per_epoch

    @property
    def scheduler(self) -> LearningRateScheduler:
        if self._scheduler is None:
            raise RuntimeError("training state not restored")
        return self._scheduler

    @property
    def controller(self) -> EvaluationController:
        return self._controller

    @property
    def test_pool(self) -> LoaderPool | None:
        return self._test_pool

    def restore(self) -> LearningRateScheduler:
        """Load the persisted schedule and weights, or start fresh."""
        cfg = self._cfg
        state = read_schedule_state(cfg.sync_state_path)
        if state is not None:
            if not cfg.sync_model_path.exists():
                raise AppError(
                    ErrorCode.state_invalid,
                    f"{cfg.sync_state_path.name} has no matching {cfg.sync_model_path.name}",
                )
            self._model.load(cfg.sync_model_path)
            get_logger().info(f"training_resumed steps={state.steps} phase={state.phase.value}")
        self._scheduler = LearningRateScheduler(self._schedule_cfg, state)
        return self._scheduler

    def _batch(self, queue: SampleQueue[Sample], pool: LoaderPool) -> MiniBatch:
        try:
            return assemble_batch(queue, self._cfg.batch_size)
        except AppError as exc:
            if exc.code is ErrorCode.queue_closed:
                pool.raise_if_failed()
            raise

    def step(self) -> StepOutcome:
        sched = self.scheduler
        self._calls += 1
        period = self._cfg.test_period
        if period > 0 and self._calls % period == 0:
            if self._test_queue is None or self._test_pool is None:
                raise RuntimeError("test step without a test loader")
            batch = self._batch(self._test_queue, self._test_pool)
            loss = self._model.test_step(batch.images, batch.boxes)
            sched.record_test_step(loss)
            return StepOutcome(kind="test", loss=loss, learning_rate=sched.learning_rate)
        lr = sched.learning_rate
        self._model.set_learning_rate(lr)
        batch = self._batch(self._train_queue, self._train_pool)
        loss = self._model.train_step(batch.images, batch.boxes)
        sched.record_train_step(loss)
        return StepOutcome(kind="train", loss=loss, learning_rate=lr)

    def sync(self) -> None:
        """Persist weights then schedule state; failures are logged and training continues."""
        cfg = self._cfg
        try:
            cfg.out_dir.mkdir(parents=True, exist_ok=True)
            self._model.save(cfg.sync_model_path)
            write_schedule_state(cfg.sync_state_path, self.scheduler.state)
        except (OSError, RuntimeError) as exc:
            get_logger().error("checkpoint_write_failed path=sync error=%s", exc)
            return
        finally:
            self._last_sync = self._clock()
        get_logger().info(f"training_synced steps={self.scheduler.steps}")

    def _start_pools(self) -> None:
        self._train_pool.start()
        if self._test_pool is not None:
            self._test_pool.start()

    def _stop_pools(self) -> None:
        self._train_pool.stop()
        if self._test_pool is not None:
            self._test_pool.stop()

    def _log_progress(self, outcome: StepOutcome) -> None:
        steps = self.scheduler.steps
        cadence = max(1, self._steps_per_epoch // 10)
        if outcome.kind == "train" and steps % cadence == 0:
            log_event(
                "train_step",
                {"step": steps, "loss": outcome.loss, "learning_rate": outcome.learning_rate},
            )
        elif outcome.kind == "test":
            log_event("test_step", {"step": steps, "loss": outcome.loss})

    def run(self) -> TrainResult:
        cfg = self._cfg
        log = get_logger()
        sched = self.restore()
        self._start_pools()
        try_emit_event(
            events.started(
                self._ctx,
                steps=sched.steps,
                steps_per_epoch=self._steps_per_epoch,
                warmup_epochs=cfg.warmup_epochs,
                cosine_epochs=cfg.cosine_epochs,
                batch_size=cfg.batch_size,
                learning_rate=cfg.learning_rate,
                loader_workers=self._train_pool.num_workers,
                test_period=cfg.test_period,
                image_size=cfg.augment.image_size,
                device=cfg.device,
            )
        )
        self._last_sync = self._clock()
        try:
            while not sched.finished:
                steps = sched.steps
                if self._controller.should_evaluate(steps):
                    self._controller.evaluate(self._model, steps)
                    log_memory_snapshot(context=f"epoch_{steps // self._steps_per_epoch}")
                    self.sync()
                self._log_progress(self.step())
                if self._clock() - self._last_sync >= cfg.sync_interval_s:
                    self.sync()
        except KeyboardInterrupt:
            log.warning(f"training_interrupted steps={sched.steps}")
            self.sync()
            raise
        finally:
            self._stop_pools()
        log.info(f"training_finished steps={sched.steps} lr={sched.learning_rate}")
        path = write_final_model(
            out_dir=cfg.out_dir,
            name=cfg.name,
            model=self._model,
            steps=sched.steps,
            learning_rate=sched.learning_rate,
        )
        write_schedule_state(cfg.sync_state_path, sched.state)
        best = self._controller.best
        try_emit_event(
            events.completed(
                self._ctx,
                steps=sched.steps,
                best_map=best.map,
                best_weighted_f1=best.weighted_f1,
                path=str(path),
            )
        )
        return TrainResult(model_path=path, steps=sched.steps, best=best)


def _set_seed(seed: int) -> None:
    random.seed(seed)
    torch.manual_seed(seed)


def train_with_config(cfg: TrainConfig, model: DetectorTrainer) -> TrainResult:
    init_logging()
    run_id = f"{cfg.name}-{secrets.token_hex(3)}"
    token = run_id_var.set(run_id)
    try:
        log_system_info()
        log = get_logger()
        _set_seed(cfg.seed)
        limits = detect_resource_limits()
        workers = cfg.num_workers if cfg.num_workers > 0 else limits.loader_workers
        train_index = load_imglab_dataset(cfg.train_dataset_path)
        test_index = load_imglab_dataset(cfg.test_dataset_path)
        log_dataset_summary("train", train_index)
        log_dataset_summary("test", test_index)
        loop = TrainingLoop(
            cfg,
            model,
            train_index,
            test_index,
            loader_workers=workers,
            ctx=events.Context(name=cfg.name, run_id=run_id),
        )
        log.info(
            f"training_configured run_id={run_id} batch_size={cfg.batch_size} "
            f"steps_per_epoch={loop.steps_per_epoch} workers={workers} "
            f"test_period={cfg.test_period} device={cfg.device}"
        )
        # Limit OpenMP/BLAS thread pools for the duration of training
        with threadpool_limits(limits=limits.optimal_threads):
            return loop.run()
    finally:
        run_id_var.reset(token)


__all__ = [
    "StepOutcome",
    "TrainResult",
    "TrainingLoop",
    "schedule_config_for",
    "train_with_config",
]
