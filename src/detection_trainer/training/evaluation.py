from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.events import training as events
from detection_trainer.logging import get_logger

from .artifacts import prune_checkpoints, write_checkpoint
from .batches import iter_batches
from .boxes import Sample
from .dataset import DatasetIndex
from .loaders import LoaderPool, SequentialSampleSource
from .metrics import DetectionMetrics, compute_metrics
from .model import DetectorTrainer
from .progress import try_emit_event
from .sample_queue import EVALUATION_QUEUE_CAPACITY, SampleQueue
from .state import BestMetrics, read_best_metrics, write_best_metrics
from .train_config import TrainConfig


@dataclass(frozen=True)
class EvaluationOutcome:
    epoch: int
    steps: int
    metrics: DetectionMetrics
    best: BestMetrics
    improved: bool
    checkpoint: Path | None
    time_s: float


class EvaluationController:
    """Epoch-boundary evaluation over the whole test set with best-model checkpointing.

    Each evaluation runs its own queue and loader pool, isolated from the
    training data flow, and tears them down before returning.
    """

    def __init__(
        self,
        cfg: TrainConfig,
        test_index: DatasetIndex,
        steps_per_epoch: int,
        *,
        num_workers: int,
        ctx: events.Context,
        best: BestMetrics | None = None,
    ) -> None:
        if len(test_index) == 0:
            raise AppError(ErrorCode.dataset_invalid, f"{test_index.source} has no images")
        if int(steps_per_epoch) <= 0:
            raise AppError(ErrorCode.invalid_config, "steps_per_epoch must be > 0")
        self._cfg = cfg
        self._index = test_index
        self._steps_per_epoch = int(steps_per_epoch)
        self._num_workers = max(1, int(num_workers))
        self._ctx = ctx
        self._best = best if best is not None else read_best_metrics(cfg.best_metrics_path)
        self._last_step: int | None = None
        get_logger().info(
            f"best_metrics_loaded map={self._best.map:.4f} "
            f"weighted_f1={self._best.weighted_f1:.4f}"
        )

    @property
    def best(self) -> BestMetrics:
        return self._best

    @property
    def batch_size(self) -> int:
        return max(1, 2 * self._cfg.batch_size // int(self._cfg.num_devices))

    def should_evaluate(self, steps: int) -> bool:
        if steps <= 0 or steps % self._steps_per_epoch != 0:
            return False
        return steps != self._last_step

    def _run_metrics(self, model: DetectorTrainer, steps: int) -> DetectionMetrics:
        inference = model.snapshot_for_inference()
        queue: SampleQueue[Sample] = SampleQueue(EVALUATION_QUEUE_CAPACITY)
        source = SequentialSampleSource(self._index, self._cfg.augment.image_size)
        pool = LoaderPool("eval", queue, source, self._num_workers, self._cfg.seed + steps)
        pool.start()
        try:
            batches = iter_batches(queue, len(source), self.batch_size)
            return compute_metrics(inference, batches, self._cfg.confidence_threshold)
        except AppError as exc:
            if exc.code is ErrorCode.queue_closed:
                pool.raise_if_failed()
            raise
        finally:
            pool.stop()

    def _save_checkpoint(
        self, model: DetectorTrainer, steps: int, metrics: DetectionMetrics
    ) -> Path | None:
        cfg = self._cfg
        try:
            path = write_checkpoint(
                out_dir=cfg.out_dir,
                name=cfg.name,
                model=model,
                steps=steps,
                map_score=metrics.map,
                weighted_f1=metrics.weighted_f1,
            )
            prune_checkpoints(cfg.out_dir, cfg.name, cfg.keep_checkpoints)
        except (OSError, RuntimeError) as exc:
            get_logger().error("checkpoint_write_failed steps=%d error=%s", steps, exc)
            return None
        return path

    def _save_best(self) -> None:
        try:
            self._cfg.out_dir.mkdir(parents=True, exist_ok=True)
            write_best_metrics(self._cfg.best_metrics_path, self._best)
        except OSError as exc:
            get_logger().error("checkpoint_write_failed path=best_metrics error=%s", exc)

    def evaluate(self, model: DetectorTrainer, steps: int) -> EvaluationOutcome:
        log = get_logger()
        epoch = steps // self._steps_per_epoch
        self._last_step = steps
        log.info(f"evaluation_started epoch={epoch} steps={steps} images={len(self._index)}")
        t0 = time.perf_counter()
        metrics = self._run_metrics(model, steps)
        prev = self._best
        improved = metrics.map > prev.map or metrics.weighted_f1 > prev.weighted_f1
        checkpoint = self._save_checkpoint(model, steps, metrics) if improved else None
        self._best = BestMetrics(
            map=max(prev.map, metrics.map),
            weighted_f1=max(prev.weighted_f1, metrics.weighted_f1),
        )
        self._save_best()
        elapsed = time.perf_counter() - t0
        log.info(f"evaluation_done epoch={epoch} steps={steps} {metrics.summary()}")
        try_emit_event(
            events.epoch(
                self._ctx,
                epoch=epoch,
                steps=steps,
                learning_rate=model.get_learning_rate(),
                map_score=metrics.map,
                weighted_f1=metrics.weighted_f1,
                time_s=elapsed,
            )
        )
        if improved:
            try_emit_event(
                events.best(
                    self._ctx,
                    epoch=epoch,
                    best_map=self._best.map,
                    best_weighted_f1=self._best.weighted_f1,
                )
            )
        if checkpoint is not None:
            try_emit_event(events.checkpoint(self._ctx, steps=steps, path=str(checkpoint)))
        return EvaluationOutcome(
            epoch=epoch,
            steps=steps,
            metrics=metrics,
            best=self._best,
            improved=improved,
            checkpoint=checkpoint,
            time_s=elapsed,
        )


__all__ = ["EvaluationController", "EvaluationOutcome"]
