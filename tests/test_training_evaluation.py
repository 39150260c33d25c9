from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path

import pytest

import detection_trainer.training.evaluation as evaluation_mod
import detection_trainer.training.progress as progress_mod
from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.events.training import Context, EventV1
from detection_trainer.training.batches import MiniBatch
from detection_trainer.training.dataset import DatasetIndex, load_imglab_dataset
from detection_trainer.training.evaluation import EvaluationController
from detection_trainer.training.metrics import DetectionMetrics
from detection_trainer.training.model import Detection, InferenceModel
from detection_trainer.training.state import BestMetrics
from detection_trainer.training.train_config import AugmentPolicy, TrainConfig
from tests._imglab import FakeTrainer, RecordingEmitter, write_dataset_pair

_CTX = Context(name="yolo", run_id="run-1")


def _metrics(map_score: float, wf1: float) -> DetectionMetrics:
    return DetectionMetrics(
        map=map_score,
        macro_precision=0.0,
        macro_recall=0.0,
        macro_f1=0.0,
        micro_precision=0.0,
        micro_recall=0.0,
        micro_f1=0.0,
        weighted_precision=0.0,
        weighted_recall=0.0,
        weighted_f1=wf1,
        images=3,
    )


def _setup(tmp_path: Path) -> tuple[TrainConfig, DatasetIndex]:
    root = write_dataset_pair(tmp_path / "data", n_train=4, n_test=3)
    cfg = TrainConfig(
        data_root=root, out_dir=tmp_path / "out", augment=AugmentPolicy(image_size=40)
    )
    return cfg, load_imglab_dataset(cfg.test_dataset_path)


def _fixed_metrics(
    monkeypatch: pytest.MonkeyPatch, result: DetectionMetrics
) -> list[int]:
    seen: list[int] = []

    def _fake(
        model: InferenceModel, batches: Iterable[MiniBatch], confidence_threshold: float
    ) -> DetectionMetrics:
        seen.append(sum(len(b) for b in batches))
        return result

    monkeypatch.setattr(evaluation_mod, "compute_metrics", _fake)
    return seen


@pytest.fixture
def emitter(monkeypatch: pytest.MonkeyPatch) -> RecordingEmitter:
    rec = RecordingEmitter()
    monkeypatch.setattr(progress_mod, "_emitter", rec)
    return rec


def test_should_evaluate_on_epoch_boundaries_once(tmp_path: Path) -> None:
    cfg, index = _setup(tmp_path)
    ctl = EvaluationController(cfg, index, 10, num_workers=1, ctx=_CTX)
    assert not ctl.should_evaluate(0)
    assert not ctl.should_evaluate(5)
    assert ctl.should_evaluate(10)
    ctl.evaluate(FakeTrainer(), 10)
    assert not ctl.should_evaluate(10)
    assert ctl.should_evaluate(20)


def test_improvement_on_either_metric_saves_checkpoint(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, emitter: RecordingEmitter
) -> None:
    cfg, index = _setup(tmp_path)
    seen = _fixed_metrics(monkeypatch, _metrics(0.55, 0.55))
    ctl = EvaluationController(
        cfg, index, 10, num_workers=2, ctx=_CTX, best=BestMetrics(0.50, 0.60)
    )
    out = ctl.evaluate(FakeTrainer(), 20)
    assert seen == [3]
    assert out.improved is True
    assert out.epoch == 2
    assert out.checkpoint == cfg.out_dir / "yolo_000000020_0.5500_0.5500.pt"
    assert out.checkpoint.exists()
    assert out.best == BestMetrics(map=0.55, weighted_f1=0.60)
    assert json.loads(cfg.best_metrics_path.read_text(encoding="utf-8")) == [0.55, 0.6]
    assert emitter.types() == [
        "detector.train.epoch.v1",
        "detector.train.best.v1",
        "detector.train.checkpoint.v1",
    ]
    assert emitter.events[1]["best_weighted_f1"] == 0.60


def test_no_improvement_writes_no_checkpoint(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, emitter: RecordingEmitter
) -> None:
    cfg, index = _setup(tmp_path)
    _fixed_metrics(monkeypatch, _metrics(0.40, 0.50))
    ctl = EvaluationController(
        cfg, index, 10, num_workers=1, ctx=_CTX, best=BestMetrics(0.50, 0.60)
    )
    out = ctl.evaluate(FakeTrainer(), 10)
    assert out.improved is False and out.checkpoint is None
    assert list(cfg.out_dir.glob("*.pt")) == []
    assert emitter.types() == ["detector.train.epoch.v1"]
    assert ctl.best == BestMetrics(0.50, 0.60)


class _BrokenDisk(FakeTrainer):
    def save(self, path: Path) -> None:
        raise OSError("disk full")


def test_checkpoint_write_failure_is_logged_and_training_continues(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, emitter: RecordingEmitter
) -> None:
    cfg, index = _setup(tmp_path)
    _fixed_metrics(monkeypatch, _metrics(0.9, 0.9))
    ctl = EvaluationController(cfg, index, 10, num_workers=1, ctx=_CTX)
    out = ctl.evaluate(_BrokenDisk(), 10)
    assert out.improved is True
    assert out.checkpoint is None
    assert ctl.best == BestMetrics(0.9, 0.9)
    assert "detector.train.checkpoint.v1" not in emitter.types()


def test_best_metrics_loaded_from_disk(tmp_path: Path) -> None:
    cfg, index = _setup(tmp_path)
    cfg.out_dir.mkdir(parents=True)
    cfg.best_metrics_path.write_text("[0.3, 0.4]", encoding="utf-8")
    ctl = EvaluationController(cfg, index, 10, num_workers=1, ctx=_CTX)
    assert ctl.best == BestMetrics(0.3, 0.4)


def test_end_to_end_scoring_over_letterboxed_test_set(tmp_path: Path) -> None:
    cfg, index = _setup(tmp_path)
    # 40x30 images letterbox into 40x40 with a 5 px band on top
    hit = Detection(left=4, top=9, right=24, bottom=25, label="car", confidence=0.9)
    model = FakeTrainer(detections=[hit])
    ctl = EvaluationController(cfg, index, 10, num_workers=2, ctx=_CTX)
    out = ctl.evaluate(model, 10)
    assert out.metrics.images == 3
    assert out.metrics.map == pytest.approx(1.0)
    assert out.metrics.weighted_f1 == pytest.approx(1.0)
    assert out.checkpoint is not None and out.checkpoint.exists()
    assert model.inference.calls == 1


def test_eval_batch_size_doubles_training_batch(tmp_path: Path) -> None:
    cfg, index = _setup(tmp_path)
    ctl = EvaluationController(cfg, index, 10, num_workers=1, ctx=_CTX)
    assert ctl.batch_size == 2 * cfg.batch_size


def test_empty_test_set_rejected(tmp_path: Path) -> None:
    cfg, _ = _setup(tmp_path)
    empty = DatasetIndex(source=cfg.test_dataset_path, records=())
    with pytest.raises(AppError) as ei:
        EvaluationController(cfg, empty, 10, num_workers=1, ctx=_CTX)
    assert ei.value.code is ErrorCode.dataset_invalid


def test_failing_emitter_does_not_abort_evaluation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    class _Down:
        def __init__(self) -> None:
            self.calls = 0

        def emit(self, event: EventV1) -> None:
            self.calls += 1
            raise ConnectionError("redis down")

    down = _Down()
    monkeypatch.setattr(progress_mod, "_emitter", down)
    cfg, index = _setup(tmp_path)
    _fixed_metrics(monkeypatch, _metrics(0.70, 0.70))
    ctl = EvaluationController(cfg, index, 2, num_workers=1, ctx=_CTX, best=BestMetrics(0.0, 0.0))
    out = ctl.evaluate(FakeTrainer(), 2)
    assert isinstance(out, evaluation_mod.EvaluationOutcome)
    assert out.checkpoint is not None and out.checkpoint.exists()
    assert ctl.best == BestMetrics(0.70, 0.70)
    assert down.calls == 3
