from __future__ import annotations

import json
from pathlib import Path

import pytest

from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.training.schedule import SchedulePhase, ScheduleState
from detection_trainer.training.state import (
    BestMetrics,
    read_best_metrics,
    read_schedule_state,
    write_best_metrics,
    write_schedule_state,
)


def test_schedule_state_round_trip(tmp_path: Path) -> None:
    p = tmp_path / "yolo_sync.json"
    st = ScheduleState(
        phase=SchedulePhase.steady,
        learning_rate=0.01,
        min_learning_rate=1e-5,
        steps=1234,
        phase_start_step=300,
        train_steps_without_progress=7,
        test_steps_without_progress=2,
        best_train_loss=0.5,
        best_test_loss=None,
        test_steps=40,
    )
    write_schedule_state(p, st)
    assert read_schedule_state(p) == st
    assert not (tmp_path / "yolo_sync.json.tmp").exists()


def test_missing_state_is_none(tmp_path: Path) -> None:
    assert read_schedule_state(tmp_path / "none.json") is None


@pytest.mark.parametrize(
    "payload",
    [
        "not json",
        "[1, 2]",
        json.dumps({"phase": "sideways"}),
        json.dumps(
            {
                "phase": "steady",
                "learning_rate": 0.1,
                "min_learning_rate": 0.001,
                "steps": -3,
                "phase_start_step": 0,
                "train_steps_without_progress": 0,
                "test_steps_without_progress": 0,
                "test_steps": 0,
            }
        ),
        json.dumps(
            {
                "phase": "steady",
                "learning_rate": True,
                "min_learning_rate": 0.001,
                "steps": 1,
                "phase_start_step": 0,
                "train_steps_without_progress": 0,
                "test_steps_without_progress": 0,
                "test_steps": 0,
            }
        ),
    ],
)
def test_invalid_state_rejected(tmp_path: Path, payload: str) -> None:
    p = tmp_path / "s.json"
    p.write_text(payload, encoding="utf-8")
    with pytest.raises(AppError) as ei:
        read_schedule_state(p)
    assert ei.value.code is ErrorCode.state_invalid


def test_best_metrics_default_and_round_trip(tmp_path: Path) -> None:
    p = tmp_path / "best.json"
    assert read_best_metrics(p) == BestMetrics(0.0, 0.0)
    write_best_metrics(p, BestMetrics(map=0.55, weighted_f1=0.6))
    assert json.loads(p.read_text(encoding="utf-8")) == [0.55, 0.6]
    assert read_best_metrics(p) == BestMetrics(map=0.55, weighted_f1=0.6)


@pytest.mark.parametrize("payload", ["[0.5]", '{"map": 0.5}', '["a", 0.1]', "[true, 0.1]"])
def test_invalid_best_metrics(tmp_path: Path, payload: str) -> None:
    p = tmp_path / "best.json"
    p.write_text(payload, encoding="utf-8")
    with pytest.raises(AppError) as ei:
        read_best_metrics(p)
    assert ei.value.code is ErrorCode.state_invalid
