from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from detection_trainer.errors import AppError, ErrorCode

from .schedule import SchedulePhase, ScheduleState


@dataclass(frozen=True)
class BestMetrics:
    map: float = 0.0
    weighted_f1: float = 0.0


def _encode_state(st: ScheduleState) -> dict[str, object]:
    return {
        "phase": st.phase.value,
        "learning_rate": float(st.learning_rate),
        "min_learning_rate": float(st.min_learning_rate),
        "steps": int(st.steps),
        "phase_start_step": int(st.phase_start_step),
        "train_steps_without_progress": int(st.train_steps_without_progress),
        "test_steps_without_progress": int(st.test_steps_without_progress),
        "best_train_loss": (
            float(st.best_train_loss) if st.best_train_loss is not None else None
        ),
        "best_test_loss": float(st.best_test_loss) if st.best_test_loss is not None else None,
        "test_steps": int(st.test_steps),
    }


def _req_int(d: dict[str, object], key: str) -> int:
    v = d.get(key)
    if isinstance(v, bool) or not isinstance(v, int) or v < 0:
        raise AppError(ErrorCode.state_invalid, f"{key} must be a non-negative integer")
    return v


def _req_float(d: dict[str, object], key: str) -> float:
    v = d.get(key)
    if isinstance(v, bool) or not isinstance(v, int | float):
        raise AppError(ErrorCode.state_invalid, f"{key} must be a number")
    return float(v)


def _opt_float(d: dict[str, object], key: str) -> float | None:
    if d.get(key) is None:
        return None
    return _req_float(d, key)


def _decode_state(d: dict[str, object]) -> ScheduleState:
    phase_raw = d.get("phase")
    if not isinstance(phase_raw, str):
        raise AppError(ErrorCode.state_invalid, "phase must be a string")
    try:
        phase = SchedulePhase(phase_raw)
    except ValueError as exc:
        raise AppError(ErrorCode.state_invalid, f"unknown phase {phase_raw!r}") from exc
    return ScheduleState(
        phase=phase,
        learning_rate=_req_float(d, "learning_rate"),
        min_learning_rate=_req_float(d, "min_learning_rate"),
        steps=_req_int(d, "steps"),
        phase_start_step=_req_int(d, "phase_start_step"),
        train_steps_without_progress=_req_int(d, "train_steps_without_progress"),
        test_steps_without_progress=_req_int(d, "test_steps_without_progress"),
        best_train_loss=_opt_float(d, "best_train_loss"),
        best_test_loss=_opt_float(d, "best_test_loss"),
        test_steps=_req_int(d, "test_steps"),
    )


def _read_json(path: Path) -> object:
    try:
        raw = path.read_text(encoding="utf-8")
        return json.loads(raw)
    except (OSError, ValueError) as exc:
        raise AppError(ErrorCode.state_invalid, f"cannot read {path.name}") from exc


def _write_json(path: Path, payload: object) -> None:
    # Atomic replace
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(
        json.dumps(payload, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
    )
    tmp.replace(path)


def read_schedule_state(path: Path) -> ScheduleState | None:
    if not path.exists():
        return None
    data = _read_json(path)
    if not isinstance(data, dict):
        raise AppError(ErrorCode.state_invalid, "trainer state must be an object")
    return _decode_state(data)


def write_schedule_state(path: Path, state: ScheduleState) -> None:
    _write_json(path, _encode_state(state))


def read_best_metrics(path: Path) -> BestMetrics:
    """Return the persisted ``[map, weighted_f1]`` pair, zeros when absent."""
    if not path.exists():
        return BestMetrics()
    data = _read_json(path)
    if not isinstance(data, list) or len(data) != 2:
        raise AppError(ErrorCode.state_invalid, "best metrics must be a [map, wf1] pair")
    best_map, best_wf1 = data
    for v in (best_map, best_wf1):
        if isinstance(v, bool) or not isinstance(v, int | float):
            raise AppError(ErrorCode.state_invalid, "best metrics must be numbers")
    return BestMetrics(map=float(best_map), weighted_f1=float(best_wf1))


def write_best_metrics(path: Path, best: BestMetrics) -> None:
    _write_json(path, [float(best.map), float(best.weighted_f1)])


__all__ = [
    "BestMetrics",
    "read_best_metrics",
    "read_schedule_state",
    "write_best_metrics",
    "write_schedule_state",
]
