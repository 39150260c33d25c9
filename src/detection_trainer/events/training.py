from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal, TypedDict


class StartedV1(TypedDict):
    type: Literal["detector.train.started.v1"]
    name: str
    run_id: str | None
    ts: str
    steps: int
    steps_per_epoch: int
    warmup_epochs: int
    cosine_epochs: int
    batch_size: int
    learning_rate: float
    loader_workers: int
    test_period: int
    image_size: int
    device: str


class EpochV1(TypedDict):
    type: Literal["detector.train.epoch.v1"]
    name: str
    run_id: str | None
    ts: str
    epoch: int
    steps: int
    learning_rate: float
    map: float
    weighted_f1: float
    time_s: float


class BestV1(TypedDict):
    type: Literal["detector.train.best.v1"]
    name: str
    run_id: str | None
    ts: str
    epoch: int
    best_map: float
    best_weighted_f1: float


class CheckpointV1(TypedDict):
    type: Literal["detector.train.checkpoint.v1"]
    name: str
    run_id: str | None
    ts: str
    steps: int
    path: str


class CompletedV1(TypedDict):
    type: Literal["detector.train.completed.v1"]
    name: str
    run_id: str | None
    ts: str
    steps: int
    best_map: float
    best_weighted_f1: float
    path: str


EventV1 = StartedV1 | EpochV1 | BestV1 | CheckpointV1 | CompletedV1


def encode_event(ev: EventV1) -> str:
    return json.dumps(ev, separators=(",", ":"))


def _ts() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class Context:
    name: str
    run_id: str | None


def started(
    ctx: Context,
    *,
    steps: int,
    steps_per_epoch: int,
    warmup_epochs: int,
    cosine_epochs: int,
    batch_size: int,
    learning_rate: float,
    loader_workers: int,
    test_period: int,
    image_size: int,
    device: str,
) -> StartedV1:
    return {
        "type": "detector.train.started.v1",
        "name": ctx.name,
        "run_id": ctx.run_id,
        "ts": _ts(),
        "steps": int(steps),
        "steps_per_epoch": int(steps_per_epoch),
        "warmup_epochs": int(warmup_epochs),
        "cosine_epochs": int(cosine_epochs),
        "batch_size": int(batch_size),
        "learning_rate": float(learning_rate),
        "loader_workers": int(loader_workers),
        "test_period": int(test_period),
        "image_size": int(image_size),
        "device": str(device),
    }


def epoch(
    ctx: Context,
    *,
    epoch: int,
    steps: int,
    learning_rate: float,
    map_score: float,
    weighted_f1: float,
    time_s: float,
) -> EpochV1:
    return {
        "type": "detector.train.epoch.v1",
        "name": ctx.name,
        "run_id": ctx.run_id,
        "ts": _ts(),
        "epoch": int(epoch),
        "steps": int(steps),
        "learning_rate": float(learning_rate),
        "map": float(map_score),
        "weighted_f1": float(weighted_f1),
        "time_s": float(time_s),
    }


def best(ctx: Context, *, epoch: int, best_map: float, best_weighted_f1: float) -> BestV1:
    return {
        "type": "detector.train.best.v1",
        "name": ctx.name,
        "run_id": ctx.run_id,
        "ts": _ts(),
        "epoch": int(epoch),
        "best_map": float(best_map),
        "best_weighted_f1": float(best_weighted_f1),
    }


def checkpoint(ctx: Context, *, steps: int, path: str) -> CheckpointV1:
    return {
        "type": "detector.train.checkpoint.v1",
        "name": ctx.name,
        "run_id": ctx.run_id,
        "ts": _ts(),
        "steps": int(steps),
        "path": path,
    }


def completed(
    ctx: Context, *, steps: int, best_map: float, best_weighted_f1: float, path: str
) -> CompletedV1:
    return {
        "type": "detector.train.completed.v1",
        "name": ctx.name,
        "run_id": ctx.run_id,
        "ts": _ts(),
        "steps": int(steps),
        "best_map": float(best_map),
        "best_weighted_f1": float(best_weighted_f1),
        "path": path,
    }
