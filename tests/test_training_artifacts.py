from __future__ import annotations

import json
from pathlib import Path

from detection_trainer.training.artifacts import (
    checkpoint_name,
    prune_checkpoints,
    write_checkpoint,
    write_final_model,
)
from tests._imglab import FakeTrainer


def test_checkpoint_name_format() -> None:
    assert checkpoint_name("yolo", 1200, 0.51234, 0.6) == "yolo_000001200_0.5123_0.6000.pt"


def test_write_checkpoint_with_manifest(tmp_path: Path) -> None:
    model = FakeTrainer()
    path = write_checkpoint(
        out_dir=tmp_path / "out",
        name="yolo",
        model=model,
        steps=10,
        map_score=0.5,
        weighted_f1=0.25,
    )
    assert path.name == "yolo_000000010_0.5000_0.2500.pt"
    assert path.read_bytes() == b"weights"
    manifest = json.loads(path.with_suffix(".json").read_text(encoding="utf-8"))
    assert manifest["kind"] == "checkpoint"
    assert manifest["steps"] == 10 and manifest["map"] == 0.5
    assert manifest["schema_version"] == "v1"


def test_write_final_model(tmp_path: Path) -> None:
    path = write_final_model(
        out_dir=tmp_path, name="yolo", model=FakeTrainer(), steps=99, learning_rate=0.001
    )
    assert path == tmp_path / "yolo.pt"
    manifest = json.loads((tmp_path / "yolo.json").read_text(encoding="utf-8"))
    assert manifest["kind"] == "final" and manifest["steps"] == 99


def test_prune_keeps_newest_by_step(tmp_path: Path) -> None:
    model = FakeTrainer()
    for steps in (30, 10, 20):
        write_checkpoint(
            out_dir=tmp_path, name="yolo", model=model, steps=steps, map_score=0.1, weighted_f1=0.1
        )
    write_checkpoint(
        out_dir=tmp_path, name="other", model=model, steps=5, map_score=0.1, weighted_f1=0.1
    )
    deleted = prune_checkpoints(tmp_path, "yolo", 2)
    assert sorted(p.name for p in deleted) == [
        "yolo_000000010_0.1000_0.1000.json",
        "yolo_000000010_0.1000_0.1000.pt",
    ]
    remaining = sorted(p.name for p in tmp_path.glob("*.pt"))
    assert remaining == [
        "other_000000005_0.1000_0.1000.pt",
        "yolo_000000020_0.1000_0.1000.pt",
        "yolo_000000030_0.1000_0.1000.pt",
    ]


def test_prune_zero_keeps_everything(tmp_path: Path) -> None:
    write_checkpoint(
        out_dir=tmp_path, name="yolo", model=FakeTrainer(), steps=1, map_score=0, weighted_f1=0
    )
    assert prune_checkpoints(tmp_path, "yolo", 0) == []
    assert len(list(tmp_path.glob("*.pt"))) == 1
