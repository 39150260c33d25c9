from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from detection_trainer.logging import get_logger

_CHECKPOINT_RE = re.compile(r"^(?P<name>.+)_(?P<steps>\d+)_(?P<map>[0-9.]+)_(?P<wf1>[0-9.]+)\.pt$")


class _Savable(Protocol):
    def save(self, path: Path) -> None: ...  # pragma: no cover - typing only


def checkpoint_name(name: str, steps: int, map_score: float, weighted_f1: float) -> str:
    return f"{name}_{int(steps):09d}_{map_score:.4f}_{weighted_f1:.4f}.pt"


def _write_manifest(path: Path, fields: dict[str, object]) -> None:
    manifest: dict[str, object] = {
        "schema_version": "v1",
        "created_at": datetime.now(UTC).isoformat(),
        **fields,
    }
    path.write_text(json.dumps(manifest), encoding="utf-8")


def write_checkpoint(
    *,
    out_dir: Path,
    name: str,
    model: _Savable,
    steps: int,
    map_score: float,
    weighted_f1: float,
) -> Path:
    """Save a best-so-far checkpoint tagged with its step count and metrics."""
    out_dir.mkdir(parents=True, exist_ok=True)
    model_path = out_dir / checkpoint_name(name, steps, map_score, weighted_f1)
    model.save(model_path)
    _write_manifest(
        model_path.with_suffix(".json"),
        {
            "name": name,
            "kind": "checkpoint",
            "steps": int(steps),
            "map": float(map_score),
            "weighted_f1": float(weighted_f1),
        },
    )
    get_logger().info(
        f"checkpoint_saved path={model_path} steps={steps} "
        f"map={map_score:.4f} weighted_f1={weighted_f1:.4f}"
    )
    return model_path


def write_final_model(
    *, out_dir: Path, name: str, model: _Savable, steps: int, learning_rate: float
) -> Path:
    out_dir.mkdir(parents=True, exist_ok=True)
    model_path = out_dir / f"{name}.pt"
    model.save(model_path)
    _write_manifest(
        model_path.with_suffix(".json"),
        {
            "name": name,
            "kind": "final",
            "steps": int(steps),
            "learning_rate": float(learning_rate),
        },
    )
    get_logger().info(f"final_model_saved path={model_path} steps={steps}")
    return model_path


def _checkpoint_steps(path: Path, name: str) -> int | None:
    m = _CHECKPOINT_RE.match(path.name)
    if m is None or m.group("name") != name:
        return None
    return int(m.group("steps"))


def prune_checkpoints(out_dir: Path, name: str, keep: int) -> list[Path]:
    """Delete all but the newest ``keep`` checkpoints of ``name`` with their manifests.

    ``keep <= 0`` keeps everything. Returns the deleted paths.
    """
    if int(keep) <= 0:
        return []
    try:
        entries = list(out_dir.iterdir())
    except OSError as exc:
        get_logger().error("prune_list_failed dir=%s error=%s", out_dir, exc)
        raise
    found = [(s, p) for p in entries if (s := _checkpoint_steps(p, name)) is not None]
    found.sort(key=lambda sp: sp[0])
    deleted: list[Path] = []
    for _, p in found[: max(0, len(found) - int(keep))]:
        for target in (p, p.with_suffix(".json")):
            if not target.exists():
                continue
            try:
                target.unlink()
            except OSError as exc:
                get_logger().error("prune_delete_failed path=%s error=%s", target, exc)
                raise
            deleted.append(target)
    return deleted


__all__ = [
    "checkpoint_name",
    "prune_checkpoints",
    "write_checkpoint",
    "write_final_model",
]
