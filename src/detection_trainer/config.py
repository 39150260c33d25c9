from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import replace
from pathlib import Path
from typing import Final

from .errors import AppError, ErrorCode
from .logging import get_logger
from .training.train_config import AugmentPolicy, TrainConfig

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/detector.toml")

_Convert = Callable[[object], object]


def _to_path(v: object) -> object:
    return Path(str(v))


def _to_int(v: object) -> object:
    if isinstance(v, bool):
        raise ValueError("bool is not an integer")
    return int(str(v))


def _to_float(v: object) -> object:
    if isinstance(v, bool):
        raise ValueError("bool is not a number")
    return float(str(v))


def _to_str(v: object) -> object:
    return str(v)


def _to_opt_int(v: object) -> object:
    if v is None or (isinstance(v, str) and v.strip().lower() in {"", "none"}):
        return None
    return _to_int(v)


def _to_size_pair(v: object) -> object:
    # "64x32" in env, [64, 32] in TOML
    if isinstance(v, str):
        parts = v.lower().split("x")
    elif isinstance(v, list | tuple):
        parts = [str(p) for p in v]
    else:
        raise ValueError("expected LONGxSHORT or [long, short]")
    if len(parts) != 2:
        raise ValueError("expected exactly two sizes")
    return (int(parts[0]), int(parts[1]))


_TRAIN_FIELDS: Final[dict[str, _Convert]] = {
    "data_root": _to_path,
    "out_dir": _to_path,
    "name": _to_str,
    "batch_per_device": _to_int,
    "num_devices": _to_int,
    "warmup_epochs": _to_int,
    "cosine_epochs": _to_int,
    "learning_rate": _to_float,
    "min_learning_rate": _to_float,
    "momentum": _to_float,
    "weight_decay": _to_float,
    "patience": _to_opt_int,
    "min_delta": _to_float,
    "test_period": _to_int,
    "num_workers": _to_int,
    "seed": _to_int,
    "device": _to_str,
    "sync_interval_s": _to_float,
    "keep_checkpoints": _to_int,
    "confidence_threshold": _to_float,
    "events_redis_url": _to_str,
}

_AUGMENT_FIELDS: Final[dict[str, _Convert]] = {
    "image_size": _to_int,
    "mirror_prob": _to_float,
    "mosaic_prob": _to_float,
    "crop_prob": _to_float,
    "blur_prob": _to_float,
    "perspective_prob": _to_float,
    "color_offset_prob": _to_float,
    "solarize_prob": _to_float,
    "angle": _to_float,
    "shift": _to_float,
    "gamma": _to_float,
    "color": _to_float,
    "min_coverage": _to_float,
    "min_object_size": _to_size_pair,
    "max_object_size": _to_float,
}


def _config_path() -> Path:
    env_val = os.getenv("DETECTOR_CONFIG")
    if env_val:
        return Path(env_val)
    return _DEFAULT_CONFIG_PATH


def _convert(
    table: str, fields: Mapping[str, _Convert], data: Mapping[str, object]
) -> dict[str, object]:
    out: dict[str, object] = {}
    for key, raw in data.items():
        conv = fields.get(key)
        if conv is None:
            raise AppError(ErrorCode.invalid_config, f"unknown {table} option {key!r}")
        try:
            out[key] = conv(raw)
        except (TypeError, ValueError) as exc:
            raise AppError(
                ErrorCode.invalid_config, f"invalid {table}.{key} value {raw!r}"
            ) from exc
    return out


def _env_table(prefix: str, fields: Mapping[str, _Convert]) -> dict[str, object]:
    out: dict[str, object] = {}
    for key in fields:
        val = os.getenv(f"{prefix}__{key.upper()}")
        if val is not None:
            out[key] = val
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _read_toml(path: Path) -> object:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise AppError(ErrorCode.invalid_config, f"failed to read config {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise AppError(ErrorCode.invalid_config, f"invalid TOML config {path}") from exc


def load_train_config(data_root: Path | None = None, out_dir: Path | None = None) -> TrainConfig:
    """Build the run configuration: defaults, then env, then the TOML file, then arguments.

    Env variables are ``TRAIN__<FIELD>`` and ``AUGMENT__<FIELD>``; the TOML
    file (``DETECTOR_CONFIG``, default ``config/detector.toml``) holds
    ``[train]`` and ``[augment]`` tables with the same field names.
    """
    train_in = _convert("train", _TRAIN_FIELDS, _env_table("TRAIN", _TRAIN_FIELDS))
    augment_in = _convert("augment", _AUGMENT_FIELDS, _env_table("AUGMENT", _AUGMENT_FIELDS))
    cfg_path = _config_path()
    if cfg_path.exists():
        raw = _read_toml(cfg_path)
        train_in.update(_convert("train", _TRAIN_FIELDS, _toml_table(raw, "train")))
        augment_in.update(_convert("augment", _AUGMENT_FIELDS, _toml_table(raw, "augment")))
        get_logger().info(f"config_loaded path={cfg_path}")
    policy = replace(AugmentPolicy(), **augment_in)
    if "shift" in augment_in and policy.crop_prob <= 0.0:
        raise AppError(ErrorCode.invalid_config, "shift needs a positive crop probability")
    if data_root is not None:
        train_in["data_root"] = data_root
    if out_dir is not None:
        train_in["out_dir"] = out_dir
    root = train_in.pop("data_root", None)
    if not isinstance(root, Path):
        raise AppError(ErrorCode.invalid_config, "data_root is required")
    return TrainConfig(data_root=root, **train_in, augment=policy)  # type: ignore[arg-type]


__all__ = ["load_train_config"]
