from __future__ import annotations

import argparse
import importlib
import sys
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

from detection_trainer.config import load_train_config
from detection_trainer.errors import AppError, ErrorCode, exit_code_for
from detection_trainer.events.publisher import RedisProgressEmitter, RedisPublisher
from detection_trainer.logging import get_logger, init_logging
from detection_trainer.training.loop import train_with_config
from detection_trainer.training.model import DetectionModule, TorchDetectorTrainer
from detection_trainer.training.progress import set_progress_emitter
from detection_trainer.training.train_config import TrainConfig


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Train an object detector on imglab training.xml/testing.xml datasets"
    )
    ap.add_argument("data_root", help="Directory holding training.xml and testing.xml")
    ap.add_argument(
        "--model",
        required=True,
        help="Factory returning the detection module, as 'package.module:function'",
    )
    ap.add_argument("--out-dir", default=None, help="Directory for checkpoints and sync files")
    ap.add_argument("--name", default=None, help="Experiment name used in output file names")
    ap.add_argument("--batch", type=int, default=None, help="Mini-batch size per device")
    ap.add_argument("--workers", type=int, default=None, help="Loader threads (0 = cores)")
    ap.add_argument("--warmup", type=int, default=None, help="Learning-rate warm-up epochs")
    ap.add_argument("--cosine-epochs", type=int, default=None, help="Cosine schedule epochs")
    ap.add_argument("--patience", type=int, default=None, help="Epochs without progress")
    ap.add_argument("--test-period", type=int, default=None, help="Test one step every N")
    ap.add_argument("--learning-rate", type=float, default=None)
    ap.add_argument("--device", default=None, help="Torch device string, e.g. cpu or cuda")
    return ap


def _apply_overrides(cfg: TrainConfig, args: argparse.Namespace) -> TrainConfig:
    overrides: dict[str, object] = {}
    pairs = (
        ("name", args.name),
        ("batch_per_device", args.batch),
        ("num_workers", args.workers),
        ("warmup_epochs", args.warmup),
        ("cosine_epochs", args.cosine_epochs),
        ("patience", args.patience),
        ("test_period", args.test_period),
        ("learning_rate", args.learning_rate),
        ("device", args.device),
    )
    for key, val in pairs:
        if val is not None:
            overrides[key] = val
    return replace(cfg, **overrides) if overrides else cfg  # type: ignore[arg-type]


def _load_factory(target: str) -> Callable[[], DetectionModule]:
    mod_name, sep, attr = target.partition(":")
    if not sep or not mod_name or not attr:
        raise AppError(ErrorCode.invalid_config, f"--model must be 'module:function', got {target}")
    try:
        factory: object = getattr(importlib.import_module(mod_name), attr)
    except (ImportError, AttributeError) as exc:
        raise AppError(ErrorCode.invalid_config, f"cannot import model factory {target}") from exc
    if not callable(factory):
        raise AppError(ErrorCode.invalid_config, f"{target} is not callable")
    return factory  # type: ignore[return-value]


def main(argv: list[str] | None = None) -> int:
    init_logging()
    log = get_logger()
    args = _build_parser().parse_args(argv)
    try:
        out_dir = Path(str(args.out_dir)) if args.out_dir is not None else None
        cfg = _apply_overrides(load_train_config(Path(str(args.data_root)), out_dir), args)
        module = _load_factory(str(args.model))()
        if cfg.events_redis_url:
            set_progress_emitter(RedisProgressEmitter(RedisPublisher(cfg.events_redis_url)))
        result = train_with_config(cfg, TorchDetectorTrainer(module, cfg))
    except AppError as exc:
        log.error("training_failed code=%s message=%s", exc.code.value, exc.message)
        return exit_code_for(exc.code)
    except KeyboardInterrupt:
        log.error("training_interrupted_by_user")
        return 130
    finally:
        set_progress_emitter(None)
    log.info(
        f"training_complete model={result.model_path} steps={result.steps} "
        f"best_map={result.best.map:.4f} best_weighted_f1={result.best.weighted_f1:.4f}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
