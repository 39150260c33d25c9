from __future__ import annotations

from pathlib import Path

import pytest

import scripts.train_detector as cli
from tests._imglab import write_dataset_pair


@pytest.fixture
def env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DETECTOR_CONFIG", str(tmp_path / "absent.toml"))
    monkeypatch.setenv("AUGMENT__IMAGE_SIZE", "32")
    monkeypatch.setenv("TRAIN__EVENTS_REDIS_URL", "")


def _args(root: Path, out: Path, *extra: str) -> list[str]:
    return [
        str(root),
        "--model",
        "tests._tiny_detector:build",
        "--out-dir",
        str(out),
        "--batch",
        "2",
        "--workers",
        "1",
        "--warmup",
        "0",
        "--cosine-epochs",
        "2",
        *extra,
    ]


def test_trains_tiny_detector_end_to_end(env: None, tmp_path: Path) -> None:
    root = write_dataset_pair(tmp_path / "data", n_train=4, n_test=2)
    out = tmp_path / "out"
    assert cli.main(_args(root, out, "--name", "tiny")) == 0
    assert (out / "tiny.pt").exists()
    assert (out / "tiny.json").exists()
    assert (out / "tiny_sync.json").exists()


def test_bad_model_spec_is_config_error(env: None, tmp_path: Path) -> None:
    root = write_dataset_pair(tmp_path / "data", n_train=4, n_test=2)
    argv = _args(root, tmp_path / "out")
    argv[2] = "no_colon_here"
    assert cli.main(argv) == 2
    argv[2] = "tests._tiny_detector:missing"
    assert cli.main(argv) == 2


def test_missing_dataset_exit_code(env: None, tmp_path: Path) -> None:
    assert cli.main(_args(tmp_path / "empty", tmp_path / "out")) == 2


def test_corrupt_state_exit_code(env: None, tmp_path: Path) -> None:
    root = write_dataset_pair(tmp_path / "data", n_train=4, n_test=2)
    out = tmp_path / "out"
    out.mkdir()
    (out / "yolo_sync.json").write_text("{broken", encoding="utf-8")
    assert cli.main(_args(root, out)) == 3


def test_invalid_override_combination(env: None, tmp_path: Path) -> None:
    root = write_dataset_pair(tmp_path / "data", n_train=4, n_test=2)
    assert cli.main(_args(root, tmp_path / "out", "--patience", "2")) == 2


def test_overrides_apply(tmp_path: Path) -> None:
    from detection_trainer.training.train_config import TrainConfig

    args = cli._build_parser().parse_args(
        [str(tmp_path), "--model", "m:f", "--batch", "3", "--test-period", "5"]
    )
    cfg = cli._apply_overrides(TrainConfig(data_root=tmp_path), args)
    assert cfg.batch_per_device == 3
    assert cfg.test_period == 5
    assert cfg.name == "yolo"
