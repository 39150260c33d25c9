from __future__ import annotations

from detection_trainer.errors import AppError, ErrorCode, exit_code_for


def test_default_message_used_when_missing() -> None:
    err = AppError(ErrorCode.queue_closed)
    assert err.code is ErrorCode.queue_closed
    assert err.message == "Sample queue was disabled before the batch was complete."
    assert str(err) == err.message


def test_explicit_message_kept() -> None:
    err = AppError(ErrorCode.invalid_config, "batch_per_device must be > 0")
    assert err.message == "batch_per_device must be > 0"


def test_exit_codes() -> None:
    assert exit_code_for(ErrorCode.invalid_config) == 2
    assert exit_code_for(ErrorCode.dataset_invalid) == 2
    assert exit_code_for(ErrorCode.state_invalid) == 3
    assert exit_code_for(ErrorCode.loader_failed) == 1
    assert exit_code_for(ErrorCode.internal_error) == 1
