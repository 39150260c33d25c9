from __future__ import annotations

from enum import Enum
from typing import Final


class ErrorCode(str, Enum):
    invalid_config = "invalid_config"
    dataset_invalid = "dataset_invalid"
    image_load_failed = "image_load_failed"
    queue_closed = "queue_closed"
    loader_failed = "loader_failed"
    state_invalid = "state_invalid"
    checkpoint_write_failed = "checkpoint_write_failed"
    internal_error = "internal_error"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_config: "Invalid training configuration.",
    ErrorCode.dataset_invalid: "Dataset metadata could not be loaded.",
    ErrorCode.image_load_failed: "Failed to load image.",
    ErrorCode.queue_closed: "Sample queue was disabled before the batch was complete.",
    ErrorCode.loader_failed: "A data loader worker failed.",
    ErrorCode.state_invalid: "Persisted trainer state is invalid.",
    ErrorCode.checkpoint_write_failed: "Failed to write checkpoint.",
    ErrorCode.internal_error: "Internal error.",
}


class AppError(Exception):
    def __init__(self, code: ErrorCode, message: str | None = None) -> None:
        msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
        super().__init__(msg)
        self.code = code
        self.message = msg


def exit_code_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_config:
        return 2
    if code is ErrorCode.dataset_invalid:
        return 2
    if code is ErrorCode.state_invalid:
        return 3
    return 1
