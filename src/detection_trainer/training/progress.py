from __future__ import annotations

from typing import Protocol

from detection_trainer.events.training import EventV1
from detection_trainer.logging import get_logger


class ProgressEmitter(Protocol):
    def emit(self, event: EventV1) -> None: ...


_emitter: ProgressEmitter | None = None


def set_progress_emitter(emitter: ProgressEmitter | None) -> None:
    global _emitter
    _emitter = emitter


def emit_event(event: EventV1) -> None:
    em = _emitter
    if em is None:
        return
    try:
        em.emit(event)
    except (OSError, RuntimeError, ValueError, TypeError) as exc:
        get_logger().error("progress_emitter_failed type=%s error=%s", event["type"], exc)
        raise


def try_emit_event(event: EventV1) -> bool:
    """Emit ``event``; a failing emitter is logged and reported as False instead of raised."""
    try:
        emit_event(event)
    except Exception as exc:
        get_logger().error("progress_event_dropped type=%s error=%s", event["type"], exc)
        return False
    return True
