from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from PIL import Image

from detection_trainer.errors import AppError, ErrorCode

from .boxes import LabeledBox, Sample
from .sample_queue import SampleQueue


@dataclass(frozen=True)
class MiniBatch:
    """Images with their box lists; ``images[i]`` goes with ``boxes[i]``."""

    images: tuple[Image.Image, ...]
    boxes: tuple[tuple[LabeledBox, ...], ...]

    def __len__(self) -> int:
        return len(self.images)


def assemble_batch(queue: SampleQueue[Sample], count: int) -> MiniBatch:
    """Dequeue exactly ``count`` samples, blocking while the queue is empty.

    Raises ``AppError(queue_closed)`` when the queue is disabled and drained
    before ``count`` samples arrive; a short batch is never returned.
    """
    if int(count) <= 0:
        raise ValueError("count must be > 0")
    images: list[Image.Image] = []
    boxes: list[tuple[LabeledBox, ...]] = []
    while len(images) < count:
        sample = queue.dequeue()
        if sample is None:
            raise AppError(
                ErrorCode.queue_closed, f"queue closed after {len(images)} of {count} samples"
            )
        images.append(sample.image)
        boxes.append(sample.boxes)
    return MiniBatch(images=tuple(images), boxes=tuple(boxes))


def iter_batches(queue: SampleQueue[Sample], total: int, batch_size: int) -> Iterator[MiniBatch]:
    """Yield batches covering exactly ``total`` samples; the last may be smaller."""
    if int(batch_size) <= 0:
        raise ValueError("batch_size must be > 0")
    remaining = int(total)
    while remaining > 0:
        n = min(int(batch_size), remaining)
        yield assemble_batch(queue, n)
        remaining -= n
