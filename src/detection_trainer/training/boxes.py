from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

from PIL import Image

Point = tuple[float, float]


@dataclass(frozen=True)
class LabeledBox:
    """Axis-aligned box in pixel coordinates, right/bottom exclusive."""

    left: float
    top: float
    right: float
    bottom: float
    label: str
    confidence: float = 1.0
    ignore: bool = False

    @property
    def width(self) -> float:
        return max(0.0, self.right - self.left)

    @property
    def height(self) -> float:
        return max(0.0, self.bottom - self.top)

    @property
    def area(self) -> float:
        return self.width * self.height

    def corners(self) -> tuple[Point, Point, Point, Point]:
        return (
            (self.left, self.top),
            (self.right, self.top),
            (self.left, self.bottom),
            (self.right, self.bottom),
        )

    def intersect_area(self, left: float, top: float, right: float, bottom: float) -> float:
        w = min(self.right, right) - max(self.left, left)
        h = min(self.bottom, bottom) - max(self.top, top)
        if w <= 0.0 or h <= 0.0:
            return 0.0
        return w * h

    def coverage(self, width: float, height: float) -> float:
        """Fraction of the box lying inside a ``width`` x ``height`` image."""
        a = self.area
        if a <= 0.0:
            return 0.0
        return self.intersect_area(0.0, 0.0, width, height) / a

    def with_rect(self, left: float, top: float, right: float, bottom: float) -> LabeledBox:
        return replace(self, left=left, top=top, right=right, bottom=bottom)

    def clipped(self, left: float, top: float, right: float, bottom: float) -> LabeledBox:
        return self.with_rect(
            min(max(self.left, left), right),
            min(max(self.top, top), bottom),
            max(min(self.right, right), left),
            max(min(self.bottom, bottom), top),
        )

    def scaled(self, sx: float, sy: float) -> LabeledBox:
        return self.with_rect(self.left * sx, self.top * sy, self.right * sx, self.bottom * sy)

    def translated(self, dx: float, dy: float) -> LabeledBox:
        return self.with_rect(self.left + dx, self.top + dy, self.right + dx, self.bottom + dy)

    def mapped(self, fn: Callable[[Point], Point]) -> LabeledBox:
        """Bounding box of the four corners mapped through ``fn``."""
        pts = [fn(p) for p in self.corners()]
        xs = [p[0] for p in pts]
        ys = [p[1] for p in pts]
        return self.with_rect(min(xs), min(ys), max(xs), max(ys))

    def marked_ignored(self) -> LabeledBox:
        return self if self.ignore else replace(self, ignore=True)


@dataclass(frozen=True)
class Sample:
    image: Image.Image
    boxes: tuple[LabeledBox, ...]


def map_boxes(boxes: Iterable[LabeledBox], fn: Callable[[Point], Point]) -> tuple[LabeledBox, ...]:
    return tuple(b.mapped(fn) for b in boxes)


def ignore_uncovered(
    boxes: Iterable[LabeledBox], width: float, height: float, min_coverage: float
) -> tuple[LabeledBox, ...]:
    """Mark boxes whose visible fraction is below ``min_coverage`` as ignored."""
    out: list[LabeledBox] = []
    for b in boxes:
        if not b.ignore and b.coverage(width, height) < min_coverage:
            out.append(b.marked_ignored())
        else:
            out.append(b)
    return tuple(out)


def blank_sample(image_size: int) -> Sample:
    return Sample(image=Image.new("RGB", (image_size, image_size), (0, 0, 0)), boxes=())
