from __future__ import annotations

import math
import random
from collections.abc import Iterable, Sequence
from typing import Final

import torch
from PIL import Image, ImageFilter

from .boxes import LabeledBox, Point, Sample, ignore_uncovered, map_boxes
from .train_config import AugmentPolicy

# x' = a*x + b*y + c, y' = d*x + e*y + f
Affine = tuple[float, float, float, float, float, float]
Homography = tuple[float, float, float, float, float, float, float, float]

_BLACK: Final[tuple[int, int, int]] = (0, 0, 0)
_PERSPECTIVE_AMOUNT: Final[float] = 0.05
_BLUR_RADIUS: Final[float] = 1.0
_SOLARIZE_THRESHOLD: Final[int] = 128
_MOSAIC_TILES: Final[int] = 4
# AlexNet PCA lighting basis over RGB
_PCA_EIGVAL: Final[tuple[float, float, float]] = (0.2175, 0.0188, 0.0045)
_PCA_EIGVEC: Final[tuple[tuple[float, float, float], ...]] = (
    (-0.5675, 0.7192, 0.4009),
    (-0.5808, -0.0045, -0.8140),
    (-0.5836, -0.6948, 0.4203),
)
_PCA_STD: Final[float] = 0.1


def _apply(m: Affine, p: Point) -> Point:
    a, b, c, d, e, f = m
    x, y = p
    return (a * x + b * y + c, d * x + e * y + f)


def _compose(outer: Affine, inner: Affine) -> Affine:
    a1, b1, c1, d1, e1, f1 = outer
    a2, b2, c2, d2, e2, f2 = inner
    return (
        a1 * a2 + b1 * d2,
        a1 * b2 + b1 * e2,
        a1 * c2 + b1 * f2 + c1,
        d1 * a2 + e1 * d2,
        d1 * b2 + e1 * e2,
        d1 * c2 + e1 * f2 + f1,
    )


def _invert(m: Affine) -> Affine:
    a, b, c, d, e, f = m
    det = a * e - b * d
    if det == 0.0:
        raise ValueError("affine transform is not invertible")
    ia, ib, id_, ie = e / det, -b / det, -d / det, a / det
    return (ia, ib, -(ia * c + ib * f), id_, ie, -(id_ * c + ie * f))


def _rotation(degrees: float) -> Affine:
    t = math.radians(degrees)
    cos_t, sin_t = math.cos(t), math.sin(t)
    return (cos_t, sin_t, 0.0, -sin_t, cos_t, 0.0)


def _warp(image: Image.Image, m: Affine, size: tuple[int, int]) -> Image.Image:
    # PIL expects the output -> input mapping
    return image.transform(
        size,
        Image.Transform.AFFINE,
        _invert(m),
        resample=Image.Resampling.BILINEAR,
        fillcolor=_BLACK,
    )


def solve_homography(src: Sequence[Point], dst: Sequence[Point]) -> Homography:
    """Coefficients of the projective map sending the four ``src`` points onto ``dst``."""
    rows: list[list[float]] = []
    rhs: list[float] = []
    for (x, y), (u, v) in zip(src, dst, strict=True):
        rows.append([x, y, 1.0, 0.0, 0.0, 0.0, -u * x, -u * y])
        rhs.append(u)
        rows.append([0.0, 0.0, 0.0, x, y, 1.0, -v * x, -v * y])
        rhs.append(v)
    a = torch.tensor(rows, dtype=torch.float64)
    b = torch.tensor(rhs, dtype=torch.float64)
    sol = torch.linalg.solve(a, b)
    c = [float(v) for v in sol.tolist()]
    return (c[0], c[1], c[2], c[3], c[4], c[5], c[6], c[7])


def project(h: Homography, p: Point) -> Point:
    a, b, c, d, e, f, g, hh = h
    x, y = p
    den = g * x + hh * y + 1.0
    return ((a * x + b * y + c) / den, (d * x + e * y + f) / den)


def rotate(image: Image.Image, boxes: Iterable[LabeledBox], degrees: float) -> Sample:
    """Rotate about the center, growing the canvas so no pixel is lost."""
    if degrees == 0.0:
        return Sample(image=image, boxes=tuple(boxes))
    w, h = image.size
    r = _rotation(degrees)
    cos_t, sin_t = abs(r[0]), abs(r[1])
    new_w = max(1, math.ceil(w * cos_t + h * sin_t - 1e-6))
    new_h = max(1, math.ceil(w * sin_t + h * cos_t - 1e-6))
    m = _compose((1.0, 0.0, new_w / 2.0, 0.0, 1.0, new_h / 2.0), r)
    m = _compose(m, (1.0, 0.0, -w / 2.0, 0.0, 1.0, -h / 2.0))
    out = _warp(image, m, (new_w, new_h))
    mapped = tuple(
        b.mapped(lambda p: _apply(m, p)).clipped(0.0, 0.0, float(new_w), float(new_h))
        for b in boxes
    )
    return Sample(image=out, boxes=mapped)


def letterbox(image: Image.Image, boxes: Iterable[LabeledBox], size: int) -> Sample:
    """Fit the image into a black ``size`` x ``size`` square keeping its aspect ratio."""
    w, h = image.size
    if (w, h) == (size, size):
        return Sample(image=image, boxes=tuple(boxes))
    scale = size / max(w, h)
    nw = min(size, max(1, round(w * scale)))
    nh = min(size, max(1, round(h * scale)))
    ox = (size - nw) // 2
    oy = (size - nh) // 2
    canvas = Image.new("RGB", (size, size), _BLACK)
    canvas.paste(image.resize((nw, nh), Image.Resampling.BILINEAR), (ox, oy))
    sx = nw / w
    sy = nh / h
    return Sample(image=canvas, boxes=tuple(b.scaled(sx, sy).translated(ox, oy) for b in boxes))


def flip_left_right(image: Image.Image, boxes: Iterable[LabeledBox]) -> Sample:
    w = float(image.width)
    flipped = image.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
    return Sample(
        image=flipped,
        boxes=tuple(b.with_rect(w - b.right, b.top, w - b.left, b.bottom) for b in boxes),
    )


def blur(image: Image.Image) -> Image.Image:
    return image.filter(ImageFilter.GaussianBlur(radius=_BLUR_RADIUS))


def perspective_warp(
    image: Image.Image,
    boxes: Iterable[LabeledBox],
    rng: random.Random,
    min_coverage: float,
    amount: float = _PERSPECTIVE_AMOUNT,
) -> Sample:
    """Warp with corners jittered by up to ``amount`` of the image size.

    Each box becomes the bounds of its four warped corners; boxes pushed out of
    view are ignored by coverage and the rest are clipped to the image.
    """
    w, h = image.size
    rect: list[Point] = [(0.0, 0.0), (float(w), 0.0), (0.0, float(h)), (float(w), float(h))]
    quad: list[Point] = [
        (x + rng.uniform(-1.0, 1.0) * amount * w, y + rng.uniform(-1.0, 1.0) * amount * h)
        for x, y in rect
    ]
    # Output corners sample the jittered quad of the input
    out = image.transform(
        (w, h),
        Image.Transform.PERSPECTIVE,
        solve_homography(rect, quad),
        resample=Image.Resampling.BILINEAR,
        fillcolor=_BLACK,
    )
    fwd = solve_homography(quad, rect)
    warped = map_boxes(boxes, lambda p: project(fwd, p))
    kept = ignore_uncovered(warped, w, h, min_coverage)
    return Sample(image=out, boxes=tuple(b.clipped(0.0, 0.0, float(w), float(h)) for b in kept))


def _rgb_lut(tables: Sequence[Sequence[int]]) -> list[int]:
    out: list[int] = []
    for t in tables:
        out.extend(min(255, max(0, int(v))) for v in t)
    return out


def apply_color_offset(image: Image.Image, rng: random.Random) -> Image.Image:
    """Add a global RGB offset drawn along the PCA lighting basis."""
    alphas = [rng.gauss(0.0, _PCA_STD) for _ in range(3)]
    offsets = [
        255.0 * sum(vec[i] * alphas[i] * _PCA_EIGVAL[i] for i in range(3)) for vec in _PCA_EIGVEC
    ]
    tables = [[int(math.floor(v + off + 0.5)) for v in range(256)] for off in offsets]
    return image.point(_rgb_lut(tables))


def disturb_colors(
    image: Image.Image, rng: random.Random, gamma_magnitude: float, color_magnitude: float
) -> Image.Image:
    """Random gamma correction plus per-channel color balance."""
    gamma = max(0.0, 1.0 + gamma_magnitude * (rng.random() - 0.5))
    scales = [1.0 - rng.random() * color_magnitude for _ in range(3)]
    m = 255.0 * max(scales)
    tables = [
        [int(255.0 * math.pow(i * (s / m), gamma) + 0.5) for i in range(256)] for s in scales
    ]
    return image.point(_rgb_lut(tables))


def solarize(image: Image.Image) -> Image.Image:
    """Values above 128 become ``(128 - v) mod 256``, as in 8-bit arithmetic."""
    table = [v if v <= _SOLARIZE_THRESHOLD else (_SOLARIZE_THRESHOLD - v) % 256 for v in range(256)]
    return image.point(table * 3)


def _too_small(box: LabeledBox, min_size: tuple[int, int]) -> bool:
    long_px, short_px = min_size
    return max(box.width, box.height) < long_px or min(box.width, box.height) < short_px


def random_crop(
    image: Image.Image, boxes: Sequence[LabeledBox], policy: AugmentPolicy, rng: random.Random
) -> Sample:
    """Crop around a random object, with rotation, shift and mirror, resized to size."""
    size = int(policy.image_size)
    w, h = image.size
    candidates = [b for b in boxes if not b.ignore and b.area > 0.0]
    if candidates:
        obj = rng.choice(candidates)
        max_long = policy.max_object_size * size
        min_long = min(float(policy.min_object_size[0]), max_long)
        target_long = rng.uniform(min_long, max_long)
        crop_side = max(obj.width, obj.height) * size / target_long
        cx = (obj.left + obj.right) / 2.0 + rng.uniform(-1.0, 1.0) * policy.shift * obj.width
        cy = (obj.top + obj.bottom) / 2.0 + rng.uniform(-1.0, 1.0) * policy.shift * obj.height
    else:
        crop_side = float(max(w, h))
        cx, cy = w / 2.0, h / 2.0
    degrees = rng.uniform(-1.0, 1.0) * policy.angle
    mirror = rng.random() < policy.mirror_prob

    scale = size / crop_side
    m = _compose(_rotation(degrees), (scale, 0.0, -cx * scale, 0.0, scale, -cy * scale))
    m = _compose((1.0, 0.0, size / 2.0, 0.0, 1.0, size / 2.0), m)
    if mirror:
        m = _compose((-1.0, 0.0, float(size), 0.0, 1.0, 0.0), m)
    out = _warp(image, m, (size, size))

    mapped = map_boxes(boxes, lambda p: _apply(m, p))
    mapped = ignore_uncovered(mapped, size, size, policy.min_coverage)
    kept = tuple(
        b.marked_ignored() if _too_small(b, policy.min_object_size) else b for b in mapped
    )
    return Sample(image=out, boxes=kept)


def augment(
    raw_image: Image.Image,
    raw_boxes: Sequence[LabeledBox],
    policy: AugmentPolicy,
    rng: random.Random,
) -> Sample:
    """Run one randomized augmentation pass; deterministic given the rng state."""
    size = int(policy.image_size)
    if rng.random() < policy.crop_prob:
        sample = random_crop(raw_image, raw_boxes, policy, rng)
    else:
        sample = rotate(raw_image, raw_boxes, rng.uniform(-1.0, 1.0) * policy.angle)
        sample = letterbox(sample.image, sample.boxes, size)
        if rng.random() < policy.mirror_prob:
            sample = flip_left_right(sample.image, sample.boxes)
        if rng.random() < policy.blur_prob:
            sample = Sample(image=blur(sample.image), boxes=sample.boxes)
        if rng.random() < policy.perspective_prob:
            sample = perspective_warp(sample.image, sample.boxes, rng, policy.min_coverage)

    image = sample.image
    if rng.random() < policy.color_offset_prob:
        image = apply_color_offset(image, rng)
    else:
        image = disturb_colors(image, rng, policy.gamma, policy.color)

    if rng.random() < policy.solarize_prob:
        image = solarize(image)

    boxes = ignore_uncovered(sample.boxes, image.width, image.height, policy.min_coverage)
    return Sample(image=image, boxes=boxes)


def compose_mosaic(tiles: Sequence[Sample], image_size: int) -> Sample:
    """Place four samples in the quadrants of a black ``image_size`` canvas.

    Boxes are scaled into their quadrant and clipped to it. A box left with
    zero area after clipping is dropped, ignored boxes included.
    """
    if len(tiles) != _MOSAIC_TILES:
        raise ValueError(f"mosaic needs {_MOSAIC_TILES} tiles, got {len(tiles)}")
    s = image_size // 2
    canvas = Image.new("RGB", (image_size, image_size), _BLACK)
    boxes: list[LabeledBox] = []
    for (x, y), tile in zip(((0, 0), (0, s), (s, 0), (s, s)), tiles, strict=True):
        tw = s if x == 0 else image_size - s
        th = s if y == 0 else image_size - s
        tile_w, tile_h = tile.image.size
        canvas.paste(tile.image.resize((tw, th), Image.Resampling.BILINEAR), (x, y))
        sx = tw / tile_w
        sy = th / tile_h
        for b in tile.boxes:
            placed = b.scaled(sx, sy).translated(x, y).clipped(x, y, x + tw, y + th)
            if placed.area > 0.0:
                boxes.append(placed)
    return Sample(image=canvas, boxes=tuple(boxes))


class Augmenter:
    """Callable holding an immutable policy; safe to share across loader threads."""

    def __init__(self, policy: AugmentPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> AugmentPolicy:
        return self._policy

    def __call__(
        self, image: Image.Image, boxes: Sequence[LabeledBox], rng: random.Random
    ) -> Sample:
        return augment(image, boxes, self._policy, rng)

    def mosaic(self, tiles: Sequence[Sample]) -> Sample:
        return compose_mosaic(tiles, int(self._policy.image_size))
