from __future__ import annotations

import importlib
import random
from dataclasses import replace

import pytest
from PIL import Image

aug_mod = importlib.import_module("detection_trainer.training.augment")
from detection_trainer.training.augment import (
    Augmenter,
    augment,
    compose_mosaic,
    flip_left_right,
    letterbox,
    perspective_warp,
    rotate,
    solarize,
)
from detection_trainer.training.boxes import LabeledBox, Sample
from detection_trainer.training.train_config import AugmentPolicy


def _box(left: float, top: float, right: float, bottom: float, label: str = "car") -> LabeledBox:
    return LabeledBox(left=left, top=top, right=right, bottom=bottom, label=label)


def _inside(b: LabeledBox, w: float, h: float) -> bool:
    eps = 1e-6
    return (
        -eps <= b.left <= b.right <= w + eps
        and -eps <= b.top <= b.bottom <= h + eps
    )


def _gradient(w: int, h: int) -> Image.Image:
    img = Image.new("RGB", (w, h))
    img.putdata([((x * 7) % 256, (y * 5) % 256, (x + y) % 256) for y in range(h) for x in range(w)])
    return img


def test_letterbox_keeps_boxes_inside_square() -> None:
    img = Image.new("RGB", (200, 100), (10, 20, 30))
    out = letterbox(img, [_box(0, 0, 200, 100), _box(50, 25, 150, 75)], 64)
    assert out.image.size == (64, 64)
    assert all(_inside(b, 64, 64) for b in out.boxes)
    # Full-width box spans the full canvas width, centered vertically
    full = out.boxes[0]
    assert full.left == pytest.approx(0.0) and full.right == pytest.approx(64.0)
    assert full.top == pytest.approx(16.0) and full.bottom == pytest.approx(48.0)


def test_letterbox_is_identity_on_target_size() -> None:
    img = Image.new("RGB", (32, 32))
    boxes = (_box(1, 2, 3, 4),)
    out = letterbox(img, boxes, 32)
    assert out.image is img and out.boxes == boxes


def test_flip_mirrors_coordinates() -> None:
    img = Image.new("RGB", (100, 50))
    out = flip_left_right(img, [_box(10, 5, 30, 20)])
    b = out.boxes[0]
    assert (b.left, b.right, b.top, b.bottom) == (70, 90, 5, 20)


@pytest.mark.parametrize("degrees", [-30.0, -5.0, 7.5, 45.0, 90.0])
def test_rotate_keeps_boxes_within_grown_canvas(degrees: float) -> None:
    img = Image.new("RGB", (120, 80))
    boxes = [_box(0, 0, 120, 80), _box(100, 60, 120, 80), _box(10, 10, 20, 20)]
    out = rotate(img, boxes, degrees)
    w, h = out.image.size
    assert w >= 80 and h >= 80
    assert all(_inside(b, w, h) for b in out.boxes)


def test_perspective_boxes_stay_in_bounds() -> None:
    rng = random.Random(3)
    img = Image.new("RGB", (64, 64))
    boxes = [_box(0, 0, 64, 64), _box(0, 0, 8, 8), _box(56, 56, 64, 64), _box(20, 20, 40, 40)]
    for _ in range(25):
        out = perspective_warp(img, boxes, rng, min_coverage=0.75)
        assert out.image.size == (64, 64)
        assert len(out.boxes) == len(boxes)
        assert all(_inside(b, 64, 64) for b in out.boxes)


def test_single_image_pipeline_keeps_inside_boxes_in_bounds() -> None:
    policy = AugmentPolicy(
        image_size=48,
        crop_prob=0.0,
        mosaic_prob=0.0,
        mirror_prob=0.5,
        blur_prob=0.5,
        perspective_prob=0.8,
        angle=20.0,
    )
    rng = random.Random(11)
    img = Image.new("RGB", (90, 60))
    boxes = [_box(0, 0, 90, 60), _box(5, 5, 25, 25), _box(70, 40, 90, 60)]
    for _ in range(30):
        out = augment(img, boxes, policy, rng)
        assert out.image.size == (48, 48)
        assert all(_inside(b, 48, 48) for b in out.boxes)


def test_exactly_one_color_operation_fires(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def _offset(image: Image.Image, rng: random.Random) -> Image.Image:
        calls.append("offset")
        return image

    def _disturb(image: Image.Image, rng: random.Random, g: float, c: float) -> Image.Image:
        calls.append("disturb")
        return image

    monkeypatch.setattr(aug_mod, "apply_color_offset", _offset)
    monkeypatch.setattr(aug_mod, "disturb_colors", _disturb)
    policy = AugmentPolicy(image_size=32, color_offset_prob=0.5)
    rng = random.Random(0)
    img = Image.new("RGB", (40, 30))
    for n in range(1, 41):
        aug_mod.augment(img, [_box(2, 2, 20, 20)], policy, rng)
        assert len(calls) == n
    assert set(calls) == {"offset", "disturb"}


def test_identity_policy_returns_image_unchanged() -> None:
    img = _gradient(32, 32)
    boxes = (_box(2, 3, 20, 30), _box(0, 0, 32, 32, label="bus"))
    out = augment(img, boxes, AugmentPolicy.identity(32), random.Random(5))
    assert out.image.size == (32, 32)
    assert list(out.image.getdata()) == list(img.getdata())
    assert out.boxes == boxes


def test_coverage_filter_marks_but_keeps_boxes() -> None:
    img = Image.new("RGB", (32, 32))
    # Half of this box hangs outside the image
    boxes = (_box(16, 0, 48, 16), _box(4, 4, 12, 12))
    policy = replace(AugmentPolicy.identity(32), min_coverage=0.75)
    out = augment(img, boxes, policy, random.Random(1))
    assert len(out.boxes) == 2
    assert out.boxes[0].ignore is True
    assert out.boxes[1].ignore is False


def test_solarize_wraps_like_8bit_arithmetic() -> None:
    img = Image.new("RGB", (3, 1))
    img.putdata([(0, 128, 129), (200, 255, 64), (130, 1, 250)])
    out = list(solarize(img).getdata())
    assert out[0] == (0, 128, 255)
    assert out[1] == (184, 129, 64)
    assert out[2] == (254, 1, 134)


def test_random_crop_path_produces_target_size() -> None:
    policy = AugmentPolicy(image_size=40, crop_prob=1.0, min_object_size=(8, 4))
    rng = random.Random(2)
    img = Image.new("RGB", (120, 90))
    boxes = [_box(30, 30, 70, 60), _box(100, 5, 118, 20, label="bus")]
    for _ in range(10):
        out = augment(img, boxes, policy, rng)
        assert out.image.size == (40, 40)
        assert len(out.boxes) == 2


def test_mosaic_size_and_bounds_regardless_of_tile_sizes() -> None:
    tiles = [
        Sample(Image.new("RGB", (64, 64)), (_box(0, 0, 64, 64),)),
        Sample(Image.new("RGB", (100, 30)), (_box(90, 20, 100, 30),)),
        Sample(Image.new("RGB", (17, 50)), (_box(-5, -5, 10, 10),)),
        Sample(Image.new("RGB", (33, 33)), ()),
    ]
    for size in (64, 65, 100):
        out = compose_mosaic(tiles, size)
        assert out.image.size == (size, size)
        assert len(out.boxes) == 3
        assert all(_inside(b, size, size) for b in out.boxes)


def test_mosaic_places_tiles_in_quadrants() -> None:
    tiles = [Sample(Image.new("RGB", (10, 10)), (_box(0, 0, 10, 10),)) for _ in range(4)]
    out = compose_mosaic(tiles, 20)
    origins = sorted((b.left, b.top) for b in out.boxes)
    assert origins == [(0, 0), (0, 10), (10, 0), (10, 10)]


def test_mosaic_requires_four_tiles() -> None:
    with pytest.raises(ValueError):
        compose_mosaic([Sample(Image.new("RGB", (4, 4)), ())], 8)


def test_augmenter_is_deterministic_for_a_seed() -> None:
    aug = Augmenter(AugmentPolicy(image_size=32))
    img = _gradient(50, 40)
    boxes = [_box(5, 5, 30, 30)]
    a = aug(img, boxes, random.Random(9))
    b = aug(img, boxes, random.Random(9))
    assert a.boxes == b.boxes
    assert list(a.image.getdata()) == list(b.image.getdata())


def test_mosaic_keeps_ignored_boxes_on_tile_and_drops_off_tile_ones() -> None:
    on_tile = _box(4, 4, 20, 20).marked_ignored()
    off_tile = _box(50, 50, 60, 60).marked_ignored()
    blank = Sample(Image.new("RGB", (40, 40)), ())
    first = Sample(Image.new("RGB", (40, 40)), (on_tile, off_tile))
    out = compose_mosaic([first, blank, blank, blank], 40)
    assert len(out.boxes) == 1
    kept = out.boxes[0]
    assert kept.ignore is True
    assert (kept.left, kept.top, kept.right, kept.bottom) == pytest.approx((2, 2, 10, 10))
