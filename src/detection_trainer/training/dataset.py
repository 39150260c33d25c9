from __future__ import annotations

import xml.etree.ElementTree as ET
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from PIL import Image

from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.logging import get_logger

from .boxes import LabeledBox

_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    EOFError,
    SyntaxError,
    Image.DecompressionBombError,
)


@dataclass(frozen=True)
class ImageRecord:
    path: Path
    boxes: tuple[LabeledBox, ...]


@dataclass(frozen=True)
class DatasetIndex:
    """Immutable list of annotated images, shared read-only by all loaders."""

    source: Path
    records: tuple[ImageRecord, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, idx: int) -> ImageRecord:
        return self.records[idx]


@dataclass(frozen=True)
class LoadResult:
    image: Image.Image | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.image is not None


def load_image(path: Path) -> LoadResult:
    """Decode ``path`` as RGB; failures come back as a result, never raised."""
    try:
        with Image.open(path) as img:
            img.load()
            rgb = img.convert("RGB")
    except _LOAD_ERRORS as exc:
        return LoadResult(image=None, error=f"{type(exc).__name__}: {exc}")
    return LoadResult(image=rgb)


def _attr_float(elem: ET.Element, name: str, default: float = 0.0) -> float:
    raw = elem.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise AppError(
            ErrorCode.dataset_invalid, f"box attribute {name}={raw!r} is not a number"
        ) from exc


def _parse_box(elem: ET.Element) -> LabeledBox:
    left = _attr_float(elem, "left")
    top = _attr_float(elem, "top")
    width = _attr_float(elem, "width")
    height = _attr_float(elem, "height")
    label_el = elem.find("label")
    label = (label_el.text or "").strip() if label_el is not None else ""
    ignore = (elem.get("ignore") or "0").strip() in {"1", "true"}
    return LabeledBox(
        left=left,
        top=top,
        right=left + width,
        bottom=top + height,
        label=label,
        ignore=ignore,
    )


def load_imglab_dataset(xml_path: Path) -> DatasetIndex:
    """Load an imglab ``<dataset>`` XML file; image paths resolve against its folder."""
    try:
        tree = ET.parse(xml_path)
    except (OSError, ET.ParseError) as exc:
        get_logger().error("dataset_load_failed path=%s error=%s", xml_path, exc)
        raise AppError(ErrorCode.dataset_invalid, f"cannot read dataset {xml_path}") from exc
    root = tree.getroot()
    images_el = root.find("images")
    if root.tag != "dataset" or images_el is None:
        raise AppError(ErrorCode.dataset_invalid, f"{xml_path} is not an imglab dataset")
    base = xml_path.parent
    records: list[ImageRecord] = []
    for image_el in images_el.findall("image"):
        file_name = image_el.get("file")
        if not file_name:
            raise AppError(ErrorCode.dataset_invalid, "image entry without file attribute")
        boxes = tuple(_parse_box(b) for b in image_el.findall("box"))
        records.append(ImageRecord(path=base / file_name, boxes=boxes))
    return DatasetIndex(source=xml_path, records=tuple(records))


def label_counts(index: DatasetIndex) -> dict[str, int]:
    counts: Counter[str] = Counter()
    for rec in index.records:
        for box in rec.boxes:
            counts[box.label] += 1
    return dict(sorted(counts.items()))


def log_dataset_summary(kind: str, index: DatasetIndex) -> None:
    log = get_logger()
    counts = label_counts(index)
    total = sum(counts.values())
    log.info(f"dataset_loaded kind={kind} images={len(index)} labels={len(counts)}")
    for label, n in counts.items():
        pct = (100.0 * n / total) if total > 0 else 0.0
        log.info(f"dataset_label kind={kind} label={label} count={n} pct={pct:.2f}")
