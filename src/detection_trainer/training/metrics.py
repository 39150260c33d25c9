from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Final

import torch
from torchvision.ops import box_iou

from detection_trainer.logging import get_logger

from .batches import MiniBatch
from .boxes import LabeledBox
from .model import Detection, InferenceModel

IOU_THRESHOLD: Final[float] = 0.5


@dataclass(frozen=True)
class DetectionMetrics:
    map: float
    macro_precision: float
    macro_recall: float
    macro_f1: float
    micro_precision: float
    micro_recall: float
    micro_f1: float
    weighted_precision: float
    weighted_recall: float
    weighted_f1: float
    images: int = 0

    def summary(self) -> str:
        return (
            f"map={self.map:.4f} "
            f"macro_p={self.macro_precision:.4f} macro_r={self.macro_recall:.4f} "
            f"macro_f1={self.macro_f1:.4f} "
            f"micro_p={self.micro_precision:.4f} micro_r={self.micro_recall:.4f} "
            f"micro_f1={self.micro_f1:.4f} "
            f"weighted_p={self.weighted_precision:.4f} weighted_r={self.weighted_recall:.4f} "
            f"weighted_f1={self.weighted_f1:.4f}"
        )


@dataclass
class _ClassStats:
    positives: int = 0
    scored: list[tuple[float, bool]] = field(default_factory=list)

    @property
    def tp(self) -> int:
        return sum(1 for _, hit in self.scored if hit)

    @property
    def fp(self) -> int:
        return sum(1 for _, hit in self.scored if not hit)


def _rects(items: Sequence[LabeledBox] | Sequence[Detection]) -> torch.Tensor:
    return torch.tensor(
        [[b.left, b.top, b.right, b.bottom] for b in items], dtype=torch.float32
    ).reshape(-1, 4)


def _match_image(
    detections: Sequence[Detection], truth: Sequence[LabeledBox], stats: dict[str, _ClassStats]
) -> None:
    """Greedy highest-confidence-first matching at IoU 0.5, one label at a time."""
    labels = {d.label for d in detections} | {b.label for b in truth}
    for label in labels:
        st = stats.setdefault(label, _ClassStats())
        positives = [b for b in truth if b.label == label and not b.ignore]
        ignored = [b for b in truth if b.label == label and b.ignore]
        dets = sorted(
            (d for d in detections if d.label == label), key=lambda d: d.confidence, reverse=True
        )
        st.positives += len(positives)
        if not dets:
            continue
        det_t = _rects(dets)
        pos_iou = box_iou(det_t, _rects(positives)) if positives else None
        ign_iou = box_iou(det_t, _rects(ignored)) if ignored else None
        matched: set[int] = set()
        for i, det in enumerate(dets):
            best_j = -1
            best_iou = IOU_THRESHOLD
            if pos_iou is not None:
                for j in range(len(positives)):
                    iou = float(pos_iou[i, j])
                    if j not in matched and iou >= best_iou:
                        best_j, best_iou = j, iou
            if best_j >= 0:
                matched.add(best_j)
                st.scored.append((det.confidence, True))
            elif ign_iou is not None and float(ign_iou[i].max()) >= IOU_THRESHOLD:
                # Hits on ignored truth are neither rewarded nor penalised
                continue
            else:
                st.scored.append((det.confidence, False))


def average_precision(scored: Sequence[tuple[float, bool]], positives: int) -> float:
    """All-point interpolated AP of a ranked detection list."""
    if positives <= 0:
        return 0.0
    ranked = sorted(scored, key=lambda s: s[0], reverse=True)
    recalls = [0.0]
    precisions = [0.0]
    tp = 0
    for n, (_, hit) in enumerate(ranked, start=1):
        tp += int(hit)
        recalls.append(tp / positives)
        precisions.append(tp / n)
    recalls.append(1.0)
    precisions.append(0.0)
    for i in range(len(precisions) - 2, -1, -1):
        precisions[i] = max(precisions[i], precisions[i + 1])
    return sum(
        (recalls[i + 1] - recalls[i]) * precisions[i + 1] for i in range(len(recalls) - 1)
    )


def _ratio(num: float, den: float) -> float:
    return num / den if den > 0 else 0.0


def _f1(p: float, r: float) -> float:
    return _ratio(2.0 * p * r, p + r)


def _summarize(stats: dict[str, _ClassStats], images: int) -> DetectionMetrics:
    scored_classes = [st for st in stats.values() if st.positives > 0]
    total_pos = sum(st.positives for st in scored_classes)
    aps: list[float] = []
    ps: list[float] = []
    rs: list[float] = []
    fs: list[float] = []
    wp = wr = wf = 0.0
    for st in scored_classes:
        p = _ratio(st.tp, st.tp + st.fp)
        r = _ratio(st.tp, st.positives)
        f = _f1(p, r)
        aps.append(average_precision(st.scored, st.positives))
        ps.append(p)
        rs.append(r)
        fs.append(f)
        w = st.positives / total_pos
        wp += w * p
        wr += w * r
        wf += w * f
    n = len(scored_classes)
    tp = sum(st.tp for st in stats.values())
    fp = sum(st.fp for st in stats.values())
    micro_p = _ratio(tp, tp + fp)
    micro_r = _ratio(tp, total_pos)
    return DetectionMetrics(
        map=_ratio(sum(aps), n),
        macro_precision=_ratio(sum(ps), n),
        macro_recall=_ratio(sum(rs), n),
        macro_f1=_ratio(sum(fs), n),
        micro_precision=micro_p,
        micro_recall=micro_r,
        micro_f1=_f1(micro_p, micro_r),
        weighted_precision=wp,
        weighted_recall=wr,
        weighted_f1=wf,
        images=images,
    )


def compute_metrics(
    model: InferenceModel, batches: Iterable[MiniBatch], confidence_threshold: float
) -> DetectionMetrics:
    """Run ``model`` over every batch and score its detections against the truth."""
    stats: dict[str, _ClassStats] = {}
    images = 0
    for batch in batches:
        found = model.detect(batch.images, confidence_threshold)
        if len(found) != len(batch):
            raise ValueError("detect returned a different number of results than images")
        for dets, truth in zip(found, batch.boxes, strict=True):
            _match_image(dets, truth, stats)
        images += len(batch)
    metrics = _summarize(stats, images)
    get_logger().debug(f"metrics_computed images={images} classes={len(stats)}")
    return metrics


__all__ = [
    "IOU_THRESHOLD",
    "DetectionMetrics",
    "average_precision",
    "compute_metrics",
]
