from __future__ import annotations

from .augment import Augmenter, augment, compose_mosaic
from .batches import MiniBatch, assemble_batch, iter_batches
from .boxes import LabeledBox, Sample
from .evaluation import EvaluationController, EvaluationOutcome
from .loaders import LoaderPool, SequentialSampleSource, TestSampleSource, TrainSampleSource
from .loop import StepOutcome, TrainingLoop, TrainResult, train_with_config
from .model import Detection, DetectorTrainer, InferenceModel, TorchDetectorTrainer
from .sample_queue import SampleQueue
from .schedule import LearningRateScheduler, ScheduleConfig, SchedulePhase, ScheduleState
from .state import BestMetrics
from .train_config import AugmentPolicy, TrainConfig

__all__ = [
    "AugmentPolicy",
    "Augmenter",
    "BestMetrics",
    "Detection",
    "DetectorTrainer",
    "EvaluationController",
    "EvaluationOutcome",
    "InferenceModel",
    "LabeledBox",
    "LearningRateScheduler",
    "LoaderPool",
    "MiniBatch",
    "Sample",
    "SampleQueue",
    "ScheduleConfig",
    "SchedulePhase",
    "ScheduleState",
    "SequentialSampleSource",
    "StepOutcome",
    "TestSampleSource",
    "TorchDetectorTrainer",
    "TrainConfig",
    "TrainResult",
    "TrainSampleSource",
    "TrainingLoop",
    "assemble_batch",
    "augment",
    "compose_mosaic",
    "iter_batches",
    "train_with_config",
]
