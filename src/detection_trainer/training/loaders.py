from __future__ import annotations

import contextvars
import random
import threading
from collections.abc import Callable
from typing import Final

from PIL import Image

from detection_trainer.errors import AppError, ErrorCode
from detection_trainer.logging import get_logger

from .augment import Augmenter, letterbox
from .boxes import Sample, blank_sample
from .dataset import DatasetIndex, ImageRecord, load_image
from .sample_queue import SampleQueue

# A producer returns None once its source is exhausted
Producer = Callable[[random.Random], Sample | None]

_MOSAIC_TILES: Final[int] = 4
TEST_LOADER_WORKERS: Final[int] = 2


def _load(record: ImageRecord) -> Image.Image | None:
    res = load_image(record.path)
    if res.image is None:
        get_logger().error("image_load_failed path=%s error=%s", record.path, res.error)
    return res.image


class TrainSampleSource:
    """Random record -> load -> augment, or a four-tile mosaic of such samples."""

    def __init__(self, index: DatasetIndex, augmenter: Augmenter) -> None:
        if len(index) == 0:
            raise AppError(ErrorCode.dataset_invalid, f"{index.source} has no images")
        self._index = index
        self._augmenter = augmenter

    def _single(self, rng: random.Random) -> Sample:
        size = int(self._augmenter.policy.image_size)
        record = self._index[rng.randrange(len(self._index))]
        image = _load(record)
        if image is None:
            return blank_sample(size)
        return self._augmenter(image, record.boxes, rng)

    def __call__(self, rng: random.Random) -> Sample:
        if rng.random() < self._augmenter.policy.mosaic_prob:
            tiles = [self._single(rng) for _ in range(_MOSAIC_TILES)]
            return self._augmenter.mosaic(tiles)
        return self._single(rng)


class TestSampleSource:
    """Random record letterboxed without augmentation, for periodic test steps."""

    __test__ = False

    def __init__(self, index: DatasetIndex, image_size: int) -> None:
        if len(index) == 0:
            raise AppError(ErrorCode.dataset_invalid, f"{index.source} has no images")
        self._index = index
        self._size = int(image_size)

    def __call__(self, rng: random.Random) -> Sample:
        record = self._index[rng.randrange(len(self._index))]
        image = _load(record)
        if image is None:
            return blank_sample(self._size)
        return letterbox(image, record.boxes, self._size)


class SequentialSampleSource:
    """Hands out every record exactly once across all workers, in index order."""

    def __init__(self, index: DatasetIndex, image_size: int) -> None:
        self._index = index
        self._size = int(image_size)
        self._lock = threading.Lock()
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._index)

    def __call__(self, rng: random.Random) -> Sample | None:
        with self._lock:
            if self._cursor >= len(self._index):
                return None
            record = self._index[self._cursor]
            self._cursor += 1
        image = _load(record)
        if image is None:
            return blank_sample(self._size)
        return letterbox(image, record.boxes, self._size)


class LoaderPool:
    """Worker threads that produce samples into one queue until it is disabled."""

    def __init__(
        self,
        name: str,
        queue: SampleQueue[Sample],
        produce: Producer,
        num_workers: int,
        seed: int,
    ) -> None:
        if int(num_workers) <= 0:
            raise AppError(ErrorCode.invalid_config, f"{name} loader needs at least one worker")
        self._name = name
        self._queue = queue
        self._produce = produce
        self._num_workers = int(num_workers)
        self._seed = int(seed)
        self._threads: list[threading.Thread] = []
        self._failure: BaseException | None = None
        self._failure_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def num_workers(self) -> int:
        return self._num_workers

    @property
    def alive(self) -> int:
        return sum(1 for t in self._threads if t.is_alive())

    def start(self) -> None:
        if self._threads:
            raise RuntimeError(f"{self._name} loader pool already started")
        for i in range(self._num_workers):
            # Loader threads log with the caller's run id
            ctx = contextvars.copy_context()
            t = threading.Thread(
                target=ctx.run,
                args=(self._run, i),
                name=f"{self._name}-loader-{i}",
                daemon=True,
            )
            try:
                t.start()
            except RuntimeError as exc:
                get_logger().error("loader_thread_start_failed pool=%s error=%s", self._name, exc)
                self.stop()
                msg = f"cannot start {self._name} loader"
                raise AppError(ErrorCode.loader_failed, msg) from exc
            self._threads.append(t)
        get_logger().info(f"loader_pool_started pool={self._name} workers={self._num_workers}")

    def _run(self, worker: int) -> None:
        rng = random.Random(self._seed + worker + 1)
        queue = self._queue
        try:
            while queue.enabled:
                sample = self._produce(rng)
                if sample is None or not queue.enqueue(sample):
                    break
        except Exception as exc:
            get_logger().exception("loader_worker_failed pool=%s worker=%d", self._name, worker)
            with self._failure_lock:
                if self._failure is None:
                    self._failure = exc
            # Consumers stop waiting and surface the failure
            queue.disable()

    def raise_if_failed(self) -> None:
        with self._failure_lock:
            failure = self._failure
        if failure is not None:
            raise AppError(ErrorCode.loader_failed, f"{self._name} loader failed") from failure

    def join(self) -> None:
        for t in self._threads:
            t.join()

    def stop(self) -> None:
        self._queue.disable()
        self.join()
        get_logger().info(f"loader_pool_stopped pool={self._name}")
