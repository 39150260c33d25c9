from __future__ import annotations

import threading
from collections import deque
from typing import Final, Generic, TypeVar

T = TypeVar("T")


class SampleQueue(Generic[T]):
    """Bounded FIFO channel with an explicit disable for shutdown.

    ``enqueue`` blocks while full and ``dequeue`` blocks while empty. After
    ``disable()`` every blocked or future ``enqueue`` returns False at once,
    and ``dequeue`` keeps draining buffered items before returning None.
    """

    def __init__(self, capacity: int) -> None:
        if int(capacity) <= 0:
            raise ValueError("capacity must be > 0")
        self._capacity = int(capacity)
        self._items: deque[T] = deque()
        self._cond = threading.Condition()
        self._enabled = True

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def enabled(self) -> bool:
        with self._cond:
            return self._enabled

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def enqueue(self, item: T) -> bool:
        with self._cond:
            while self._enabled and len(self._items) >= self._capacity:
                self._cond.wait()
            if not self._enabled:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def dequeue(self) -> T | None:
        with self._cond:
            while self._enabled and not self._items:
                self._cond.wait()
            if not self._items:
                return None
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def disable(self) -> None:
        with self._cond:
            self._enabled = False
            self._cond.notify_all()


def capacity_for_train_queue(batch_size: int) -> int:
    return 100 * int(batch_size)


def capacity_for_test_queue(batch_size: int, num_devices: int) -> int:
    return max(1, 10 * int(batch_size) // max(1, int(num_devices)))


EVALUATION_QUEUE_CAPACITY: Final[int] = 1000
