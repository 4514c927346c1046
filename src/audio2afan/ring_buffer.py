"""
Growable audio accumulator used to cut fixed-size inference windows
out of an arbitrary stream of sample pushes.
"""

import numpy as np

from .errors import RangeError
from .utils import RING_CAPACITY


class AudioRingBuffer:
    """
    Linear float32 sample buffer with amortized growth.

    Samples are appended at the logical end and consumed from the front.
    Consuming shifts the remaining samples down to index 0, so the backing
    array stays bounded by the largest backlog seen rather than by the
    total history.
    """

    def __init__(self, min_capacity: int = RING_CAPACITY):
        if min_capacity <= 0:
            raise ValueError(f"min_capacity must be positive, got {min_capacity}")
        self._min_capacity = min_capacity
        self._buffer = np.zeros(min_capacity, dtype=np.float32)
        self._length = 0

    def __len__(self) -> int:
        return self._length

    @property
    def capacity(self) -> int:
        return self._buffer.shape[0]

    def has_window(self, length: int) -> bool:
        return self._length >= length

    def append(self, samples) -> None:
        """Append samples, growing the backing array if required."""
        samples = np.asarray(samples, dtype=np.float32).ravel()
        count = samples.shape[0]
        if count == 0:
            return

        needed = self._length + count
        if needed > self.capacity:
            grown = np.zeros(max(needed * 2, self._min_capacity), dtype=np.float32)
            grown[: self._length] = self._buffer[: self._length]
            self._buffer = grown

        self._buffer[self._length : needed] = samples
        self._length = needed

    def consume(self, count: int) -> None:
        """
        Drop the first `count` samples.

        Raises:
            RangeError: count is negative or exceeds the buffered length
        """
        if count < 0 or count > self._length:
            raise RangeError(f"Cannot consume {count} samples, only {self._length} buffered")
        remaining = self._length - count
        # numpy handles the overlapping copy like memmove
        self._buffer[:remaining] = self._buffer[count : self._length]
        self._length = remaining

    def peek_window(self, length: int) -> np.ndarray:
        """
        Return a read-only view of the first `length` samples.

        The view aliases the backing array and is invalidated by the next
        append or consume; copy it if it must outlive either.

        Raises:
            RangeError: fewer than `length` samples are buffered
        """
        if length < 0 or length > self._length:
            raise RangeError(f"Window of {length} samples requested, only {self._length} buffered")
        view = self._buffer[:length]
        view.flags.writeable = False
        return view

    def clear(self) -> None:
        """Forget buffered samples; capacity is kept."""
        self._length = 0
