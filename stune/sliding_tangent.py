"""Circular buffer that tracks a moving average and a sliding tangent line."""

from __future__ import annotations


class SlidingTangent:
    """Fixed-size ring of readings with a running sum.

    The newest reading sits at the current position and the oldest one just
    after it, so the difference between the two gives the slope of a tangent
    line that slides along the signal.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError(f"buffer size must be at least 1, got {size}")
        self._size = int(size)
        self._readings: list[float] = []
        self._index = 0
        self._sum = 0.0
        self.reset(0.0)

    def reset(self, reading: float) -> None:
        """Fill the whole buffer with one reading."""
        self._index = 0
        self._sum = reading * self._size
        self._readings = [reading] * self._size

    def average(self, reading: float) -> float:
        """Store a reading over the oldest one and return the moving average."""
        self._index = (self._index + 1) % self._size
        self._sum += reading - self._readings[self._index]
        self._readings[self._index] = reading
        return self._sum / self._size

    def start_value(self) -> float:
        """Return the oldest reading held, where the tangent line begins."""
        return self._readings[(self._index + 1) % self._size]

    def slope(self, reading: float) -> float:
        """Return the rise from the oldest stored reading to ``reading``."""
        return reading - self.start_value()

    def __len__(self) -> int:
        return self._size