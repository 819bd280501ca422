"""Painted point cloud storage and minibatch sampling."""

from __future__ import annotations

import logging
import math
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import torch

LOG = logging.getLogger("playground.samples")

Point = Tuple[float, float]


class EmptySourceError(RuntimeError):
    """Raised when a minibatch is requested from an empty sample source."""


class SampleSource:
    """Append-only sequence of 2-D points shared by the input side and every ensemble.

    Points are stored as immutable tuples; `clear` is the only way to remove
    them and it notifies every registered listener.
    """

    def __init__(self, points: Optional[Iterable[Sequence[float]]] = None) -> None:
        self._points: List[Point] = []
        self._clear_listeners: List[Callable[[], None]] = []
        if points is not None:
            self.extend(points)

    def __len__(self) -> int:
        return len(self._points)

    def __bool__(self) -> bool:
        return bool(self._points)

    def __getitem__(self, index: int) -> Point:
        return self._points[index]

    def append(self, x: float, y: float) -> None:
        fx, fy = float(x), float(y)
        if not (math.isfinite(fx) and math.isfinite(fy)):
            raise ValueError(f"Sample point must be finite, got ({x}, {y}).")
        self._points.append((fx, fy))

    def extend(self, points: Iterable[Sequence[float]]) -> int:
        count = 0
        for point in points:
            if len(point) != 2:
                raise ValueError(f"Sample point must have two coordinates, got {point!r}.")
            self.append(point[0], point[1])
            count += 1
        return count

    def snapshot(self) -> np.ndarray:
        if not self._points:
            return np.zeros((0, 2), dtype=np.float32)
        return np.asarray(self._points, dtype=np.float32)

    def add_clear_listener(self, listener: Callable[[], None]) -> None:
        self._clear_listeners.append(listener)

    def clear(self) -> None:
        dropped = len(self._points)
        self._points.clear()
        LOG.info("Sample source cleared (%d points dropped).", dropped)
        for listener in list(self._clear_listeners):
            listener()


class MinibatchSampler:
    """Uniform sampling with replacement from a `SampleSource`.

    Early in a session the painted cloud is often smaller than the batch, so
    points are drawn independently rather than by permutation.
    """

    def __init__(
        self,
        source: SampleSource,
        *,
        seed: Optional[int] = None,
        device: Optional[torch.device] = None,
    ) -> None:
        self.source = source
        self.rng = np.random.default_rng(seed)
        self.device = device or torch.device("cpu")

    def sample_indices(self, n: int) -> np.ndarray:
        if n <= 0:
            raise ValueError("Batch size must be positive.")
        size = len(self.source)
        if size == 0:
            raise EmptySourceError("Cannot sample a minibatch from an empty sample source.")
        return self.rng.integers(0, size, size=n)

    def sample(self, n: int) -> torch.Tensor:
        indices = self.sample_indices(n)
        # Index against the tuples present right now; later appends are not visible.
        rows = [self.source[int(i)] for i in indices]
        batch = np.asarray(rows, dtype=np.float32)
        return torch.from_numpy(batch).to(self.device)


def spray(
    cx: float,
    cy: float,
    spread: float,
    count: int,
    rng: Optional[np.random.Generator] = None,
) -> List[Point]:
    """Scatter `count` points around (cx, cy) like a spray-paint brush.

    Offsets follow a polar-method Gaussian with ``std = spread / 3`` whose
    unit-normal components are clipped at three standard deviations.
    """
    rng = rng or np.random.default_rng()
    std = spread / 3.0
    points: List[Point] = []
    while len(points) < count:
        u, v = rng.uniform(-1.0, 1.0, size=2)
        s = u * u + v * v
        if s >= 1.0 or s == 0.0:
            continue
        mul = math.sqrt(-2.0 * math.log(s) / s)
        du = float(np.clip(u * mul, -3.0, 3.0))
        dv = float(np.clip(v * mul, -3.0, 3.0))
        points.append((cx + std * du, cy + std * dv))
    return points


def normalize_canvas_point(px: float, py: float, width: int, height: int) -> Point:
    """Map canvas pixel coordinates (origin top-left) into [-1, 1]² with y up."""
    if width <= 0 or height <= 0:
        raise ValueError("Canvas dimensions must be positive.")
    return 2.0 * px / width - 1.0, 1.0 - 2.0 * py / height
