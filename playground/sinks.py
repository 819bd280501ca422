"""
Concrete plot sinks: an in-memory recorder and a PNG/GIF frame dumper.
"""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple

import imageio.v3 as imageio
import numpy as np
from PIL import Image, ImageDraw

from .bridge import DecisionSurface

LOG = logging.getLogger("playground.sinks")

LOSS_HISTORY_SIZE = 150

# RGB per generator class id.
PALETTE = (
    (230, 85, 13),
    (49, 130, 189),
    (49, 163, 84),
    (117, 107, 177),
    (214, 39, 40),
    (140, 86, 75),
)
REAL_COLOR = (20, 20, 20)


class LossHistory:
    """Bounded per-name loss series plus the latest scatter and surfaces."""

    def __init__(self, max_size: int = LOSS_HISTORY_SIZE) -> None:
        self.max_size = max_size
        self.series: Dict[str, Deque[Tuple[int, float]]] = {}
        self.surfaces: Dict[str, DecisionSurface] = {}
        self.gradients: Dict[str, np.ndarray] = {}
        self.scatter: Optional[Tuple[np.ndarray, np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]] = None
        self.clears = 0

    def push_loss_sample(self, name: str, iteration: int, value: float) -> None:
        series = self.series.setdefault(name, deque(maxlen=self.max_size))
        series.append((int(iteration), float(value)))

    def clear_losses(self) -> None:
        self.series.clear()
        self.clears += 1

    def update_scatter(self, real, fake, fake_classes=None, real_classes=None) -> None:
        self.scatter = (real, fake, fake_classes, real_classes)

    def update_decision_surface(self, surface: DecisionSurface) -> None:
        self.surfaces[surface.name] = surface

    def update_gradient_field(self, name: str, vectors: np.ndarray) -> None:
        self.gradients[name] = vectors

    def latest(self, name: str) -> Optional[float]:
        series = self.series.get(name)
        if not series:
            return None
        return series[-1][1]

    def to_dict(self) -> Dict[str, List[List[float]]]:
        return {name: [[i, v] for i, v in series] for name, series in self.series.items()}


@dataclass
class FrameBundle:
    frames: List[Path]
    animated: Optional[Path]
    losses: Optional[Path]


def _ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _heatmap(values: np.ndarray) -> np.ndarray:
    """Map a (H, W) array in [0, 1] to RGB; 0 is blue, 1 is red."""
    v = np.clip(values, 0.0, 1.0)[::-1]  # row 0 is y=-1, images start at the top
    rgb = np.stack([v, 0.25 * np.ones_like(v), 1.0 - v], axis=-1)
    return (rgb * 255.0 + 0.5).astype(np.uint8)


def _to_pixel(points: np.ndarray, size: int) -> np.ndarray:
    px = (points[:, 0] + 1.0) * 0.5 * (size - 1)
    py = (1.0 - points[:, 1]) * 0.5 * (size - 1)
    return np.stack([px, py], axis=1)


class FrameDumpSink(LossHistory):
    """Renders decision surfaces with the latest scatter overlaid.

    One PNG is written per surface update under ``output_dir/frames``.
    ``close`` assembles the frames of the first surface into a GIF and dumps
    the loss history as JSON.
    """

    def __init__(
        self,
        output_dir: Path,
        *,
        resolution: int = 256,
        gif_duration: float = 0.08,
        max_gif_frames: int = 200,
    ) -> None:
        super().__init__()
        self.output_dir = Path(output_dir)
        self.frame_dir = self.output_dir / "frames"
        self.resolution = resolution
        self.gif_duration = gif_duration
        self.max_gif_frames = max_gif_frames
        self.frames_written: List[Path] = []
        self._gif_name: Optional[str] = None
        self._gif_frames: List[np.ndarray] = []
        _ensure_dir(self.frame_dir)

    def render(self, surface: DecisionSurface) -> np.ndarray:
        image = Image.fromarray(_heatmap(surface.values[0])).resize(
            (self.resolution, self.resolution), Image.Resampling.NEAREST
        )
        if self.scatter is not None:
            draw = ImageDraw.Draw(image)
            real, fake, fake_classes, _ = self.scatter
            for x, y in _to_pixel(real, self.resolution):
                draw.ellipse((x - 2, y - 2, x + 2, y + 2), fill=REAL_COLOR)
            classes = fake_classes if fake_classes is not None else np.zeros(len(fake), dtype=np.int64)
            for (x, y), cls in zip(_to_pixel(fake, self.resolution), classes):
                color = PALETTE[int(cls) % len(PALETTE)]
                draw.rectangle((x - 2, y - 2, x + 2, y + 2), outline=color)
        return np.asarray(image)

    def update_decision_surface(self, surface: DecisionSurface) -> None:
        super().update_decision_surface(surface)
        frame = self.render(surface)
        path = self.frame_dir / f"{surface.name}_{surface.iteration:06d}.png"
        imageio.imwrite(path, frame)
        self.frames_written.append(path)
        if self._gif_name is None:
            self._gif_name = surface.name
        if surface.name == self._gif_name and len(self._gif_frames) < self.max_gif_frames:
            self._gif_frames.append(frame)

    def close(self) -> FrameBundle:
        animated = None
        if self._gif_frames:
            animated = self.output_dir / f"{self._gif_name}.gif"
            imageio.imwrite(animated, np.stack(self._gif_frames, axis=0), loop=0, duration=self.gif_duration)
        losses = self.output_dir / "losses.json"
        losses.write_text(json.dumps(self.to_dict(), indent=2, sort_keys=True))
        LOG.info(
            "Frame dump closed: %d frame(s), gif=%s, losses=%s",
            len(self.frames_written),
            animated,
            losses,
        )
        return FrameBundle(frames=list(self.frames_written), animated=animated, losses=losses)
