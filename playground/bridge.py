"""Pushes training state to plotting sinks without letting them stall training."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import numpy as np
import torch

from .engine import StepRecord
from .variants import GANVariant, SurfaceProbe

LOG = logging.getLogger("playground.bridge")


@dataclass(slots=True)
class DecisionSurface:
    """Sub-model outputs sampled on a square grid over [-1, 1]².

    ``values`` has shape ``(channels, grid_size, grid_size)`` with row index
    following y and column index following x.
    """

    name: str
    iteration: int
    values: np.ndarray
    extent: tuple = (-1.0, 1.0, -1.0, 1.0)

    @property
    def grid_size(self) -> int:
        return int(self.values.shape[-1])


@runtime_checkable
class PlotSink(Protocol):
    def update_decision_surface(self, surface: DecisionSurface) -> Any: ...

    def update_gradient_field(self, name: str, vectors: np.ndarray) -> Any: ...

    def update_scatter(
        self,
        real: np.ndarray,
        fake: np.ndarray,
        fake_classes: Optional[np.ndarray] = None,
        real_classes: Optional[np.ndarray] = None,
    ) -> Any: ...

    def push_loss_sample(self, name: str, iteration: int, value: float) -> Any: ...

    def clear_losses(self) -> Any: ...


def make_grid(grid_size: int, device: Optional[torch.device] = None) -> torch.Tensor:
    """Grid points ordered row-major with y as the slow axis."""
    axis = torch.linspace(-1.0, 1.0, grid_size, device=device)
    ys, xs = torch.meshgrid(axis, axis, indexing="ij")
    return torch.stack([xs.reshape(-1), ys.reshape(-1)], dim=1)


def probe_surface(probe: SurfaceProbe, grid: torch.Tensor) -> tuple:
    """Evaluate a probe on ``grid`` and return (values (C, N), vectors (N, 4))."""
    points = grid.detach().clone().requires_grad_(True)
    with torch.enable_grad():
        out = probe.model(points)
        if probe.target == "output":
            target = out.sum()
        elif probe.target == "max":
            target = out.max(dim=1).values.sum()
        else:
            target = out[:, int(probe.target)].sum()
        (grad,) = torch.autograd.grad(target, points)
    values = out.detach().t().cpu().numpy()
    vectors = torch.cat([points.detach(), grad.detach()], dim=1).cpu().numpy()
    return values, vectors


class VisualizationBridge:
    def __init__(
        self,
        sink: Optional[PlotSink],
        variant: GANVariant,
        *,
        grid_size: int = 15,
        surface_every: int = 1,
        sink_timeout: float = 1.0,
    ) -> None:
        if grid_size < 2:
            raise ValueError("grid_size must be >= 2.")
        if surface_every < 1:
            raise ValueError("surface_every must be >= 1.")
        self.sink = sink
        self.variant = variant
        self.grid_size = grid_size
        self.surface_every = surface_every
        self.sink_timeout = sink_timeout
        self.dropped = 0
        self.published = 0
        self._grid: Optional[torch.Tensor] = None

    def _grid_for(self, device: torch.device) -> torch.Tensor:
        if self._grid is None or self._grid.device != device:
            self._grid = make_grid(self.grid_size, device=device)
        return self._grid

    async def _call(self, method: str, *args: Any) -> None:
        if self.sink is None:
            return
        fn = getattr(self.sink, method, None)
        if fn is None:
            return
        # Synchronous sink methods run on a worker thread.
        call = fn(*args) if inspect.iscoroutinefunction(fn) else asyncio.to_thread(fn, *args)
        try:
            result = await asyncio.wait_for(call, timeout=self.sink_timeout)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.sink_timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            LOG.warning("Sink call %s timed out after %.2fs; dropped.", method, self.sink_timeout)
        except Exception:
            self.dropped += 1
            LOG.exception("Sink call %s failed; dropped.", method)

    def surfaces(self, iteration: int) -> List[tuple]:
        probes = self.variant.probes()
        if not probes:
            return []
        device = next(probes[0].model.module.parameters()).device
        grid = self._grid_for(device)
        results = []
        for probe in probes:
            values, vectors = probe_surface(probe, grid)
            surface = DecisionSurface(
                name=probe.name,
                iteration=iteration,
                values=values.reshape(-1, self.grid_size, self.grid_size),
            )
            results.append((surface, vectors))
        return results

    async def publish(self, record: StepRecord) -> None:
        if self.sink is None:
            return
        self.published += 1
        losses: Dict[str, Optional[float]] = dict(record.losses)
        for name, value in record.model_losses.items():
            losses.setdefault(f"{name} loss", value)
        for name, value in losses.items():
            if value is None:
                continue
            await self._call("push_loss_sample", name, record.iteration, float(value))

        assignments = record.assignments.copy() if (record.assignments >= 0).all() else None
        await self._call(
            "update_scatter",
            record.real_samples.copy(),
            record.fake_samples.copy(),
            record.fake_classes.copy(),
            assignments,
        )

        if record.iteration % self.surface_every == 0:
            for surface, vectors in self.surfaces(record.iteration):
                await self._call("update_decision_surface", surface)
                await self._call("update_gradient_field", surface.name, vectors)

    async def clear(self) -> None:
        await self._call("clear_losses")
