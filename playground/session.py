"""Session context tying the sample source, ensembles and controllers together."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import torch

from networks.ensembles import Ensemble, build_ensemble

from .bridge import PlotSink, VisualizationBridge
from .config_schema import SessionConfig
from .controller import TrainingLoopController
from .engine import TensorLedger, TrainingStepEngine
from .samples import MinibatchSampler, SampleSource, spray
from .variants import GANVariant, variant_for

LOG = logging.getLogger("playground.session")


def _log(event: str, **payload: object) -> None:
    message = {"event": event, **payload}
    LOG.info(json.dumps(message, sort_keys=True))


class UnknownEnsembleError(KeyError):
    """Raised when a session is asked for an ensemble it has no config for."""


def select_device(preferred: str) -> torch.device:
    preferred = preferred.lower()
    if preferred == "cuda" and torch.cuda.is_available():
        return torch.device("cuda")
    if preferred == "cuda":
        LOG.warning("CUDA requested but not available; falling back to CPU.")
    return torch.device("cpu")


@dataclass
class EnsembleHandle:
    name: str
    ensemble: Ensemble
    variant: GANVariant
    engine: TrainingStepEngine
    controller: TrainingLoopController
    bridge: VisualizationBridge
    ledger: TensorLedger


class Session:
    """Owns every piece of mutable playground state.

    Ensembles are built the first time they are activated; only the active
    ensemble is ever trained.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        sink: Optional[PlotSink] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        self.config = config or SessionConfig()
        self.config.validate()
        self.sink = sink
        self.max_iterations = max_iterations
        self.device = select_device(self.config.runtime.device)
        self.source = SampleSource()
        self.source.add_clear_listener(self._on_source_cleared)
        self.brush_rng = np.random.default_rng(self.config.runtime.seed)
        self.active = self.config.active
        self._handles: Dict[str, EnsembleHandle] = {}

    @property
    def names(self) -> List[str]:
        return sorted(self.config.variants)

    @property
    def built(self) -> List[str]:
        return sorted(self._handles)

    def handle(self, name: Optional[str] = None) -> EnsembleHandle:
        name = name or self.active
        if name not in self.config.variants:
            raise UnknownEnsembleError(f"Unknown ensemble '{name}'. Available: {self.names}")
        handle = self._handles.get(name)
        if handle is None:
            handle = self._build_handle(name)
            self._handles[name] = handle
        return handle

    @property
    def active_handle(self) -> EnsembleHandle:
        return self.handle(self.active)

    def _build_handle(self, name: str) -> EnsembleHandle:
        cfg = self.config.variants[name]
        ensemble = build_ensemble(name, cfg.kind, cfg, device=self.device)
        ledger = TensorLedger()
        variant = variant_for(ensemble, ledger)
        sampler = MinibatchSampler(self.source, seed=self.config.runtime.seed, device=self.device)
        engine = TrainingStepEngine(
            ensemble,
            variant,
            sampler,
            batch_size=cfg.batch_size,
            ledger=ledger,
            yield_every_phase=self.config.runtime.yield_every_phase,
        )
        vis = self.config.visualization
        bridge = VisualizationBridge(
            self.sink,
            variant,
            grid_size=vis.grid_size,
            surface_every=vis.surface_every,
            sink_timeout=vis.sink_timeout,
        )
        controller = TrainingLoopController(
            engine,
            bridge=bridge,
            max_iterations=self.max_iterations,
            name=name,
        )
        _log("ensemble_built", name=name, kind=cfg.kind, device=str(self.device))
        return EnsembleHandle(name, ensemble, variant, engine, controller, bridge, ledger)

    # ------------------------------------------------------------------ #
    # Input side
    # ------------------------------------------------------------------ #

    def add_point(self, x: float, y: float) -> None:
        self.source.append(x, y)

    def add_points(self, points: Iterable[Sequence[float]]) -> int:
        return self.source.extend(points)

    def paint(self, cx: float, cy: float, *, spread: Optional[float] = None, count: Optional[int] = None) -> int:
        brush = self.config.brush
        points = spray(
            cx,
            cy,
            brush.spread if spread is None else spread,
            brush.points_per_event if count is None else count,
            rng=self.brush_rng,
        )
        return self.source.extend(points)

    # ------------------------------------------------------------------ #
    # Controls
    # ------------------------------------------------------------------ #

    def toggle_training(self) -> bool:
        return self.active_handle.controller.toggle()

    async def stop_training(self) -> None:
        handle = self._handles.get(self.active)
        if handle is not None:
            await handle.controller.stop()

    async def reset_weights(self, name: Optional[str] = None) -> None:
        handle = self.handle(name)
        await handle.controller.call_at_boundary(handle.engine.reset)
        await handle.bridge.clear()
        _log("ensemble_reset", name=handle.name, iteration=handle.engine.iteration)

    async def switch_active_ensemble(self, name: str) -> EnsembleHandle:
        if name not in self.config.variants:
            raise UnknownEnsembleError(f"Unknown ensemble '{name}'. Available: {self.names}")
        previous = self._handles.get(self.active)
        if previous is not None:
            await previous.controller.stop()
        self.active = name
        handle = self.handle(name)
        _log("ensemble_activated", name=name, previous=previous.name if previous else None)
        return handle

    async def clear(self) -> None:
        for handle in self._handles.values():
            await handle.controller.stop()
        self.source.clear()

    async def shutdown(self) -> None:
        for handle in self._handles.values():
            await handle.controller.stop()
        _log("session_shutdown", ensembles=self.built, points=len(self.source))

    def _on_source_cleared(self) -> None:
        for handle in self._handles.values():
            handle.engine.reset_buffers()
