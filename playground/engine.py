"""Generic adversarial training step shared by every GAN variant."""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import numpy as np
import torch

from networks.ensembles import Ensemble, Phase
from networks.models import SubModel

from .samples import MinibatchSampler

if TYPE_CHECKING:  # pragma: no cover
    from .variants import GANVariant, PhaseLosses

LOG = logging.getLogger("playground.engine")

PhaseListener = Callable[[Phase, str], None]

__all__ = [
    "Phase",
    "SnapshotBuffers",
    "StepRecord",
    "TensorLedger",
    "TrainingStepEngine",
]


class TensorLedger:
    """Tracks the temporary tensors created during one training iteration.

    ``release`` drops the strong references held for the iteration; the weak
    references kept alongside let tests and diagnostics confirm that nothing
    outlived it.
    """

    def __init__(self) -> None:
        self._pending: List[torch.Tensor] = []
        self._watch: List[weakref.ref] = []
        self.total_tracked = 0

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        self._pending.append(tensor)
        self._watch.append(weakref.ref(tensor))
        self.total_tracked += 1
        return tensor

    @property
    def outstanding(self) -> int:
        return len(self._pending)

    def release(self) -> int:
        released = len(self._pending)
        self._pending.clear()
        self._watch = [ref for ref in self._watch if ref() is not None]
        return released

    def live(self) -> int:
        return sum(1 for ref in self._watch if ref() is not None)


class SnapshotBuffers:
    """Preallocated host arrays handed to the visualization side.

    The arrays are overwritten in place every iteration, so consumers that
    keep data past the next step must copy it.
    """

    def __init__(self, batch_size: int, num_generators: int) -> None:
        self.batch_size = batch_size
        self.num_generators = num_generators
        self.real = np.zeros((batch_size, 2), dtype=np.float32)
        self.fake = np.zeros((batch_size * num_generators, 2), dtype=np.float32)
        self.fake_classes = np.zeros(batch_size * num_generators, dtype=np.int64)
        self.assignments = np.full(batch_size, -1, dtype=np.int64)

    def write(
        self,
        real: torch.Tensor,
        fakes: List[torch.Tensor],
        fake_classes: np.ndarray,
        assignments: Optional[torch.Tensor] = None,
    ) -> None:
        np.copyto(self.real, real.detach().cpu().numpy())
        offset = 0
        for fake in fakes:
            rows = fake.shape[0]
            np.copyto(self.fake[offset : offset + rows], fake.detach().cpu().numpy())
            offset += rows
        np.copyto(self.fake_classes, fake_classes)
        if assignments is None:
            self.assignments.fill(-1)
        else:
            np.copyto(self.assignments, assignments.detach().cpu().numpy())

    def clear(self) -> None:
        self.real.fill(0.0)
        self.fake.fill(0.0)
        self.fake_classes.fill(0)
        self.assignments.fill(-1)


@dataclass
class StepRecord:
    iteration: int
    losses: Dict[str, float]
    model_losses: Dict[str, Optional[float]]
    buffers: SnapshotBuffers
    skipped: List[str] = field(default_factory=list)
    non_finite: bool = False

    @property
    def real_samples(self) -> np.ndarray:
        return self.buffers.real

    @property
    def fake_samples(self) -> np.ndarray:
        return self.buffers.fake

    @property
    def fake_classes(self) -> np.ndarray:
        return self.buffers.fake_classes

    @property
    def assignments(self) -> np.ndarray:
        return self.buffers.assignments


class TrainingStepEngine:
    """Runs one discriminator phase then one generator phase per iteration.

    Fakes are snapshotted from the generators before either phase updates any
    weights. Between phases the coroutine yields to the event loop; at those
    points every sub-model is frozen.
    """

    def __init__(
        self,
        ensemble: Ensemble,
        variant: "GANVariant",
        sampler: MinibatchSampler,
        *,
        batch_size: int,
        ledger: Optional[TensorLedger] = None,
        yield_every_phase: bool = True,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive.")
        self.ensemble = ensemble
        self.variant = variant
        self.sampler = sampler
        self.batch_size = batch_size
        self.ledger = ledger or variant.ledger
        self.yield_every_phase = yield_every_phase
        self.buffers = SnapshotBuffers(batch_size, variant.num_generators)
        self.iteration = 0
        self.non_finite_events = 0
        self._phase_listeners: List[PhaseListener] = []

    def add_phase_listener(self, listener: PhaseListener) -> None:
        """Register ``listener(phase, stage)`` called with stage ``"before"``/``"after"``."""
        self._phase_listeners.append(listener)

    def can_train(self) -> bool:
        return len(self.sampler.source) > 0

    def reset_buffers(self) -> None:
        self.buffers.clear()

    def reset(self) -> None:
        self.ensemble.reset()
        self.reset_buffers()

    async def step(self) -> StepRecord:
        iteration = self.iteration + 1
        skipped: List[str] = []
        losses: Dict[str, float] = {}
        model_losses: Dict[str, Optional[float]] = {}
        non_finite = False
        try:
            real = self.ledger.track(self.sampler.sample(self.batch_size))
            inputs = self.variant.draw_inputs(real)
            with torch.no_grad():
                fakes = self.variant.generate(inputs)
            assignments = self.variant.route(real)
            self.buffers.write(real, fakes, self.variant.fake_classes(inputs), assignments)

            with self.ensemble.phase_scope(Phase.DISCRIMINATOR) as trained:
                self._notify(Phase.DISCRIMINATOR, "before")
                result = self.variant.discriminator_losses(inputs, fakes, assignments)
                non_finite |= not self._apply(Phase.DISCRIMINATOR, result, trained, iteration)
                self._notify(Phase.DISCRIMINATOR, "after")
            self._collect(result, losses, model_losses, skipped)
            if self.yield_every_phase:
                await asyncio.sleep(0)

            with self.ensemble.phase_scope(Phase.GENERATOR) as trained:
                self._notify(Phase.GENERATOR, "before")
                result = self.variant.generator_losses(inputs)
                non_finite |= not self._apply(Phase.GENERATOR, result, trained, iteration)
                self._notify(Phase.GENERATOR, "after")
            self._collect(result, losses, model_losses, skipped)
            del inputs, fakes, assignments, result, real
        finally:
            self.ledger.release()

        self.iteration = iteration
        await asyncio.sleep(0)
        return StepRecord(
            iteration=iteration,
            losses=losses,
            model_losses=model_losses,
            buffers=self.buffers,
            skipped=skipped,
            non_finite=non_finite,
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _notify(self, phase: Phase, stage: str) -> None:
        for listener in self._phase_listeners:
            listener(phase, stage)

    def _apply(
        self,
        phase: Phase,
        result: "PhaseLosses",
        trained: List[SubModel],
        iteration: int,
    ) -> bool:
        if result.total is None:
            LOG.debug("Iteration %d: no %s loss to optimize.", iteration, phase.value)
            return True
        if not bool(torch.isfinite(result.total.detach()).all()):
            self.non_finite_events += 1
            LOG.warning(
                "Iteration %d: non-finite %s loss; skipping optimizer step (%d events).",
                iteration,
                phase.value,
                self.non_finite_events,
            )
            for member in trained:
                member.zero_grad()
            return False
        result.total.backward()
        trained_ids = {id(member) for member in trained}
        for member in result.stepped:
            if id(member) not in trained_ids:
                raise RuntimeError(f"Sub-model '{member.name}' is not trainable during the {phase.value} phase.")
            member.step()
        return True

    @staticmethod
    def _collect(
        result: "PhaseLosses",
        losses: Dict[str, float],
        model_losses: Dict[str, Optional[float]],
        skipped: List[str],
    ) -> None:
        losses.update(result.summary)
        model_losses.update(result.per_model)
        skipped.extend(name for name, value in result.per_model.items() if value is None)
