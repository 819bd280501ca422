"""Per-variant wiring for the generic training step engine.

Each variant describes how latent inputs are drawn, how fakes are produced,
how real points are routed (domain-partitioned only), and which losses the
discriminator and generator phases minimize. The engine owns ordering,
freezing, optimizer stepping and bookkeeping.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import torch
import torch.nn.functional as F

from networks.ensembles import Ensemble
from networks.models import SubModel

from .engine import TensorLedger


@dataclass
class StepInputs:
    real: torch.Tensor
    latent: torch.Tensor
    codes: Optional[torch.Tensor] = None
    code_onehot: Optional[torch.Tensor] = None

    @property
    def batch_size(self) -> int:
        return int(self.real.shape[0])


@dataclass
class PhaseLosses:
    """Losses of one optimization phase.

    ``total`` is backpropagated once; ``stepped`` lists the sub-models whose
    optimizer runs afterwards. A sub-model missing from ``stepped`` keeps its
    weights for this iteration.
    """

    total: Optional[torch.Tensor]
    stepped: List[SubModel]
    per_model: Dict[str, Optional[float]] = field(default_factory=dict)
    summary: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class SurfaceProbe:
    """A sub-model whose output is sampled over the visualization grid.

    ``target`` selects what the gradient field differentiates: ``"output"`` for
    a single-unit head, ``"max"`` for the most probable class, or an integer
    column index.
    """

    name: str
    model: SubModel
    target: object = "output"


def _mean(values: List[float]) -> float:
    return float(sum(values) / len(values)) if values else 0.0


class GANVariant(ABC):
    kind: str = ""

    def __init__(self, ensemble: Ensemble, ledger: TensorLedger) -> None:
        if ensemble.kind != self.kind:
            raise ValueError(f"{type(self).__name__} cannot drive a '{ensemble.kind}' ensemble.")
        self.ensemble = ensemble
        self.ledger = ledger

    @property
    def num_generators(self) -> int:
        return len(self.ensemble.generators)

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        return self.ledger.track(tensor)

    def draw_inputs(self, real: torch.Tensor) -> StepInputs:
        batch = real.shape[0]
        latent = self.track(torch.randn(batch, self.ensemble.latent_dim, device=real.device))
        return StepInputs(real=real, latent=latent)

    def generate(self, inputs: StepInputs) -> List[torch.Tensor]:
        return [self.track(generator(inputs.latent)) for generator in self.ensemble.generators]

    def fake_classes(self, inputs: StepInputs) -> np.ndarray:
        """Class id of every generated point, aligned with the concatenated fakes."""
        return np.repeat(np.arange(self.num_generators), inputs.batch_size)

    def route(self, real: torch.Tensor) -> Optional[torch.Tensor]:
        return None

    @abstractmethod
    def discriminator_losses(
        self,
        inputs: StepInputs,
        fakes: List[torch.Tensor],
        assignments: Optional[torch.Tensor],
    ) -> PhaseLosses:
        ...

    @abstractmethod
    def generator_losses(self, inputs: StepInputs) -> PhaseLosses:
        ...

    @abstractmethod
    def probes(self) -> List[SurfaceProbe]:
        ...

    # ------------------------------------------------------------------ #
    # Shared loss helpers
    # ------------------------------------------------------------------ #

    def _binary_targets(self, rows: int, value: float, like: torch.Tensor) -> torch.Tensor:
        return self.track(torch.full((rows, 1), value, device=like.device))

    def _real_fake_loss(self, discriminator: SubModel, real: torch.Tensor, fake: torch.Tensor) -> torch.Tensor:
        batch = self.track(torch.cat([real, fake], dim=0))
        labels = self.track(
            torch.cat(
                [
                    self._binary_targets(real.shape[0], 1.0, real),
                    self._binary_targets(fake.shape[0], 0.0, fake),
                ],
                dim=0,
            )
        )
        return self.track(F.binary_cross_entropy_with_logits(discriminator.logits(batch), labels))

    def _fool_loss(self, discriminator: SubModel, fake: torch.Tensor) -> torch.Tensor:
        targets = self._binary_targets(fake.shape[0], 1.0, fake)
        return self.track(F.binary_cross_entropy_with_logits(discriminator.logits(fake), targets))

    def _class_targets(self, rows: int, value: int, like: torch.Tensor) -> torch.Tensor:
        return self.track(torch.full((rows,), value, dtype=torch.long, device=like.device))


class VanillaVariant(GANVariant):
    """One generator against one binary discriminator."""

    kind = "vanilla"

    def discriminator_losses(self, inputs, fakes, assignments):
        discriminator = self.ensemble.discriminators[0]
        loss = self._real_fake_loss(discriminator, inputs.real, fakes[0])
        value = float(loss.detach())
        return PhaseLosses(
            total=loss,
            stepped=[discriminator],
            per_model={discriminator.name: value},
            summary={"discriminator loss": value},
        )

    def generator_losses(self, inputs):
        generator = self.ensemble.generators[0]
        fake = self.track(generator(inputs.latent))
        loss = self._fool_loss(self.ensemble.discriminators[0], fake)
        value = float(loss.detach())
        return PhaseLosses(
            total=loss,
            stepped=[generator],
            per_model={generator.name: value},
            summary={"generator loss": value},
        )

    def probes(self):
        return [SurfaceProbe("discriminator", self.ensemble.discriminators[0])]


class InfoGANVariant(GANVariant):
    """Code-conditioned generator with an auxiliary Q-network recovering the code."""

    kind = "infogan"

    @property
    def q_weight(self) -> float:
        return float(self.ensemble.meta.get("q_weight", 1.0))

    def draw_inputs(self, real):
        inputs = super().draw_inputs(real)
        code_dim = self.ensemble.code_dim
        codes = self.track(torch.randint(0, code_dim, (inputs.batch_size,), device=real.device))
        inputs.codes = codes
        inputs.code_onehot = self.track(F.one_hot(codes, code_dim).float())
        return inputs

    def generate(self, inputs):
        generator = self.ensemble.generators[0]
        return [self.track(generator(inputs.latent, inputs.code_onehot))]

    def fake_classes(self, inputs):
        assert inputs.codes is not None
        return inputs.codes.detach().cpu().numpy()

    def discriminator_losses(self, inputs, fakes, assignments):
        discriminator = self.ensemble.discriminators[0]
        loss = self._real_fake_loss(discriminator, inputs.real, fakes[0])
        value = float(loss.detach())
        return PhaseLosses(
            total=loss,
            stepped=[discriminator],
            per_model={discriminator.name: value},
            summary={"discriminator loss": value},
        )

    def generator_losses(self, inputs):
        generator = self.ensemble.generators[0]
        q_network = self.ensemble.classifier
        assert q_network is not None and inputs.codes is not None
        fake = self.track(generator(inputs.latent, inputs.code_onehot))
        adversarial = self._fool_loss(self.ensemble.discriminators[0], fake)
        recovery = self.track(F.cross_entropy(q_network.logits(fake), inputs.codes))
        total = self.track(adversarial + self.q_weight * recovery)
        adv_value = float(adversarial.detach())
        q_value = float(recovery.detach())
        return PhaseLosses(
            total=total,
            stepped=[generator, q_network],
            per_model={generator.name: adv_value, q_network.name: q_value},
            summary={"generator loss": adv_value, "classifier loss": q_value},
        )

    def probes(self):
        assert self.ensemble.classifier is not None
        return [
            SurfaceProbe("discriminator", self.ensemble.discriminators[0]),
            SurfaceProbe("q_network", self.ensemble.classifier, target="max"),
        ]


class DoPaNetVariant(GANVariant):
    """K generator/discriminator pairs with a shared classifier routing real points.

    The classifier is never given ground-truth domains: it only learns to tell
    the generators apart from their fakes, and real points follow its arg-max.
    """

    kind = "dopanet"

    @property
    def q_weight(self) -> float:
        return float(self.ensemble.meta.get("q_weight", 0.1))

    def route(self, real):
        q_network = self.ensemble.classifier
        assert q_network is not None
        with torch.no_grad():
            return self.track(torch.argmax(q_network(real), dim=1))

    def discriminator_losses(self, inputs, fakes, assignments):
        assert assignments is not None
        losses: List[torch.Tensor] = []
        stepped: List[SubModel] = []
        per_model: Dict[str, Optional[float]] = {}
        for index, discriminator in enumerate(self.ensemble.discriminators):
            mask = self.track(assignments == index)
            routed = self.track(inputs.real[mask])
            if routed.shape[0] == 0:
                per_model[discriminator.name] = None
                continue
            loss = self._real_fake_loss(discriminator, routed, fakes[index])
            losses.append(loss)
            stepped.append(discriminator)
            per_model[discriminator.name] = float(loss.detach())
        total = self.track(torch.stack(losses).sum()) if losses else None
        trained_values = [v for v in per_model.values() if v is not None]
        return PhaseLosses(
            total=total,
            stepped=stepped,
            per_model=per_model,
            summary={"discriminator loss": _mean(trained_values)},
        )

    def generator_losses(self, inputs):
        q_network = self.ensemble.classifier
        assert q_network is not None
        joint: List[torch.Tensor] = []
        adversarial_values: List[float] = []
        recovery_values: List[float] = []
        per_model: Dict[str, Optional[float]] = {}
        for index, (generator, discriminator) in enumerate(
            zip(self.ensemble.generators, self.ensemble.discriminators)
        ):
            fake = self.track(generator(inputs.latent))
            adversarial = self._fool_loss(discriminator, fake)
            targets = self._class_targets(fake.shape[0], index, fake)
            recovery = self.track(F.cross_entropy(q_network.logits(fake), targets))
            joint.append(self.track(adversarial + self.q_weight * recovery))
            adversarial_values.append(float(adversarial.detach()))
            recovery_values.append(float(recovery.detach()))
            per_model[generator.name] = adversarial_values[-1]
        per_model[q_network.name] = _mean(recovery_values)
        return PhaseLosses(
            total=self.track(torch.stack(joint).sum()),
            stepped=[*self.ensemble.generators, q_network],
            per_model=per_model,
            summary={
                "generator loss": _mean(adversarial_values),
                "classifier loss": _mean(recovery_values),
            },
        )

    def probes(self):
        assert self.ensemble.classifier is not None
        probes = [
            SurfaceProbe(discriminator.name, discriminator)
            for discriminator in self.ensemble.discriminators
        ]
        probes.append(SurfaceProbe("q_network", self.ensemble.classifier, target="max"))
        return probes


class MADGANVariant(GANVariant):
    """K generators against one discriminator that also names the generator."""

    kind = "madgan"

    @property
    def real_class(self) -> int:
        return self.num_generators

    def discriminator_losses(self, inputs, fakes, assignments):
        discriminator = self.ensemble.discriminators[0]
        batch = self.track(torch.cat([inputs.real, *fakes], dim=0))
        labels = self.track(
            torch.cat(
                [self._class_targets(inputs.batch_size, self.real_class, inputs.real)]
                + [self._class_targets(fake.shape[0], index, fake) for index, fake in enumerate(fakes)],
                dim=0,
            )
        )
        loss = self.track(F.cross_entropy(discriminator.logits(batch), labels))
        value = float(loss.detach())
        return PhaseLosses(
            total=loss,
            stepped=[discriminator],
            per_model={discriminator.name: value},
            summary={"discriminator loss": value},
        )

    def generator_losses(self, inputs):
        discriminator = self.ensemble.discriminators[0]
        losses: List[torch.Tensor] = []
        per_model: Dict[str, Optional[float]] = {}
        for generator in self.ensemble.generators:
            fake = self.track(generator(inputs.latent))
            targets = self._class_targets(fake.shape[0], self.real_class, fake)
            loss = self.track(F.cross_entropy(discriminator.logits(fake), targets))
            losses.append(loss)
            per_model[generator.name] = float(loss.detach())
        values = [v for v in per_model.values() if v is not None]
        return PhaseLosses(
            total=self.track(torch.stack(losses).sum()),
            stepped=list(self.ensemble.generators),
            per_model=per_model,
            summary={"generator loss": _mean(values)},
        )

    def probes(self):
        return [SurfaceProbe("discriminator", self.ensemble.discriminators[0], target=self.real_class)]


VARIANTS = {
    cls.kind: cls
    for cls in (VanillaVariant, InfoGANVariant, DoPaNetVariant, MADGANVariant)
}


def variant_for(ensemble: Ensemble, ledger: TensorLedger) -> GANVariant:
    try:
        cls = VARIANTS[ensemble.kind]
    except KeyError:
        raise KeyError(f"No training variant registered for '{ensemble.kind}'.") from None
    return cls(ensemble, ledger)
