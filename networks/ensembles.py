"""Model ensembles for the four GAN variants."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Iterator, List, Optional, Tuple

import torch

from .models import (
    OptimizerSpec,
    SubModel,
    build_classifier,
    build_conditional_generator,
    build_discriminator,
    build_generator,
)

if TYPE_CHECKING:  # pragma: no cover
    from playground.config_schema import NetworkConfig

LOG = logging.getLogger("networks.ensembles")


class Phase(str, Enum):
    """Optimization phase within one training iteration."""

    DISCRIMINATOR = "discriminator"
    GENERATOR = "generator"


@dataclass
class Ensemble:
    """Named collection of sub-models trained together."""

    name: str
    kind: str
    generators: List[SubModel]
    discriminators: List[SubModel]
    classifier: Optional[SubModel] = None
    latent_dim: int = 0
    code_dim: int = 0
    meta: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.freeze_all()

    @property
    def members(self) -> List[SubModel]:
        members = [*self.generators, *self.discriminators]
        if self.classifier is not None:
            members.append(self.classifier)
        return members

    def trained_in(self, phase: Phase) -> List[SubModel]:
        if phase is Phase.DISCRIMINATOR:
            return list(self.discriminators)
        trained = list(self.generators)
        if self.classifier is not None:
            trained.append(self.classifier)
        return trained

    def freeze_all(self) -> None:
        for member in self.members:
            member.trainable = False

    @contextmanager
    def phase_scope(self, phase: Phase) -> Iterator[List[SubModel]]:
        """Unfreeze exactly the sub-models optimized in ``phase``.

        Every sub-model is frozen again on exit, whether the phase completed
        or raised.
        """
        self.freeze_all()
        trained = self.trained_in(phase)
        for member in trained:
            member.trainable = True
            member.zero_grad()
        try:
            yield trained
        finally:
            for member in trained:
                member.zero_grad()
            self.freeze_all()

    def reset(self) -> None:
        for member in self.members:
            member.reinitialize()
        self.freeze_all()
        LOG.info("Ensemble '%s' weights reinitialized (%d sub-models).", self.name, len(self.members))

    def parameter_shapes(self) -> Dict[str, Dict[str, Tuple[int, ...]]]:
        return {member.name: member.parameter_shapes() for member in self.members}

    def to(self, device: torch.device) -> "Ensemble":
        for member in self.members:
            member.to(device)
        return self


def _generator_opt(cfg: "NetworkConfig") -> OptimizerSpec:
    return OptimizerSpec(lr=cfg.generator_lr, betas=tuple(cfg.generator_betas))  # type: ignore[arg-type]


def _discriminator_opt(cfg: "NetworkConfig") -> OptimizerSpec:
    return OptimizerSpec(lr=cfg.discriminator_lr, betas=tuple(cfg.discriminator_betas))  # type: ignore[arg-type]


def build_vanilla(name: str, cfg: "NetworkConfig") -> Ensemble:
    generator = build_generator(
        "generator",
        latent_dim=cfg.latent_dim,
        layers=cfg.gen_layers,
        start_dim=cfg.gen_start_dim,
        optimizer=_generator_opt(cfg),
    )
    discriminator = build_discriminator(
        "discriminator",
        layers=cfg.disc_layers,
        start_dim=cfg.disc_start_dim,
        optimizer=_discriminator_opt(cfg),
    )
    return Ensemble(
        name=name,
        kind="vanilla",
        generators=[generator],
        discriminators=[discriminator],
        latent_dim=cfg.latent_dim,
    )


def build_infogan(name: str, cfg: "NetworkConfig") -> Ensemble:
    generator = build_conditional_generator(
        "generator",
        latent_dim=cfg.latent_dim,
        code_dim=cfg.code_dim,
        layers=cfg.gen_layers,
        start_dim=cfg.gen_start_dim,
        latent_norm=cfg.latent_norm,
        optimizer=_generator_opt(cfg),
    )
    discriminator = build_discriminator(
        "discriminator",
        layers=cfg.disc_layers,
        start_dim=cfg.disc_start_dim,
        optimizer=_discriminator_opt(cfg),
    )
    q_network = build_classifier(
        "q_network",
        code_dim=cfg.code_dim,
        layers=cfg.disc_layers,
        start_dim=cfg.disc_start_dim,
        optimizer=_generator_opt(cfg),
    )
    return Ensemble(
        name=name,
        kind="infogan",
        generators=[generator],
        discriminators=[discriminator],
        classifier=q_network,
        latent_dim=cfg.latent_dim,
        code_dim=cfg.code_dim,
        meta={"q_weight": cfg.q_weight},
    )


def build_dopanet(name: str, cfg: "NetworkConfig") -> Ensemble:
    generators = [
        build_generator(
            f"generator_{i}",
            latent_dim=cfg.latent_dim,
            layers=cfg.gen_layers,
            start_dim=cfg.gen_start_dim,
            optimizer=_generator_opt(cfg),
        )
        for i in range(cfg.code_dim)
    ]
    discriminators = [
        build_discriminator(
            f"discriminator_{i}",
            layers=cfg.disc_layers,
            start_dim=cfg.disc_start_dim,
            optimizer=_discriminator_opt(cfg),
        )
        for i in range(cfg.code_dim)
    ]
    q_network = build_classifier(
        "q_network",
        code_dim=cfg.code_dim,
        layers=cfg.disc_layers,
        start_dim=cfg.disc_start_dim,
        optimizer=_generator_opt(cfg),
    )
    return Ensemble(
        name=name,
        kind="dopanet",
        generators=generators,
        discriminators=discriminators,
        classifier=q_network,
        latent_dim=cfg.latent_dim,
        code_dim=cfg.code_dim,
        meta={"q_weight": cfg.q_weight},
    )


def build_madgan(name: str, cfg: "NetworkConfig") -> Ensemble:
    generators = [
        build_generator(
            f"generator_{i}",
            latent_dim=cfg.latent_dim,
            layers=cfg.gen_layers,
            start_dim=cfg.gen_start_dim,
            optimizer=_generator_opt(cfg),
        )
        for i in range(cfg.code_dim)
    ]
    # Classes 0..K-1 identify the generator that produced a point, class K is "real".
    discriminator = build_discriminator(
        "discriminator",
        layers=cfg.disc_layers,
        start_dim=cfg.disc_start_dim,
        num_classes=cfg.code_dim + 1,
        optimizer=_discriminator_opt(cfg),
    )
    return Ensemble(
        name=name,
        kind="madgan",
        generators=generators,
        discriminators=[discriminator],
        latent_dim=cfg.latent_dim,
        code_dim=cfg.code_dim,
    )


ENSEMBLE_BUILDERS: Dict[str, Callable[[str, "NetworkConfig"], Ensemble]] = {
    "vanilla": build_vanilla,
    "infogan": build_infogan,
    "dopanet": build_dopanet,
    "madgan": build_madgan,
}


def build_ensemble(name: str, kind: str, cfg: "NetworkConfig", *, device: Optional[torch.device] = None) -> Ensemble:
    try:
        builder = ENSEMBLE_BUILDERS[kind]
    except KeyError:
        available = ", ".join(sorted(ENSEMBLE_BUILDERS))
        raise KeyError(f"Unknown GAN variant '{kind}'. Available: {available}") from None
    ensemble = builder(name, cfg)
    if device is not None:
        ensemble.to(device)
    LOG.info(
        "Built ensemble '%s' (%s): %d generator(s), %d discriminator(s), classifier=%s",
        name,
        kind,
        len(ensemble.generators),
        len(ensemble.discriminators),
        ensemble.classifier is not None,
    )
    return ensemble
