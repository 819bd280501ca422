from __future__ import annotations

from typing import Callable, Optional, Sequence

import numpy as np
import pytest
import torch

from networks.ensembles import build_ensemble
from playground.config_schema import NetworkConfig
from playground.engine import TensorLedger, TrainingStepEngine
from playground.samples import MinibatchSampler, SampleSource
from playground.variants import variant_for


def _tiny_network(kind: str, **overrides) -> NetworkConfig:
    values = dict(
        kind=kind,
        latent_dim=4,
        code_dim=3,
        gen_layers=1,
        gen_start_dim=16,
        disc_layers=1,
        disc_start_dim=16,
        batch_size=8,
        generator_lr=1e-3,
        discriminator_lr=1e-3,
        q_weight=1.0,
    )
    values.update(overrides)
    cfg = NetworkConfig(**values)
    cfg.validate(kind)
    return cfg


def _two_blobs(count: int = 40, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    left = rng.normal((-0.5, -0.5), 0.05, size=(count // 2, 2))
    right = rng.normal((0.5, 0.5), 0.05, size=(count - count // 2, 2))
    return np.concatenate([left, right]).astype(np.float32)


@pytest.fixture
def tiny_network() -> Callable[..., NetworkConfig]:
    return _tiny_network


@pytest.fixture
def two_blobs() -> np.ndarray:
    return _two_blobs()


@pytest.fixture
def make_engine() -> Callable[..., TrainingStepEngine]:
    def factory(
        kind: str,
        points: Optional[Sequence[Sequence[float]]] = None,
        *,
        seed: int = 0,
        **overrides,
    ) -> TrainingStepEngine:
        torch.manual_seed(seed)
        cfg = _tiny_network(kind, **overrides)
        source = SampleSource(_two_blobs() if points is None else points)
        ensemble = build_ensemble(kind, kind, cfg)
        ledger = TensorLedger()
        return TrainingStepEngine(
            ensemble,
            variant_for(ensemble, ledger),
            MinibatchSampler(source, seed=seed),
            batch_size=cfg.batch_size,
            ledger=ledger,
        )

    return factory
