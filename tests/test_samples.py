from __future__ import annotations

import math

import numpy as np
import pytest
import torch

from playground.samples import (
    EmptySourceError,
    MinibatchSampler,
    SampleSource,
    normalize_canvas_point,
    spray,
)


def test_sample_source_append_and_snapshot() -> None:
    source = SampleSource()
    assert len(source) == 0
    assert not source
    assert source.snapshot().shape == (0, 2)

    source.append(0.25, -0.5)
    added = source.extend([(0.1, 0.2), [0.3, 0.4]])

    assert added == 2
    assert len(source) == 3
    assert source[0] == (0.25, -0.5)
    snapshot = source.snapshot()
    assert snapshot.dtype == np.float32
    np.testing.assert_allclose(snapshot[1], [0.1, 0.2], rtol=1e-6)


@pytest.mark.parametrize("point", [(math.nan, 0.0), (0.0, math.inf)])
def test_sample_source_rejects_non_finite(point) -> None:
    source = SampleSource()
    with pytest.raises(ValueError):
        source.append(*point)
    assert len(source) == 0


def test_sample_source_rejects_wrong_arity() -> None:
    with pytest.raises(ValueError):
        SampleSource([(0.1, 0.2, 0.3)])


def test_clear_notifies_listeners() -> None:
    source = SampleSource([(0.0, 0.0), (0.5, 0.5)])
    calls: list[int] = []
    source.add_clear_listener(lambda: calls.append(len(source)))

    source.clear()

    assert len(source) == 0
    assert calls == [0]


def test_sampler_refuses_empty_source_and_bad_sizes() -> None:
    sampler = MinibatchSampler(SampleSource(), seed=1)
    with pytest.raises(EmptySourceError):
        sampler.sample(4)
    sampler.source.append(0.0, 0.0)
    with pytest.raises(ValueError):
        sampler.sample(0)


def test_sampler_draws_with_replacement_from_source() -> None:
    points = [(-0.5, 0.5), (0.75, -0.25)]
    sampler = MinibatchSampler(SampleSource(points), seed=3)

    batch = sampler.sample(32)

    assert batch.shape == (32, 2)
    assert batch.dtype == torch.float32
    rows = {tuple(round(float(v), 5) for v in row) for row in batch}
    assert rows <= {(-0.5, 0.5), (0.75, -0.25)}


def test_sampler_is_reproducible_with_seed() -> None:
    source = SampleSource([(float(i) / 10, 0.0) for i in range(10)])
    first = MinibatchSampler(source, seed=11).sample(16)
    second = MinibatchSampler(source, seed=11).sample(16)
    assert torch.equal(first, second)


def test_sampled_batch_is_isolated_from_later_mutation() -> None:
    source = SampleSource([(0.1, 0.1)])
    sampler = MinibatchSampler(source, seed=0)
    batch = sampler.sample(4)
    before = batch.clone()

    source.extend([(0.9, 0.9)] * 10)
    source.clear()

    assert torch.equal(batch, before)


def test_spray_stays_within_three_standard_deviations() -> None:
    rng = np.random.default_rng(5)
    points = spray(0.2, -0.3, 0.15, 500, rng=rng)

    assert len(points) == 500
    offsets = np.asarray(points) - np.asarray([0.2, -0.3])
    assert np.abs(offsets).max() <= 0.15 + 1e-9
    assert abs(float(offsets.mean())) < 0.02


def test_spray_is_deterministic_for_seeded_rng() -> None:
    a = spray(0.0, 0.0, 0.1, 10, rng=np.random.default_rng(9))
    b = spray(0.0, 0.0, 0.1, 10, rng=np.random.default_rng(9))
    assert a == b


def test_normalize_canvas_point_maps_corners() -> None:
    assert normalize_canvas_point(0, 0, 200, 100) == (-1.0, 1.0)
    assert normalize_canvas_point(200, 100, 200, 100) == (1.0, -1.0)
    assert normalize_canvas_point(100, 50, 200, 100) == (0.0, 0.0)
    with pytest.raises(ValueError):
        normalize_canvas_point(1, 1, 0, 10)
