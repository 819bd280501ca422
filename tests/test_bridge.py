from __future__ import annotations

import asyncio
import time

import numpy as np
import pytest
import torch

from playground.bridge import DecisionSurface, PlotSink, VisualizationBridge, make_grid, probe_surface
from playground.sinks import LossHistory
from playground.variants import SurfaceProbe


class SlowSink(LossHistory):
    async def push_loss_sample(self, name: str, iteration: int, value: float) -> None:
        await asyncio.sleep(1.0)


class BrokenSink(LossHistory):
    def update_scatter(self, real, fake, fake_classes=None, real_classes=None) -> None:
        raise RuntimeError("canvas detached")


class BlockingSink(LossHistory):
    def update_scatter(self, real, fake, fake_classes=None, real_classes=None) -> None:
        time.sleep(1.0)


def test_make_grid_covers_unit_square() -> None:
    grid = make_grid(3)
    assert grid.shape == (9, 2)
    torch.testing.assert_close(grid[0], torch.tensor([-1.0, -1.0]))
    torch.testing.assert_close(grid[2], torch.tensor([1.0, -1.0]))
    torch.testing.assert_close(grid[-1], torch.tensor([1.0, 1.0]))


def test_loss_history_is_a_plot_sink() -> None:
    assert isinstance(LossHistory(), PlotSink)


@pytest.mark.asyncio
async def test_publish_forwards_losses_scatter_and_surfaces(make_engine) -> None:
    engine = make_engine("infogan")
    sink = LossHistory()
    bridge = VisualizationBridge(sink, engine.variant, grid_size=5)

    record = await engine.step()
    await bridge.publish(record)

    assert sink.latest("discriminator loss") == pytest.approx(record.losses["discriminator loss"])
    assert sink.latest("classifier loss") == pytest.approx(record.losses["classifier loss"])
    assert set(sink.surfaces) == {"discriminator", "q_network"}
    assert sink.surfaces["discriminator"].values.shape == (1, 5, 5)
    assert sink.surfaces["q_network"].values.shape == (3, 5, 5)
    assert sink.gradients["discriminator"].shape == (25, 4)
    assert bridge.dropped == 0

    real, fake, fake_classes, real_classes = sink.scatter
    np.testing.assert_array_equal(real, record.real_samples)
    assert real_classes is None
    record.buffers.real.fill(9.0)
    assert not np.any(real == 9.0)


@pytest.mark.asyncio
async def test_surface_values_match_model_outputs(make_engine) -> None:
    engine = make_engine("vanilla")
    bridge = VisualizationBridge(LossHistory(), engine.variant, grid_size=4)
    (surface, vectors), = bridge.surfaces(iteration=1)

    expected = engine.ensemble.discriminators[0](make_grid(4)).detach().numpy()
    np.testing.assert_allclose(surface.values.reshape(-1), expected.reshape(-1), rtol=1e-5)
    assert np.all((surface.values > 0) & (surface.values < 1))
    assert np.isfinite(vectors).all()


def test_probe_gradient_targets_selected_column(tiny_network) -> None:
    from networks.ensembles import build_ensemble

    ensemble = build_ensemble("m", "madgan", tiny_network("madgan"))
    head = ensemble.discriminators[0]
    grid = make_grid(3)

    values, vectors = probe_surface(SurfaceProbe("d", head, target=3), grid)

    points = grid.clone().requires_grad_(True)
    head(points)[:, 3].sum().backward()
    assert values.shape == (4, 9)
    np.testing.assert_allclose(vectors[:, 2:], points.grad.numpy(), rtol=1e-5, atol=1e-7)
    assert not head.trainable


@pytest.mark.asyncio
async def test_surfaces_only_every_n_iterations(make_engine) -> None:
    engine = make_engine("vanilla")
    sink = LossHistory()
    bridge = VisualizationBridge(sink, engine.variant, grid_size=3, surface_every=3)
    iterations = []

    for _ in range(6):
        record = await engine.step()
        await bridge.publish(record)
        if "discriminator" in sink.surfaces:
            iterations.append(sink.surfaces.pop("discriminator").iteration)

    assert iterations == [3, 6]


@pytest.mark.asyncio
async def test_dopanet_scatter_carries_routing(make_engine) -> None:
    engine = make_engine("dopanet")
    sink = LossHistory()
    bridge = VisualizationBridge(sink, engine.variant, grid_size=3)

    await bridge.publish(await engine.step())

    _, _, fake_classes, real_classes = sink.scatter
    assert real_classes is not None and real_classes.shape == (8,)
    assert sorted(set(fake_classes.tolist())) == [0, 1, 2]
    assert "generator_0 loss" in sink.series


@pytest.mark.asyncio
async def test_slow_sink_times_out_without_stalling(make_engine) -> None:
    engine = make_engine("vanilla")
    bridge = VisualizationBridge(SlowSink(), engine.variant, grid_size=3, sink_timeout=0.01)

    await bridge.publish(await engine.step())

    assert bridge.dropped >= 2


@pytest.mark.asyncio
async def test_blocking_sync_sink_times_out_without_stalling(make_engine) -> None:
    engine = make_engine("vanilla")
    sink = BlockingSink()
    bridge = VisualizationBridge(sink, engine.variant, grid_size=3, sink_timeout=0.2)
    record = await engine.step()
    loop = asyncio.get_running_loop()

    started = loop.time()
    await bridge.publish(record)
    elapsed = loop.time() - started

    assert elapsed < 0.9
    assert bridge.dropped >= 1
    assert "discriminator" in sink.surfaces
    assert sink.latest("generator loss") == pytest.approx(record.losses["generator loss"])


@pytest.mark.asyncio
async def test_failing_sink_is_logged_not_raised(make_engine, caplog: pytest.LogCaptureFixture) -> None:
    engine = make_engine("vanilla")
    sink = BrokenSink()
    bridge = VisualizationBridge(sink, engine.variant, grid_size=3)

    with caplog.at_level("ERROR", logger="playground.bridge"):
        await bridge.publish(await engine.step())

    assert bridge.dropped == 1
    assert "update_scatter" in caplog.text
    assert "discriminator" in sink.surfaces


@pytest.mark.asyncio
async def test_publish_without_sink_is_noop(make_engine) -> None:
    engine = make_engine("vanilla")
    bridge = VisualizationBridge(None, engine.variant)
    await bridge.publish(await engine.step())
    await bridge.clear()
    assert bridge.published == 0


@pytest.mark.asyncio
async def test_clear_forwards_to_sink(make_engine) -> None:
    engine = make_engine("vanilla")
    sink = LossHistory()
    bridge = VisualizationBridge(sink, engine.variant)
    await bridge.publish(await engine.step())

    await bridge.clear()

    assert sink.series == {}
    assert sink.clears == 1


def test_decision_surface_grid_size() -> None:
    surface = DecisionSurface("d", 1, np.zeros((1, 7, 7)))
    assert surface.grid_size == 7
