from __future__ import annotations

import pytest
import torch

from networks import ensembles
from networks.ensembles import Phase, build_ensemble
from networks.models import (
    build_classifier,
    build_conditional_generator,
    build_discriminator,
    build_generator,
    discriminator_widths,
    generator_widths,
)


def test_layer_widths() -> None:
    assert generator_widths(3, 8) == [8, 16, 32]
    assert generator_widths(0, 8) == [8]
    assert discriminator_widths(3, 8) == [8, 4, 2]
    with pytest.raises(ValueError):
        discriminator_widths(5, 4)


def test_generator_and_discriminator_shapes() -> None:
    generator = build_generator("g", latent_dim=5, layers=2, start_dim=8)
    discriminator = build_discriminator("d", layers=2, start_dim=8)
    z = torch.randn(7, 5)

    fake = generator(z)
    scores = discriminator(fake)

    assert fake.shape == (7, 2)
    assert scores.shape == (7, 1)
    assert torch.all((scores > 0) & (scores < 1))
    assert generator.parameter_shapes()["head.weight"] == (2, 16)


def test_multiclass_heads_are_probabilities() -> None:
    madgan_head = build_discriminator("d", layers=1, start_dim=8, num_classes=4)
    classifier = build_classifier("q", code_dim=3, layers=1, start_dim=8)
    points = torch.rand(6, 2) * 2 - 1

    for model, width in ((madgan_head, 4), (classifier, 3)):
        probs = model(points)
        assert probs.shape == (6, width)
        torch.testing.assert_close(probs.sum(dim=1), torch.ones(6))


def test_conditional_generator_uses_code() -> None:
    torch.manual_seed(0)
    generator = build_conditional_generator("g", latent_dim=4, code_dim=3, layers=1, start_dim=8)
    z = torch.randn(1, 4).repeat(3, 1)
    codes = torch.eye(3)

    fake = generator(z, codes)

    assert fake.shape == (3, 2)
    assert not torch.allclose(fake[0], fake[1])
    assert "latent_embed.bias" not in generator.parameter_shapes()


def test_sub_models_start_frozen_and_toggle() -> None:
    model = build_generator("g", latent_dim=2, layers=1, start_dim=4)
    assert model.trainable is False
    model.trainable = True
    assert all(p.requires_grad for p in model.module.parameters())
    model.trainable = False
    assert not any(p.requires_grad for p in model.module.parameters())


def test_reinitialize_keeps_shapes_and_clears_optimizer() -> None:
    torch.manual_seed(1)
    model = build_discriminator("d", layers=1, start_dim=8)
    shapes = model.parameter_shapes()
    model.trainable = True
    loss = model.logits(torch.randn(4, 2)).pow(2).mean()
    loss.backward()
    model.step()
    assert model.optimizer.state
    before = model.weight_snapshot()

    model.reinitialize()

    assert model.parameter_shapes() == shapes
    assert not model.optimizer.state
    after = model.weight_snapshot()
    for key in before:
        assert not torch.equal(before[key], after[key]), key


def test_construction_zeroes_biases_and_reset_redraws_them() -> None:
    torch.manual_seed(2)
    model = build_generator("g", latent_dim=3, layers=2, start_dim=8)
    fresh = model.weight_snapshot()
    biases = [key for key in fresh if key.endswith("bias")]
    assert biases
    assert all(torch.count_nonzero(fresh[key]) == 0 for key in biases)

    model.reinitialize()

    redrawn = model.weight_snapshot()
    for key in fresh:
        assert not torch.equal(fresh[key], redrawn[key]), key
    assert redrawn["body.0.bias"].std() > 0


@pytest.mark.parametrize(
    "kind, generators, discriminators, has_classifier",
    [
        ("vanilla", 1, 1, False),
        ("infogan", 1, 1, True),
        ("dopanet", 3, 3, True),
        ("madgan", 3, 1, False),
    ],
)
def test_build_ensemble_layouts(tiny_network, kind, generators, discriminators, has_classifier) -> None:
    ensemble = build_ensemble(kind, kind, tiny_network(kind))

    assert len(ensemble.generators) == generators
    assert len(ensemble.discriminators) == discriminators
    assert (ensemble.classifier is not None) is has_classifier
    assert not any(member.trainable for member in ensemble.members)


def test_madgan_discriminator_has_real_class(tiny_network) -> None:
    ensemble = build_ensemble("m", "madgan", tiny_network("madgan", code_dim=4))
    probs = ensemble.discriminators[0](torch.zeros(2, 2))
    assert probs.shape == (2, 5)


def test_build_ensemble_unknown_kind(tiny_network) -> None:
    with pytest.raises(KeyError):
        build_ensemble("x", "wgan", tiny_network("vanilla"))


def test_phase_scope_unfreezes_only_phase_members(tiny_network) -> None:
    ensemble = build_ensemble("i", "infogan", tiny_network("infogan"))

    with ensemble.phase_scope(Phase.DISCRIMINATOR) as trained:
        assert trained == ensemble.discriminators
        assert ensemble.discriminators[0].trainable
        assert not ensemble.generators[0].trainable
        assert not ensemble.classifier.trainable

    with ensemble.phase_scope(Phase.GENERATOR) as trained:
        assert set(m.name for m in trained) == {"generator", "q_network"}
        assert not ensemble.discriminators[0].trainable

    assert not any(member.trainable for member in ensemble.members)


def test_phase_scope_refreezes_after_error(tiny_network) -> None:
    ensemble = build_ensemble("v", "vanilla", tiny_network("vanilla"))
    with pytest.raises(RuntimeError):
        with ensemble.phase_scope(Phase.GENERATOR):
            raise RuntimeError("boom")
    assert not any(member.trainable for member in ensemble.members)


def test_ensemble_reset_logs_and_redraws(tiny_network, caplog: pytest.LogCaptureFixture) -> None:
    ensemble = build_ensemble("v", "vanilla", tiny_network("vanilla"))
    shapes = ensemble.parameter_shapes()
    before = ensemble.generators[0].weight_snapshot()["head.weight"]

    with caplog.at_level("INFO", logger=ensembles.LOG.name):
        ensemble.reset()

    assert ensemble.parameter_shapes() == shapes
    assert not torch.equal(before, ensemble.generators[0].weight_snapshot()["head.weight"])
    assert "reinitialized" in caplog.text
