"""Small fully-connected GAN components for 2-D point clouds."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import torch
from torch import nn


def generator_widths(layers: int, start_dim: int) -> List[int]:
    """Hidden widths for a generator: doubling from the latent embedding."""

    return [start_dim * 2**i for i in range(max(1, layers))]


def discriminator_widths(layers: int, start_dim: int) -> List[int]:
    """Hidden widths for a discriminator or classifier: halving toward the head."""

    widths = [start_dim // 2**i for i in range(max(1, layers))]
    if widths[-1] < 1:
        raise ValueError(f"start_dim={start_dim} is too small for {layers} halving layers.")
    return widths


def _mlp(in_features: int, widths: Sequence[int]) -> Tuple[nn.Sequential, int]:
    blocks: List[nn.Module] = []
    prev = in_features
    for width in widths:
        blocks.append(nn.Linear(prev, width))
        blocks.append(nn.ReLU())
        prev = width
    return nn.Sequential(*blocks), prev


def glorot_normal_(module: nn.Module, *, redraw_biases: bool = False) -> None:
    """Redraw every linear weight from Glorot normal, in place.

    Biases are zeroed unless ``redraw_biases`` is set, in which case a bias of
    length n is drawn from N(0, 1/n), Glorot normal with fan_in = fan_out = n.
    """

    for layer in module.modules():
        if isinstance(layer, nn.Linear):
            with torch.no_grad():
                nn.init.xavier_normal_(layer.weight)
                if layer.bias is None:
                    continue
                if redraw_biases:
                    layer.bias.normal_(0.0, math.sqrt(1.0 / layer.bias.numel()))
                else:
                    layer.bias.zero_()


class MLPBackbone(nn.Module):
    """Dense stack mapping inputs to raw head activations."""

    def __init__(self, in_features: int, widths: Sequence[int], out_features: int) -> None:
        super().__init__()
        self.body, hidden = _mlp(in_features, widths)
        self.head = nn.Linear(hidden, out_features)

    def forward(self, x: torch.Tensor) -> torch.Tensor:  # type: ignore[override]
        return self.head(self.body(x))


class ConditionalBackbone(nn.Module):
    """Generator body for (noise, one-hot code) inputs.

    The two inputs are embedded separately without bias. The noise embedding is
    scaled by ``latent_norm`` before the sum so it does not drown out the code.
    """

    def __init__(
        self,
        latent_dim: int,
        code_dim: int,
        widths: Sequence[int],
        *,
        latent_norm: float = 0.25,
    ) -> None:
        super().__init__()
        self.latent_norm = latent_norm
        self.latent_embed = nn.Linear(latent_dim, widths[0], bias=False)
        self.code_embed = nn.Linear(code_dim, widths[0], bias=False)
        self.act = nn.ReLU()
        self.body, hidden = _mlp(widths[0], widths[1:])
        self.head = nn.Linear(hidden, 2)

    def forward(self, z: torch.Tensor, code: torch.Tensor) -> torch.Tensor:  # type: ignore[override]
        h = self.latent_embed(z) * self.latent_norm + self.code_embed(code)
        h = self.body(self.act(h))
        return self.head(h)


@dataclass
class OptimizerSpec:
    lr: float = 1e-4
    betas: Tuple[float, float] = (0.9, 0.999)


class SubModel:
    """One trainable function approximator of an ensemble.

    Wraps a module together with its output activation and its own Adam
    optimizer. ``forward`` returns activated outputs (probabilities for the
    discriminators and classifiers); ``logits`` exposes the pre-activation used
    by the losses.
    """

    def __init__(
        self,
        name: str,
        role: str,
        module: nn.Module,
        *,
        activation: str = "linear",
        optimizer: Optional[OptimizerSpec] = None,
    ) -> None:
        if activation not in {"linear", "sigmoid", "softmax"}:
            raise ValueError(f"Unsupported output activation '{activation}'.")
        self.name = name
        self.role = role
        self.module = module
        self.activation = activation
        glorot_normal_(self.module)
        spec = optimizer or OptimizerSpec()
        self.optimizer = torch.optim.Adam(self.module.parameters(), lr=spec.lr, betas=spec.betas)
        self.trainable = False

    def __repr__(self) -> str:
        return f"SubModel(name={self.name!r}, role={self.role!r}, trainable={self.trainable})"

    # ------------------------------------------------------------------ #
    # Forward contract
    # ------------------------------------------------------------------ #

    def logits(self, *inputs: torch.Tensor) -> torch.Tensor:
        return self.module(*inputs)

    def forward(self, *inputs: torch.Tensor) -> torch.Tensor:
        out = self.logits(*inputs)
        if self.activation == "sigmoid":
            return torch.sigmoid(out)
        if self.activation == "softmax":
            return torch.softmax(out, dim=1)
        return out

    __call__ = forward

    # ------------------------------------------------------------------ #
    # Training state
    # ------------------------------------------------------------------ #

    @property
    def trainable(self) -> bool:
        return any(p.requires_grad for p in self.module.parameters())

    @trainable.setter
    def trainable(self, value: bool) -> None:
        self.module.requires_grad_(bool(value))

    def zero_grad(self) -> None:
        self.optimizer.zero_grad(set_to_none=True)

    def step(self) -> None:
        self.optimizer.step()

    def reinitialize(self) -> None:
        """Redraw every weight and bias tensor in place and drop the Adam moments."""
        glorot_normal_(self.module, redraw_biases=True)
        self.optimizer.state.clear()
        self.zero_grad()

    def parameter_shapes(self) -> Dict[str, Tuple[int, ...]]:
        return {name: tuple(param.shape) for name, param in self.module.named_parameters()}

    def weight_snapshot(self) -> Dict[str, torch.Tensor]:
        return {name: param.detach().clone() for name, param in self.module.named_parameters()}

    def to(self, device: torch.device) -> "SubModel":
        self.module.to(device)
        return self


def build_generator(
    name: str,
    *,
    latent_dim: int,
    layers: int,
    start_dim: int,
    optimizer: Optional[OptimizerSpec] = None,
) -> SubModel:
    backbone = MLPBackbone(latent_dim, generator_widths(layers, start_dim), 2)
    return SubModel(name, "generator", backbone, activation="linear", optimizer=optimizer)


def build_conditional_generator(
    name: str,
    *,
    latent_dim: int,
    code_dim: int,
    layers: int,
    start_dim: int,
    latent_norm: float = 0.25,
    optimizer: Optional[OptimizerSpec] = None,
) -> SubModel:
    backbone = ConditionalBackbone(
        latent_dim,
        code_dim,
        generator_widths(layers, start_dim),
        latent_norm=latent_norm,
    )
    return SubModel(name, "generator", backbone, activation="linear", optimizer=optimizer)


def build_discriminator(
    name: str,
    *,
    layers: int,
    start_dim: int,
    num_classes: Optional[int] = None,
    optimizer: Optional[OptimizerSpec] = None,
) -> SubModel:
    """Binary real/fake head when ``num_classes`` is None, else a softmax head."""

    widths = discriminator_widths(layers, start_dim)
    if num_classes is None:
        return SubModel(name, "discriminator", MLPBackbone(2, widths, 1), activation="sigmoid", optimizer=optimizer)
    return SubModel(
        name,
        "discriminator",
        MLPBackbone(2, widths, num_classes),
        activation="softmax",
        optimizer=optimizer,
    )


def build_classifier(
    name: str,
    *,
    code_dim: int,
    layers: int,
    start_dim: int,
    optimizer: Optional[OptimizerSpec] = None,
) -> SubModel:
    backbone = MLPBackbone(2, discriminator_widths(layers, start_dim), code_dim)
    return SubModel(name, "classifier", backbone, activation="softmax", optimizer=optimizer)
