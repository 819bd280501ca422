"""
Configuration schema and loader utilities for the GAN playground.

Configurations are YAML files mapped onto dataclasses with manual validation.
Partial overlays stored under `playground/presets` can be merged on top of a
session file, and individual keys can be overridden with dotted paths.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

import copy
import json

import yaml

from . import PACKAGE_ROOT

VARIANT_KINDS = ("vanilla", "infogan", "dopanet", "madgan")


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class NetworkConfig:
    """Architecture and optimizer settings of one GAN variant."""

    kind: str = "vanilla"
    latent_dim: int = 100
    code_dim: int = 3
    gen_layers: int = 1
    gen_start_dim: int = 1024
    disc_layers: int = 1
    disc_start_dim: int = 1024
    batch_size: int = 64
    generator_lr: float = 1e-4
    discriminator_lr: float = 5e-4
    generator_betas: Tuple[float, float] = (0.5, 0.5)
    discriminator_betas: Tuple[float, float] = (0.9, 0.999)
    q_weight: float = 1.0
    latent_norm: float = 0.25

    def validate(self, name: str) -> None:
        if self.kind not in VARIANT_KINDS:
            raise ValueError(f"variants.{name}.kind must be one of {list(VARIANT_KINDS)}.")
        for key in ("latent_dim", "gen_start_dim", "disc_start_dim", "batch_size"):
            if getattr(self, key) <= 0:
                raise ValueError(f"variants.{name}.{key} must be > 0.")
        if self.gen_layers < 0 or self.disc_layers < 0:
            raise ValueError(f"variants.{name}: layer counts must be >= 0.")
        if self.disc_start_dim // 2 ** max(0, self.disc_layers - 1) < 1:
            raise ValueError(f"variants.{name}.disc_start_dim is too small for {self.disc_layers} layers.")
        if self.kind != "vanilla" and self.code_dim < 2:
            raise ValueError(f"variants.{name}.code_dim must be >= 2 for '{self.kind}'.")
        if self.generator_lr <= 0 or self.discriminator_lr <= 0:
            raise ValueError(f"variants.{name}: learning rates must be > 0.")
        for key in ("generator_betas", "discriminator_betas"):
            betas = getattr(self, key)
            if len(betas) != 2 or not all(0.0 <= b < 1.0 for b in betas):
                raise ValueError(f"variants.{name}.{key} must be two values within [0, 1).")
        if self.q_weight < 0:
            raise ValueError(f"variants.{name}.q_weight must be >= 0.")
        if self.latent_norm <= 0:
            raise ValueError(f"variants.{name}.latent_norm must be > 0.")


def default_variants() -> Dict[str, NetworkConfig]:
    return {
        "vanilla": NetworkConfig(
            kind="vanilla",
            latent_dim=100,
            gen_layers=1,
            gen_start_dim=1024,
            disc_layers=1,
            disc_start_dim=1024,
            batch_size=64,
        ),
        "infogan": NetworkConfig(
            kind="infogan",
            latent_dim=100,
            code_dim=3,
            gen_layers=0,
            gen_start_dim=512,
            disc_layers=1,
            disc_start_dim=512,
            batch_size=64,
            q_weight=1.0,
            latent_norm=0.25,
        ),
        "dopanet": NetworkConfig(
            kind="dopanet",
            latent_dim=10,
            code_dim=3,
            gen_layers=1,
            gen_start_dim=512,
            disc_layers=1,
            disc_start_dim=512,
            batch_size=16,
            generator_lr=2e-4,
            discriminator_lr=5e-4,
            generator_betas=(0.9, 0.999),
            q_weight=0.1,
        ),
        "madgan": NetworkConfig(
            kind="madgan",
            latent_dim=10,
            code_dim=3,
            gen_layers=0,
            gen_start_dim=256,
            disc_layers=1,
            disc_start_dim=256,
            batch_size=16,
            generator_lr=1e-4,
            discriminator_lr=1e-3,
            generator_betas=(0.9, 0.999),
        ),
    }


@dataclass(slots=True)
class VisualizationConfig:
    grid_size: int = 15
    surface_every: int = 1
    sink_timeout: float = 1.0

    def validate(self) -> None:
        if self.grid_size < 2:
            raise ValueError("visualization.grid_size must be >= 2.")
        if self.surface_every < 1:
            raise ValueError("visualization.surface_every must be >= 1.")
        if self.sink_timeout <= 0:
            raise ValueError("visualization.sink_timeout must be > 0.")


@dataclass(slots=True)
class BrushConfig:
    spread: float = 0.1
    points_per_event: int = 10

    def validate(self) -> None:
        if self.spread < 0:
            raise ValueError("brush.spread must be >= 0.")
        if self.points_per_event < 1:
            raise ValueError("brush.points_per_event must be >= 1.")


@dataclass(slots=True)
class RuntimeConfig:
    seed: Optional[int] = None
    device: str = "cpu"
    yield_every_phase: bool = True

    def validate(self) -> None:
        allowed = {"cuda", "cpu"}
        if self.device.lower() not in allowed:
            raise ValueError(f"runtime.device must be one of {sorted(allowed)}.")
        if self.seed is not None and not isinstance(self.seed, int):
            raise TypeError("runtime.seed must be an integer.")


@dataclass(slots=True)
class SessionConfig:
    active: str = "vanilla"
    variants: Dict[str, NetworkConfig] = field(default_factory=default_variants)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    brush: BrushConfig = field(default_factory=BrushConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        if not self.variants:
            raise ValueError("At least one variant entry is required.")
        if self.active not in self.variants:
            raise ValueError(
                f"active variant '{self.active}' is not defined. Available: {sorted(self.variants)}"
            )
        for name, variant in self.variants.items():
            variant.validate(name)
        self.visualization.validate()
        self.brush.validate()
        self.runtime.validate()

    def describe(self) -> Dict[str, Any]:
        """Return a JSON-serializable summary (useful for logging)."""
        return {
            "active": self.active,
            "variants": {
                name: {**asdict(variant), "generator_betas": list(variant.generator_betas),
                       "discriminator_betas": list(variant.discriminator_betas)}
                for name, variant in self.variants.items()
            },
            "visualization": asdict(self.visualization),
            "brush": asdict(self.brush),
            "runtime": asdict(self.runtime),
            "metadata": self.metadata,
        }

    def to_json(self) -> str:
        return json.dumps(self.describe(), indent=2)


# ---------------------------------------------------------------------------
# Loading utilities
# ---------------------------------------------------------------------------


def _load_yaml_file(path: Path) -> Mapping[str, Any]:
    raw = yaml.safe_load(path.read_text())
    if raw is None:
        raise ValueError(f"Configuration file '{path}' is empty.")
    if not isinstance(raw, Mapping):
        raise TypeError(f"Configuration '{path}' must be a mapping at top level.")
    return raw


def _deep_update(base: MutableMapping[str, Any], overlay: Mapping[str, Any]) -> None:
    for key, value in overlay.items():
        if (
            isinstance(value, Mapping)
            and key in base
            and isinstance(base[key], MutableMapping)
        ):
            _deep_update(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def load_preset_dict(name: str) -> Mapping[str, Any]:
    """Load a preset overlay by name."""
    preset_path = PACKAGE_ROOT / "presets" / f"{name}.yaml"
    if not preset_path.exists():
        available = sorted(p.stem for p in (PACKAGE_ROOT / "presets").glob("*.yaml"))
        raise FileNotFoundError(
            f"Preset '{name}' not found. Available presets: {', '.join(available)}"
        )
    return _load_yaml_file(preset_path)


def apply_presets(
    base_config: MutableMapping[str, Any], preset_names: Iterable[str]
) -> MutableMapping[str, Any]:
    """Apply one or more preset overlays to the base config mapping."""
    for name in preset_names:
        overlay = load_preset_dict(name)
        _deep_update(base_config, overlay)
    return base_config


def apply_overrides(mapping: MutableMapping[str, Any], overrides: Mapping[str, Any]) -> None:
    """Set dotted keys such as ``visualization.grid_size`` on a raw mapping."""
    for dotted_key, value in overrides.items():
        parts = dotted_key.split(".")
        cursor: MutableMapping[str, Any] = mapping
        for part in parts[:-1]:
            if part not in cursor or not isinstance(cursor[part], MutableMapping):
                cursor[part] = {}
            cursor = cursor[part]  # type: ignore[assignment]
        cursor[parts[-1]] = value


def _pair(value: Any, fallback: Tuple[float, float]) -> Tuple[float, float]:
    if value is None:
        return fallback
    items = list(value)
    if len(items) != 2:
        raise ValueError(f"Expected two values, got {items}.")
    return float(items[0]), float(items[1])


def _parse_variant(name: str, entry: Mapping[str, Any]) -> NetworkConfig:
    kind = str(entry.get("kind", name))
    base = default_variants().get(kind, NetworkConfig(kind=kind))
    return NetworkConfig(
        kind=kind,
        latent_dim=int(entry.get("latent_dim", base.latent_dim)),
        code_dim=int(entry.get("code_dim", base.code_dim)),
        gen_layers=int(entry.get("gen_layers", base.gen_layers)),
        gen_start_dim=int(entry.get("gen_start_dim", base.gen_start_dim)),
        disc_layers=int(entry.get("disc_layers", base.disc_layers)),
        disc_start_dim=int(entry.get("disc_start_dim", base.disc_start_dim)),
        batch_size=int(entry.get("batch_size", base.batch_size)),
        generator_lr=float(entry.get("generator_lr", base.generator_lr)),
        discriminator_lr=float(entry.get("discriminator_lr", base.discriminator_lr)),
        generator_betas=_pair(entry.get("generator_betas"), base.generator_betas),
        discriminator_betas=_pair(entry.get("discriminator_betas"), base.discriminator_betas),
        q_weight=float(entry.get("q_weight", base.q_weight)),
        latent_norm=float(entry.get("latent_norm", base.latent_norm)),
    )


def _parse_config_mapping(mapping: Mapping[str, Any]) -> SessionConfig:
    variants_cfg = mapping.get("variants")
    if variants_cfg is None:
        variants = default_variants()
    else:
        if not isinstance(variants_cfg, Mapping):
            raise TypeError("variants must be a mapping of name -> settings.")
        variants = default_variants()
        for name, entry in variants_cfg.items():
            variants[str(name)] = _parse_variant(str(name), entry or {})

    vis_cfg = mapping.get("visualization") or {}
    brush_cfg = mapping.get("brush") or {}
    runtime_cfg = mapping.get("runtime") or {}
    seed = runtime_cfg.get("seed")

    config = SessionConfig(
        active=str(mapping.get("active", "vanilla")),
        variants=variants,
        visualization=VisualizationConfig(
            grid_size=int(vis_cfg.get("grid_size", 15)),
            surface_every=int(vis_cfg.get("surface_every", 1)),
            sink_timeout=float(vis_cfg.get("sink_timeout", 1.0)),
        ),
        brush=BrushConfig(
            spread=float(brush_cfg.get("spread", 0.1)),
            points_per_event=int(brush_cfg.get("points_per_event", 10)),
        ),
        runtime=RuntimeConfig(
            seed=int(seed) if seed is not None else None,
            device=str(runtime_cfg.get("device", "cpu")).lower(),
            yield_every_phase=bool(runtime_cfg.get("yield_every_phase", True)),
        ),
        metadata=dict(mapping.get("metadata") or {}),
    )
    config.validate()
    return config


def load_session_config(
    config_path: Optional[Path] = None,
    *,
    extra_presets: Optional[Sequence[str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> SessionConfig:
    """
    Load a session YAML file, optionally applying preset overlays and overrides.

    Parameters
    ----------
    config_path:
        Path to the YAML configuration file. When None, the built-in defaults
        are used as the base mapping.
    extra_presets:
        Optional sequence of preset names (without `.yaml`) to overlay on top
        of the base configuration.
    overrides:
        Optional mapping of dotted key paths to values, e.g.
        ``{"variants.madgan.batch_size": 32}``.
    """

    raw_mapping: Dict[str, Any] = {}
    if config_path is not None:
        config_path = Path(config_path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file '{config_path}' does not exist.")
        raw_mapping = dict(_load_yaml_file(config_path))

    if extra_presets:
        apply_presets(raw_mapping, extra_presets)

    if overrides:
        apply_overrides(raw_mapping, overrides)

    return _parse_config_mapping(raw_mapping)


def write_config_template(path: Path) -> None:
    """Write the default session.yaml template to `path`."""
    template_path = PACKAGE_ROOT / "templates" / "session.yaml"
    if not template_path.exists():
        raise FileNotFoundError("Bundled session.yaml template is missing.")
    path.write_text(template_path.read_text())
