"""
Headless driver for the GAN playground.

Usage:
    python -m playground.cli --variant madgan --iterations 200 --blob 0.5,0.5 --blob -0.5,-0.5
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytorch_lightning as pl
import yaml
from tqdm import tqdm

from . import PACKAGE_ROOT
from .config_schema import SessionConfig, load_session_config
from .session import Session
from .sinks import FrameDumpSink

LOG = logging.getLogger("playground.cli")

DEFAULT_BLOBS: List[Tuple[float, float]] = [(-0.5, -0.5), (0.5, 0.5)]


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _parse_set_overrides(values: Optional[List[str]]) -> Dict[str, object]:
    if not values:
        return {}
    overrides: Dict[str, object] = {}
    for item in values:
        if "=" not in item:
            raise ValueError(f"Override '{item}' must use KEY=VALUE format.")
        key, raw_value = item.split("=", 1)
        try:
            # Allow YAML parsing for convenience (numbers, booleans, lists)
            value = yaml.safe_load(raw_value)
        except yaml.YAMLError as exc:
            raise ValueError(f"Failed to parse override '{item}': {exc}") from exc
        overrides[key.strip()] = value
    return overrides


def _parse_blob(text: str) -> Tuple[float, float]:
    parts = text.split(",")
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(f"Blob '{text}' must be formatted as X,Y.")
    try:
        x, y = float(parts[0]), float(parts[1])
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Blob '{text}' must contain two numbers.") from exc
    if not (-1.0 <= x <= 1.0 and -1.0 <= y <= 1.0):
        raise argparse.ArgumentTypeError(f"Blob '{text}' must lie within [-1, 1].")
    return x, y


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Train a toy GAN on painted 2-D blobs and dump decision-surface frames.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to a session YAML file (built-in defaults when omitted).",
    )
    parser.add_argument(
        "--preset",
        action="append",
        dest="presets",
        help="Apply a named preset overlay (can be specified multiple times).",
    )
    parser.add_argument(
        "--set",
        action="append",
        dest="overrides",
        metavar="KEY=VALUE",
        help="Apply inline overrides using dotted paths, e.g., visualization.grid_size=20.",
    )
    parser.add_argument("--variant", type=str, default=None, help="Ensemble to train.")
    parser.add_argument("--iterations", type=int, default=200, help="Training iterations to run.")
    parser.add_argument(
        "--blob",
        action="append",
        dest="blobs",
        type=_parse_blob,
        metavar="X,Y",
        help="Paint a blob of points centred at X,Y (repeatable).",
    )
    parser.add_argument(
        "--strokes",
        type=int,
        default=20,
        help="Brush events painted per blob.",
    )
    parser.add_argument("--output", type=Path, default=Path("runs/latest"), help="Output directory.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for torch, numpy and the brush.")
    parser.add_argument("--no-frames", action="store_true", help="Skip PNG/GIF output.")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging.")
    parser.add_argument(
        "--list-presets",
        action="store_true",
        help="List available preset overlays and exit.",
    )
    return parser


def list_available_presets() -> None:
    presets_dir = PACKAGE_ROOT / "presets"
    print("Preset overlays:")
    for path in sorted(presets_dir.glob("*.yaml")):
        print(f"  - {path.stem}")


async def run_session(
    config: SessionConfig,
    *,
    iterations: int,
    blobs: List[Tuple[float, float]],
    strokes: int,
    sink: Optional[FrameDumpSink] = None,
    progress: bool = True,
) -> Dict[str, Any]:
    session = Session(config, sink=sink, max_iterations=iterations)
    for cx, cy in blobs:
        for _ in range(strokes):
            session.paint(cx, cy)
    handle = session.active_handle
    bar = tqdm(total=iterations, desc=f"train[{handle.name}]", unit="it", disable=not progress)
    handle.controller.add_record_listener(lambda record: bar.update(1))
    try:
        if not session.toggle_training():
            raise RuntimeError("Training did not start; no points were painted.")
        await handle.controller.wait()
    finally:
        bar.close()
        await session.shutdown()

    if handle.controller.last_error is not None:
        raise RuntimeError(f"Training of '{handle.name}' failed.") from handle.controller.last_error

    record = handle.controller.last_record
    return {
        "ensemble": handle.name,
        "kind": handle.ensemble.kind,
        "iterations": handle.engine.iteration,
        "points": len(session.source),
        "non_finite_events": handle.engine.non_finite_events,
        "final_losses": dict(record.losses) if record is not None else {},
        "skipped_models": list(record.skipped) if record is not None else [],
        "sink_dropped": handle.bridge.dropped,
    }


def _write_run_metadata(output: Path, config: SessionConfig, summary: Dict[str, Any]) -> Path:
    timestamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
    metadata = {
        "run_id": output.name,
        "created_at": timestamp,
        "config": config.describe(),
        **summary,
    }
    run_path = output / "run.json"
    run_path.write_text(json.dumps(metadata, indent=2))
    LOG.info("Run metadata written to %s", run_path)
    return run_path


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.list_presets:
        list_available_presets()
        return

    _setup_logging(args.verbose)
    overrides = _parse_set_overrides(args.overrides)
    if args.variant:
        overrides["active"] = args.variant
    if args.seed is not None:
        overrides["runtime.seed"] = args.seed

    config = load_session_config(args.config, extra_presets=args.presets, overrides=overrides)
    if config.runtime.seed is not None:
        pl.seed_everything(config.runtime.seed)

    output: Path = args.output
    output.mkdir(parents=True, exist_ok=True)
    sink = None if args.no_frames else FrameDumpSink(output)

    summary = asyncio.run(
        run_session(
            config,
            iterations=args.iterations,
            blobs=args.blobs or DEFAULT_BLOBS,
            strokes=args.strokes,
            sink=sink,
        )
    )
    if sink is not None:
        bundle = sink.close()
        summary["frames"] = len(bundle.frames)
        summary["animation"] = str(bundle.animated) if bundle.animated else None
    _write_run_metadata(output, config, summary)
    LOG.info("Playground run completed. Outputs stored in %s", output)


if __name__ == "__main__":
    main(sys.argv[1:])
