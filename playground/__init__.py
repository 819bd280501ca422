"""
Interactive GAN playground.

Modules are structured to separate the painted sample source, the per-variant
training step engine, the cooperative training loop controller, and the
visualization bridge. See `session.py` for the control surface and `cli.py`
for the headless driver.
"""

from __future__ import annotations

from pathlib import Path

# Base directory convenient for locating bundled presets/templates.
PACKAGE_ROOT = Path(__file__).resolve().parent

__all__ = ["PACKAGE_ROOT"]
