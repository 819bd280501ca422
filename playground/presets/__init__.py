"""
Bundled preset overlays for the session configuration.

Each `.yaml` file provides a partial configuration tree that can be merged with
`session.yaml`. See `playground/config_schema.apply_presets` for merge logic.
"""

from __future__ import annotations

__all__ = []
