"""TOML-backed settings for layout and analysis."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from . import config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayoutSettings:
    node_width: float = config.NODE_WIDTH
    node_height: float = config.NODE_HEIGHT
    gap_x: float = config.LAYOUT_GAP_X
    gap_y: float = config.LAYOUT_GAP_Y
    crossing_passes: int = config.CROSSING_PASSES
    iterations: int = config.FORCE_ITERATIONS
    damping: float = config.FORCE_DAMPING
    repulsion: float = config.FORCE_REPULSION
    attraction: float = config.FORCE_ATTRACTION
    spread: float = config.FORCE_SPREAD

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_full_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the entire TOML config (all sections).

    A missing or unreadable file yields an empty mapping.
    """
    config_file = path or config.CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", config_file, exc)
        return {}


def load_layout_settings(path: Optional[Path] = None) -> LayoutSettings:
    """Merge the ``[layout]`` section over the built-in defaults."""
    section = load_full_config(path).get("layout", {})
    known = {f.name for f in fields(LayoutSettings)}
    overrides: Dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("Unknown [layout] setting '%s' ignored", key)
            continue
        default = getattr(LayoutSettings, key)
        try:
            overrides[key] = type(default)(value)
        except (TypeError, ValueError):
            logger.warning("Invalid value for [layout] %s: %r", key, value)
    return LayoutSettings(**overrides)


def load_analysis_settings(path: Optional[Path] = None) -> Dict[str, Any]:
    """Return the ``[analysis]`` section with defaults filled in.

    Keys: ``extra_flags`` (list of compiler flags), ``include_warnings``,
    ``objdump`` (disassembler executable).
    """
    section = load_full_config(path).get("analysis", {})
    return {
        "extra_flags": list(section.get("extra_flags", [])),
        "include_warnings": bool(section.get("include_warnings", False)),
        "objdump": str(section.get("objdump", config.OBJDUMP)),
    }


def save_layout_settings(settings: LayoutSettings, path: Optional[Path] = None) -> bool:
    """Write the ``[layout]`` section, preserving other sections."""
    config_file = path or config.CONFIG_FILE
    full = load_full_config(config_file)
    full["layout"] = settings.as_dict()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(config_file, "w", encoding="utf-8") as f:
            toml.dump(full, f)
        return True
    except OSError as exc:
        logger.warning("Could not write config %s: %s", config_file, exc)
        return False
