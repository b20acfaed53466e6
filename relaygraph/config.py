"""Configuration paths and layout constants for relaygraph."""

from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(os.environ.get("RELAYGRAPH_HOME", str(Path.home() / ".relaygraph"))).expanduser()
CONFIG_FILE = BASE_DIR / "config.toml"
CACHE_FILE_NAME = ".relay-cache.db"
COMPILE_COMMANDS = "compile_commands.json"

# Node card size used for layered coordinates
NODE_WIDTH = 180.0
NODE_HEIGHT = 100.0
LAYOUT_GAP_X = 60.0
LAYOUT_GAP_Y = 40.0

# Barycenter sweeps (down, up, down)
CROSSING_PASSES = 3

# Force-directed simulation
FORCE_ITERATIONS = 100
FORCE_DAMPING = 0.95
FORCE_REPULSION = 5000.0
FORCE_ATTRACTION = 0.01
FORCE_SPREAD = 50.0

OBJDUMP = os.environ.get("RELAYGRAPH_OBJDUMP", "llvm-objdump")

SOURCE_EXTENSIONS = {
    ".c": "c",
    ".h": "cpp",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".hh": "cpp",
    ".hpp": "cpp",
    ".hxx": "cpp",
    ".inl": "cpp",
    ".cs": "c_sharp",
}


def ensure_base_dirs() -> None:
    """Create the base directory for user configuration if needed."""
    BASE_DIR.mkdir(parents=True, exist_ok=True)
