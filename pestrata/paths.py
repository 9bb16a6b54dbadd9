"""Bundled resource locations.

@QK
"""

from __future__ import annotations

from pathlib import Path

PACKAGE_DIR = Path(__file__).resolve().parent
DATA_DIR = PACKAGE_DIR / "data"
DEFAULT_SIGNATURES_DIR = DATA_DIR / "signatures"
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "config" / "default.json"
TEMPLATES_DIR = PACKAGE_DIR / "templates"
