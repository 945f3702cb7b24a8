"""YAML configuration loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a YAML file and return its content as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    log.debug("Loaded config %s (%d top-level keys)", p.name, len(data or {}))
    return data or {}


def load_optional_yaml(path: str | Path) -> dict[str, Any]:
    """Like :func:`load_yaml` but an absent file yields an empty dict."""
    p = Path(path)
    if not p.exists():
        log.info("Optional config %s absent, using defaults", p)
        return {}
    return load_yaml(p)
