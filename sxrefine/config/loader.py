"""Load sxrefine configuration files from disk."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml

from .models import (
    ConfigBundle,
    GeometrySettings,
    PostRefinementSettings,
    PredictionSettings,
    RuntimeSettings,
    ScalingSettings,
)
from .validation import build_settings, ensure_mapping

ENV_CONFIG_DIR = "SXREFINE_CONFIG_DIR"
CONFIG_FILE = "refinement.yaml"

_SECTIONS = {
    "prediction": PredictionSettings,
    "geometry": GeometrySettings,
    "scaling": ScalingSettings,
    "post_refinement": PostRefinementSettings,
    "runtime": RuntimeSettings,
}


def get_config_dir() -> Path:
    """Return the active configuration directory.

    Order of precedence:
    1. ``SXREFINE_CONFIG_DIR`` environment variable when set.
    2. Repository-local ``config/`` directory.
    """

    env_path = os.environ.get(ENV_CONFIG_DIR)
    if env_path:
        return Path(os.path.expanduser(env_path)).resolve()
    return Path(__file__).resolve().parents[2] / "config"


def _read_data_file(path: Path) -> dict[str, Any]:
    """Load a YAML/JSON mapping from *path*.

    Missing files return an empty mapping.
    """

    if not path.exists():
        return {}
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text)
    if data is None:
        return {}
    if isinstance(data, dict):
        return data

    # Support JSON files with stricter parser error messages when needed.
    if path.suffix.lower() == ".json":
        parsed = json.loads(text)
        return ensure_mapping(parsed, name=str(path))
    raise TypeError(f"{path} must contain a mapping at top level")


def _load_from_dir(config_dir: Path) -> ConfigBundle:
    raw = ensure_mapping(_read_data_file(config_dir / CONFIG_FILE), name=CONFIG_FILE)
    unknown = sorted(set(raw) - set(_SECTIONS))
    if unknown:
        raise KeyError(f"Unknown sections in {CONFIG_FILE}: {', '.join(unknown)}")
    sections = {
        key: build_settings(cls, raw.get(key), name=f"{CONFIG_FILE}:{key}")
        for key, cls in _SECTIONS.items()
    }
    return ConfigBundle(config_dir=config_dir, **sections)


_BUNDLE_CACHE: dict[Path, ConfigBundle] = {}


def clear_config_cache() -> None:
    """Clear cached configuration bundles."""

    _BUNDLE_CACHE.clear()


def get_config_bundle(config_dir: Path | None = None) -> ConfigBundle:
    """Return the active cached configuration bundle."""

    resolved_dir = (config_dir or get_config_dir()).resolve()
    bundle = _BUNDLE_CACHE.get(resolved_dir)
    if bundle is None:
        bundle = _load_from_dir(resolved_dir)
        _BUNDLE_CACHE[resolved_dir] = bundle
    return bundle
