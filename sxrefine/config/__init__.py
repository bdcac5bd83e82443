"""Config loading helpers for sxrefine."""

from .loader import clear_config_cache, get_config_bundle, get_config_dir
from .models import (
    ConfigBundle,
    GeometrySettings,
    PostRefinementSettings,
    PredictionSettings,
    RuntimeSettings,
    ScalingSettings,
)

__all__ = [
    "ConfigBundle",
    "GeometrySettings",
    "PostRefinementSettings",
    "PredictionSettings",
    "RuntimeSettings",
    "ScalingSettings",
    "clear_config_cache",
    "get_config_bundle",
    "get_config_dir",
]
