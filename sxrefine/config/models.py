"""Typed containers for parsed configuration files."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class PredictionSettings:
    max_resolution: float = 1.0e10  # m^-1
    profile_cutoff: float = 0.005e9  # m^-1
    front_cutoff: float = 0.005e9  # m^-1
    max_candidates: int = 256 * 256


@dataclass(frozen=True)
class GeometrySettings:
    max_cycles: int = 10
    exc_weight: float = 4e-20  # excitation term (m^-1) relative to position term (m)
    min_pairs: int = 10
    min_radius_pairs: int = 3
    detector_damping: float = 10.0
    lattice_damping: float = 1e-18
    max_index: int = 512
    outlier_intercept: float = 0.001e9
    mismatch_divisor: float = 3.0


@dataclass(frozen=True)
class ScalingSettings:
    max_cycles: int = 10
    max_macrocycles: int = 10
    tolerance: float = 0.01
    min_redundancy: int = 2
    min_snr: float = 3.0


@dataclass(frozen=True)
class PostRefinementSettings:
    max_iterations: int = 30
    size_tolerance: float = 1e-3  # degrees
    initial_step_deg: float = 0.01
    min_reflections: int = 3
    min_redundancy: int = 2


@dataclass(frozen=True)
class RuntimeSettings:
    n_threads: int = 1
    log_level: str = "INFO"


@dataclass(frozen=True)
class ConfigBundle:
    """In-memory representation of the project configuration."""

    config_dir: Path
    prediction: PredictionSettings = field(default_factory=PredictionSettings)
    geometry: GeometrySettings = field(default_factory=GeometrySettings)
    scaling: ScalingSettings = field(default_factory=ScalingSettings)
    post_refinement: PostRefinementSettings = field(default_factory=PostRefinementSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
