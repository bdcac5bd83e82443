"""Geometry refinement, scaling and post-refinement for serial crystallography."""

__version__ = "0.1.0"
