"""Pairing, least-squares refinement, scaling and the worker harness."""
