"""Exception types and failure reasons shared by the refinement stages."""

from __future__ import annotations

from enum import Enum


class FailureReason(str, Enum):
    """Why a per-crystal refinement call gave up."""

    INSUFFICIENT_PAIRS = "insufficient pairs"
    NO_POSITIVE_PEAKS = "no positive peak intensities"
    SOLVE_FAILURE = "least-squares solve failed"
    FEW_REFLECTIONS = "not enough reflections"


class RefinementError(Exception):
    """Base class for errors raised by the refinement machinery."""


class InsufficientPairs(RefinementError):
    """Fewer matched reflections than a stage requires."""

    def __init__(self, n_pairs: int, required: int):
        super().__init__(f"{n_pairs} pairs found, {required} required")
        self.n_pairs = n_pairs
        self.required = required


class SolveFailure(RefinementError):
    """The normal equations could not be solved."""


class GlobalNonConvergence(RefinementError):
    """A macrocycle loop ran out of iterations before converging."""


class HarnessError(RefinementError, ValueError):
    """Precondition violation at the worker-pool boundary."""
