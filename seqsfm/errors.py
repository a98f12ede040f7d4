"""
Exception types raised by the sequential SfM pipeline.
"""

from __future__ import annotations

from enum import Enum


class SfMError(RuntimeError):
    """Base class for errors that stop a reconstruction run."""


class BootstrapError(SfMError):
    """No candidate pair produced a valid, sufficiently supported seed reconstruction."""


class BundleAdjustmentError(SfMError):
    """
    The optimizer failed to produce a finite, converged solution.

    The engine recovers by keeping the scene committed before the attempt.
    """


class ResectionFailure(str, Enum):
    MISSING_INTRINSIC = "missing_intrinsic"
    INSUFFICIENT = "insufficient_correspondences"
    DEGENERATE = "degenerate_geometry"
    TOO_FEW_INLIERS = "too_few_inliers"


class ResectionError(Exception):
    """
    Resection of a single view failed.

    This is recoverable: the view stays in the remaining set and may be
    retried once more structure connects to it.
    """

    def __init__(self, view_id: int, reason: ResectionFailure, detail: str = "") -> None:
        self.view_id = view_id
        self.reason = reason
        self.detail = detail
        message = f"view {view_id}: {reason.value}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


__all__ = [
    "SfMError",
    "BootstrapError",
    "BundleAdjustmentError",
    "ResectionFailure",
    "ResectionError",
]
