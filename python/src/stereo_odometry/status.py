"""Call-level status codes shared by the depth estimator, the pose solver and the driver."""

from __future__ import annotations

from enum import StrEnum


class Status(StrEnum):
    OK = "ok"
    INPUT_ERROR = "input_error"              # malformed, empty or size-mismatched input
    INSUFFICIENT_DATA = "insufficient_data"  # too few valid correspondences to track
    NUMERICAL_ERROR = "numerical_error"      # normal equations unsolvable even at max damping
    CONVERGENCE_FAILURE = "convergence_failure"  # soft: budget exhausted, estimate still returned

    @property
    def is_failure(self) -> bool:
        return self in (Status.INPUT_ERROR, Status.INSUFFICIENT_DATA, Status.NUMERICAL_ERROR)
