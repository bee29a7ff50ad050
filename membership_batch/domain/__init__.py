"""Pure types of the cancellation scheduler."""

from membership_batch.domain.types import (
    CancellationItemResult,
    CancellationOutcome,
    CancellationRunResult,
    DueCancellation,
)

__all__ = [
    "CancellationItemResult",
    "CancellationOutcome",
    "CancellationRunResult",
    "DueCancellation",
]
