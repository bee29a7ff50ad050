"""Background services of membership_batch."""

from membership_batch.services.cancellation_scheduler import CancellationScheduler

__all__ = ["CancellationScheduler"]
