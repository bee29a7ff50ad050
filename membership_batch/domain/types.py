"""
membership_batch.domain.types -- Pure frozen dataclasses for scheduler runs.

ZERO I/O.  Frozen dataclasses with enum outcome fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from uuid import UUID


class CancellationOutcome(str, Enum):
    """Per-member outcome within one scheduler pass."""

    EXECUTED = "executed"  # Member moved to LEFT
    SKIPPED = "skipped"  # No longer due when its turn came (revoked, already left)
    FAILED = "failed"  # Error raised; transaction rolled back
    TIMED_OUT = "timed_out"  # Exceeded the per-item timeout; abandoned


@dataclass(frozen=True)
class DueCancellation:
    """A member whose notice period has expired, as found by the candidate query."""

    tenant_id: UUID
    member_id: UUID
    cancellation_date: date


@dataclass(frozen=True)
class CancellationItemResult:
    tenant_id: UUID
    member_id: UUID
    outcome: CancellationOutcome
    discarded_rows: int = 0
    error_code: str | None = None
    error_message: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class CancellationRunResult:
    """Immutable result of one ``CancellationScheduler.run_once()`` pass."""

    run_id: UUID
    as_of: date
    candidates: int
    item_results: tuple[CancellationItemResult, ...] = ()
    stopped_early: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0

    def _with(self, outcome: CancellationOutcome) -> tuple[CancellationItemResult, ...]:
        return tuple(r for r in self.item_results if r.outcome == outcome)

    @property
    def executed(self) -> tuple[UUID, ...]:
        return tuple(r.member_id for r in self._with(CancellationOutcome.EXECUTED))

    @property
    def skipped(self) -> tuple[UUID, ...]:
        return tuple(r.member_id for r in self._with(CancellationOutcome.SKIPPED))

    @property
    def failures(self) -> tuple[CancellationItemResult, ...]:
        return self._with(CancellationOutcome.FAILED) + self._with(CancellationOutcome.TIMED_OUT)
