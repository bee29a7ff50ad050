"""
membership_kernel.domain.dtos -- Immutable snapshots returned by services.

Services never hand ORM instances to callers: every public operation
returns one of these frozen dataclasses (built by the model's
``to_dto()``), so results stay valid after the session closes and cannot
be mutated behind the lifecycle service's back.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from membership_kernel.domain.member_status import LeftCategory, MemberStatus


@dataclass(frozen=True)
class MemberInfo:
    member_id: UUID
    tenant_id: UUID
    member_number: str
    first_name: str
    last_name: str
    status: MemberStatus
    version: int
    cancellation_date: date | None = None
    cancellation_received_at: date | None = None
    status_changed_at: datetime | None = None
    status_changed_by_id: UUID | None = None
    status_change_reason: str | None = None
    deleted_at: datetime | None = None

    @property
    def has_pending_cancellation(self) -> bool:
        return self.cancellation_date is not None


@dataclass(frozen=True)
class StatusTransitionInfo:
    transition_id: UUID
    tenant_id: UUID
    member_id: UUID
    from_status: MemberStatus
    to_status: MemberStatus
    effective_date: date
    reason: str
    actor_id: UUID
    seq: int
    left_category: LeftCategory | None = None
    created_at: datetime | None = None

    @property
    def is_status_change(self) -> bool:
        """False for same-status audit rows (cancellation notices, revocations)."""
        return self.from_status != self.to_status


@dataclass(frozen=True)
class MembershipPeriodInfo:
    period_id: UUID
    tenant_id: UUID
    member_id: UUID
    join_date: date
    leave_date: date | None = None
    membership_type_id: UUID | None = None
    notes: str | None = None

    @property
    def is_open(self) -> bool:
        return self.leave_date is None


@dataclass(frozen=True)
class StatusChangePreview:
    """What ``change_status`` would do, computed without writing anything."""

    member_id: UUID
    from_status: MemberStatus
    to_status: MemberStatus
    effective_date: date
    left_category: LeftCategory | None = None
    closes_period_id: UUID | None = None
    period_leave_date: date | None = None
    opens_period: bool = False
    period_join_date: date | None = None


@dataclass(frozen=True)
class SkippedMember:
    member_id: UUID
    reason: str
    code: str


@dataclass(frozen=True)
class BulkStatusChangeResult:
    updated: tuple[UUID, ...] = ()
    skipped: tuple[SkippedMember, ...] = ()

    @property
    def total(self) -> int:
        return len(self.updated) + len(self.skipped)


@dataclass(frozen=True)
class SequenceCounterInfo:
    counter_id: UUID
    tenant_id: UUID
    entity_type: str
    prefix: str
    pad_length: int
    current_value: int
    year_reset: bool
    updated_at: datetime | None = None
