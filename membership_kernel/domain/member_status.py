"""
Member status policy -- the membership state machine.

Responsibility:
    Defines the member statuses, the table of legal transitions and the
    side effects a transition implies.  ``is_valid`` and
    ``plan_status_change`` are the single source of truth consulted by
    interactive requests, the bulk endpoint, previews and the cancellation
    scheduler alike.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Services gather the
    inputs (current status, open period) and execute the returned plan.

State machine:
    PENDING    -> ACTIVE, LEFT
    PROBATION  -> ACTIVE, DORMANT, SUSPENDED, LEFT
    ACTIVE     -> PROBATION, DORMANT, SUSPENDED, LEFT
    DORMANT    -> PROBATION, ACTIVE, SUSPENDED, LEFT
    SUSPENDED  -> PROBATION, ACTIVE, DORMANT, LEFT
    LEFT       -> (terminal)

    PENDING is the only entry state and can never be re-entered.  LEFT is
    absorbing.  Self-transitions are not status changes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from uuid import UUID

from membership_kernel.exceptions import InvalidPeriodDatesError, InvalidTransitionError


class MemberStatus(str, Enum):
    """Lifecycle status of a member."""

    PENDING = "PENDING"
    PROBATION = "PROBATION"
    ACTIVE = "ACTIVE"
    DORMANT = "DORMANT"
    SUSPENDED = "SUSPENDED"
    LEFT = "LEFT"

    def __str__(self) -> str:
        return self.value


class LeftCategory(str, Enum):
    """Why a member left the club.  Only recorded on transitions into LEFT."""

    VOLUNTARY = "VOLUNTARY"
    EXCLUSION = "EXCLUSION"
    REJECTED = "REJECTED"
    DEATH = "DEATH"
    OTHER = "OTHER"


TERMINAL_STATUS = MemberStatus.LEFT

ACTIVE_FAMILY: frozenset[MemberStatus] = frozenset({
    MemberStatus.PENDING,
    MemberStatus.PROBATION,
    MemberStatus.ACTIVE,
    MemberStatus.DORMANT,
    MemberStatus.SUSPENDED,
})

# Statuses in which a cancellation notice may be recorded.
CANCELLABLE_STATUSES: frozenset[MemberStatus] = ACTIVE_FAMILY - {MemberStatus.PENDING}


def _build_transitions() -> dict[MemberStatus, frozenset[MemberStatus]]:
    table: dict[MemberStatus, frozenset[MemberStatus]] = {
        MemberStatus.PENDING: frozenset({MemberStatus.ACTIVE, MemberStatus.LEFT}),
        MemberStatus.LEFT: frozenset(),
    }
    for status in CANCELLABLE_STATUSES:
        table[status] = (CANCELLABLE_STATUSES - {status}) | {MemberStatus.LEFT}
    return table


VALID_TRANSITIONS: dict[MemberStatus, frozenset[MemberStatus]] = _build_transitions()

# Named transitions that imply a departure category when none is given.
_IMPLIED_LEFT_CATEGORY: dict[tuple[MemberStatus, MemberStatus], LeftCategory] = {
    (MemberStatus.PENDING, MemberStatus.LEFT): LeftCategory.REJECTED,
    (MemberStatus.SUSPENDED, MemberStatus.LEFT): LeftCategory.EXCLUSION,
}


def is_valid(from_status: MemberStatus | str, to_status: MemberStatus | str) -> bool:
    """Return True when the policy allows ``from_status -> to_status``."""
    try:
        source = MemberStatus(from_status)
        target = MemberStatus(to_status)
    except ValueError:
        return False
    return target in VALID_TRANSITIONS[source]


def allowed_targets(from_status: MemberStatus | str) -> frozenset[MemberStatus]:
    return VALID_TRANSITIONS[MemberStatus(from_status)]


def is_terminal(status: MemberStatus | str) -> bool:
    return MemberStatus(status) == TERMINAL_STATUS


def ensure_valid(from_status: MemberStatus | str, to_status: MemberStatus | str) -> None:
    """Raise InvalidTransitionError unless the transition is allowed."""
    if not is_valid(from_status, to_status):
        allowed = tuple(
            sorted(s.value for s in VALID_TRANSITIONS.get(_coerce(from_status), frozenset()))
        )
        raise InvalidTransitionError(str(from_status), str(to_status), allowed)


def _coerce(status: MemberStatus | str) -> MemberStatus | None:
    try:
        return MemberStatus(status)
    except ValueError:
        return None


# =============================================================================
# Transition planning
# =============================================================================


@dataclass(frozen=True)
class OpenPeriodRef:
    """The member's currently open membership period, as seen by the planner."""

    period_id: UUID
    join_date: date


@dataclass(frozen=True)
class StatusChangePlan:
    """Everything a status change will do, computed before anything is written.

    ``close_period_id`` / ``period_leave_date`` are set when the target is
    terminal and an open period exists.  ``open_period`` is set on admission
    out of PENDING when the member has no open period yet.
    """

    from_status: MemberStatus
    to_status: MemberStatus
    effective_date: date
    left_category: LeftCategory | None = None
    close_period_id: UUID | None = None
    period_leave_date: date | None = None
    open_period: bool = False
    period_join_date: date | None = None
    membership_type_id: UUID | None = None

    @property
    def closes_period(self) -> bool:
        return self.close_period_id is not None


def plan_status_change(
    current_status: MemberStatus | str,
    to_status: MemberStatus | str,
    effective_date: date,
    open_period: OpenPeriodRef | None = None,
    left_category: LeftCategory | str | None = None,
    membership_type_id: UUID | None = None,
) -> StatusChangePlan:
    """
    Validate a transition and compute its side effects.

    Raises:
        InvalidTransitionError: The policy rejects the transition.
        InvalidPeriodDatesError: Leaving before the open period began.
    """
    ensure_valid(current_status, to_status)
    source = MemberStatus(current_status)
    target = MemberStatus(to_status)

    if target != TERMINAL_STATUS:
        opens = source == MemberStatus.PENDING and open_period is None
        return StatusChangePlan(
            from_status=source,
            to_status=target,
            effective_date=effective_date,
            open_period=opens,
            period_join_date=effective_date if opens else None,
            membership_type_id=membership_type_id if opens else None,
        )

    category = (
        LeftCategory(left_category)
        if left_category is not None
        else _IMPLIED_LEFT_CATEGORY.get((source, target))
    )

    if open_period is None:
        return StatusChangePlan(
            from_status=source,
            to_status=target,
            effective_date=effective_date,
            left_category=category,
        )

    if effective_date < open_period.join_date:
        raise InvalidPeriodDatesError(
            open_period.join_date.isoformat(), effective_date.isoformat()
        )

    return StatusChangePlan(
        from_status=source,
        to_status=target,
        effective_date=effective_date,
        left_category=category,
        close_period_id=open_period.period_id,
        period_leave_date=effective_date,
    )
