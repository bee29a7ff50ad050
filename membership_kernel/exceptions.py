"""
Typed exception hierarchy for the membership kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (request handlers, the bulk endpoint, the cancellation scheduler)
must react to lifecycle errors precisely.  Matching on message text is
fragile, so every error here has:
  1. Its own class (catch by type, not by message)
  2. A ``code`` class attribute (machine-readable, API-safe)
  3. Structured attributes carrying the offending values

Example:
    try:
        lifecycle.change_status(tenant_id, member_id, MemberStatus.ACTIVE, ...)
    except InvalidTransitionError as e:
        return {"error": e.code, "from": e.from_status, "to": e.to_status}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    MembershipKernelError (base)
    |
    +-- NotFoundError
    |   +-- MemberNotFoundError
    |   +-- TransitionNotFoundError
    |   +-- SequenceCounterNotFoundError
    |   +-- PeriodNotFoundError
    |
    +-- InvalidTransitionError
    +-- InvalidCancellationStateError
    |
    +-- HistoryError
    |   +-- HistoryGuardViolationError
    |   +-- InvalidTransitionMetadataError
    |
    +-- SequenceError
    |   +-- SequenceCounterExistsError
    |   +-- SequenceCounterInUseError
    |   +-- SequenceCounterReservedError
    |
    +-- MemberNumberInUseError
    |
    +-- PeriodError
    |   +-- OpenPeriodExistsError
    |   +-- PeriodOverlapError
    |   +-- InvalidPeriodDatesError
    |   +-- PeriodAlreadyClosedError
    |
    +-- ConcurrencyConflictError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                         | When Raised
--------------|------------------------------|----------------------------------
Not found     | MEMBER_NOT_FOUND             | Member missing or soft-deleted
              | TRANSITION_NOT_FOUND         | History row missing / foreign
              | SEQUENCE_COUNTER_NOT_FOUND   | Counter missing, no auto-create
              | PERIOD_NOT_FOUND             | Membership period missing
--------------|------------------------------|----------------------------------
Lifecycle     | INVALID_TRANSITION           | Policy rejects from -> to
              | INVALID_CANCELLATION_STATE   | Set/revoke in incompatible state
--------------|------------------------------|----------------------------------
History       | HISTORY_GUARD_VIOLATION      | Deleting the most recent entry
              | INVALID_TRANSITION_METADATA  | Category on a non-LEFT entry
--------------|------------------------------|----------------------------------
Sequence      | SEQUENCE_COUNTER_EXISTS      | Duplicate (tenant, entity type)
              | SEQUENCE_COUNTER_IN_USE      | Delete after numbers were issued
              | SEQUENCE_COUNTER_RESERVED    | Administering an internal counter
--------------|------------------------------|----------------------------------
Member        | MEMBER_NUMBER_IN_USE         | Duplicate member number
--------------|------------------------------|----------------------------------
Period        | OPEN_PERIOD_EXISTS           | Second open period for a member
              | PERIOD_OVERLAP               | Date ranges intersect
              | INVALID_PERIOD_DATES         | leave_date before join_date
              | PERIOD_ALREADY_CLOSED        | Closing a period twice
--------------|------------------------------|----------------------------------
Concurrency   | CONCURRENCY_CONFLICT         | Lost update detected (retryable)

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Partial-failure operations (bulk change, scheduler pass) convert these
   errors into per-item skip records instead of propagating them.

2. ConcurrencyConflictError is the only retryable error.  Use
   ``membership_kernel.services.conflict_retry.retry_on_conflict``.

3. Storage-layer errors (``sqlalchemy.exc.OperationalError`` etc.) are NOT
   wrapped here.  They abort the current transaction and propagate.
"""

from __future__ import annotations


class MembershipKernelError(Exception):
    """
    Base exception for all membership kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "MEMBERSHIP_KERNEL_ERROR"


# Not-found exceptions


class NotFoundError(MembershipKernelError):
    """Base exception for missing or soft-deleted records."""

    code: str = "NOT_FOUND"


class MemberNotFoundError(NotFoundError):
    """Member does not exist in the tenant or has been soft-deleted."""

    code: str = "MEMBER_NOT_FOUND"

    def __init__(self, member_id: str, tenant_id: str | None = None):
        self.member_id = member_id
        self.tenant_id = tenant_id
        super().__init__(f"Member not found: {member_id}")


class TransitionNotFoundError(NotFoundError):
    """Status transition does not belong to the member / tenant."""

    code: str = "TRANSITION_NOT_FOUND"

    def __init__(self, transition_id: str, member_id: str):
        self.transition_id = transition_id
        self.member_id = member_id
        super().__init__(
            f"Status transition {transition_id} not found for member {member_id}"
        )


class SequenceCounterNotFoundError(NotFoundError):
    """No counter exists for the (tenant, entity type) pair."""

    code: str = "SEQUENCE_COUNTER_NOT_FOUND"

    def __init__(self, entity_type: str, tenant_id: str):
        self.entity_type = entity_type
        self.tenant_id = tenant_id
        super().__init__(
            f"Sequence counter for entity type '{entity_type}' not found"
        )


class PeriodNotFoundError(NotFoundError):
    """Membership period does not exist for the member."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, period_id: str):
        self.period_id = period_id
        super().__init__(f"Membership period not found: {period_id}")


# Lifecycle exceptions


class InvalidTransitionError(MembershipKernelError):
    """The transition policy does not allow from_status -> to_status."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        from_status: str,
        to_status: str,
        allowed: tuple[str, ...] = (),
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = allowed
        allowed_text = ", ".join(allowed) if allowed else "none (terminal status)"
        super().__init__(
            f"Invalid status transition {from_status} -> {to_status}. "
            f"Allowed targets: {allowed_text}"
        )


class InvalidCancellationStateError(MembershipKernelError):
    """Cancellation cannot be set or revoked in the member's current state."""

    code: str = "INVALID_CANCELLATION_STATE"

    def __init__(self, member_id: str, status: str, reason: str):
        self.member_id = member_id
        self.status = status
        self.reason = reason
        super().__init__(
            f"Cannot change cancellation of member {member_id} "
            f"(status {status}): {reason}"
        )


# History exceptions


class HistoryError(MembershipKernelError):
    """Base exception for status-history mutations."""

    code: str = "HISTORY_ERROR"


class HistoryGuardViolationError(HistoryError):
    """
    Attempt to delete the most recent transition of a member.

    The newest entry is what makes ``Member.status`` meaningful; removing it
    would orphan the denormalised status from its audit trail.
    """

    code: str = "HISTORY_GUARD_VIOLATION"

    def __init__(self, transition_id: str, member_id: str):
        self.transition_id = transition_id
        self.member_id = member_id
        super().__init__(
            f"Cannot delete the most recent transition {transition_id} "
            f"of member {member_id}"
        )


class InvalidTransitionMetadataError(HistoryError):
    """Edited metadata does not fit the transition it is applied to."""

    code: str = "INVALID_TRANSITION_METADATA"

    def __init__(self, transition_id: str, reason: str):
        self.transition_id = transition_id
        self.reason = reason
        super().__init__(f"Invalid metadata for transition {transition_id}: {reason}")


# Sequence exceptions


class SequenceError(MembershipKernelError):
    """Base exception for sequence counter administration."""

    code: str = "SEQUENCE_ERROR"


class SequenceCounterExistsError(SequenceError):
    """A counter for the (tenant, entity type) pair already exists."""

    code: str = "SEQUENCE_COUNTER_EXISTS"

    def __init__(self, entity_type: str, tenant_id: str):
        self.entity_type = entity_type
        self.tenant_id = tenant_id
        super().__init__(
            f"Sequence counter for entity type '{entity_type}' already exists"
        )


class SequenceCounterInUseError(SequenceError):
    """Counter has already issued numbers and cannot be deleted."""

    code: str = "SEQUENCE_COUNTER_IN_USE"

    def __init__(self, entity_type: str, current_value: int):
        self.entity_type = entity_type
        self.current_value = current_value
        super().__init__(
            f"Sequence counter '{entity_type}' cannot be deleted: "
            f"{current_value} number(s) already issued"
        )


class SequenceCounterReservedError(SequenceError):
    """The counter is kernel-owned and cannot be administered."""

    code: str = "SEQUENCE_COUNTER_RESERVED"

    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(
            f"Sequence counter '{entity_type}' is reserved for internal use"
        )


class MemberNumberInUseError(MembershipKernelError):
    """The member number is already assigned within the tenant."""

    code: str = "MEMBER_NUMBER_IN_USE"

    def __init__(self, member_number: str):
        self.member_number = member_number
        super().__init__(f"Member number already in use: {member_number}")


# Membership period exceptions


class PeriodError(MembershipKernelError):
    """Base exception for membership period errors."""

    code: str = "PERIOD_ERROR"


class OpenPeriodExistsError(PeriodError):
    """Member already has an open period."""

    code: str = "OPEN_PERIOD_EXISTS"

    def __init__(self, member_id: str, period_id: str):
        self.member_id = member_id
        self.period_id = period_id
        super().__init__(
            f"Member {member_id} already has an open membership period {period_id}"
        )


class PeriodOverlapError(PeriodError):
    """New or edited period intersects an existing period of the member."""

    code: str = "PERIOD_OVERLAP"

    def __init__(self, member_id: str, conflicting_period_id: str):
        self.member_id = member_id
        self.conflicting_period_id = conflicting_period_id
        super().__init__(
            f"Membership period overlaps period {conflicting_period_id} "
            f"of member {member_id}"
        )


class InvalidPeriodDatesError(PeriodError):
    """leave_date lies before join_date."""

    code: str = "INVALID_PERIOD_DATES"

    def __init__(self, join_date: str, leave_date: str):
        self.join_date = join_date
        self.leave_date = leave_date
        super().__init__(
            f"Leave date {leave_date} cannot be before join date {join_date}"
        )


class PeriodAlreadyClosedError(PeriodError):
    """Period already has a leave date."""

    code: str = "PERIOD_ALREADY_CLOSED"

    def __init__(self, period_id: str, leave_date: str):
        self.period_id = period_id
        self.leave_date = leave_date
        super().__init__(f"Membership period {period_id} already closed on {leave_date}")


# Concurrency exceptions


class ConcurrencyConflictError(MembershipKernelError):
    """
    Lost update detected on a member or counter row.

    Retryable: the caller should re-run the whole unit of work a bounded
    number of times before surfacing the error.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id} detected"
        )
