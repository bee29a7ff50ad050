"""
StatusHistoryService -- the member status audit log with guarded mutation.

Responsibility:
    Appends status history rows (on behalf of MemberLifecycleService), lists
    a member's history, edits descriptive metadata of past entries and
    soft-deletes entries that are no longer the most recent one.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by MemberLifecycleService (``record``), the cancellation
    scheduler (``discard_provisional``) and request handlers (``list``,
    ``update``, ``soft_delete``).

Invariants enforced:
    - ``from_status`` / ``to_status`` of a stored row never change.
    - The most recent non-deleted row (highest ``seq``) is never
      soft-deleted, because ``Member.status`` mirrors it.
    - ``left_category`` is only ever set on rows whose ``to_status`` is LEFT.
    - Mutations lock the member row first, so a guard check cannot
      interleave with a concurrent status change.

Failure modes:
    - MemberNotFoundError: unknown or soft-deleted member.
    - TransitionNotFoundError: row missing, deleted, or owned by another
      member / tenant.
    - HistoryGuardViolationError: deleting the newest row.
    - InvalidTransitionMetadataError: category on a non-LEFT row.
    - InvalidPeriodDatesError: moving a LEFT row before its period's join date.

Audit relevance:
    Rows are soft-deleted only; the deleting actor and timestamp are kept.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select, update

from membership_kernel.domain.dtos import StatusTransitionInfo
from membership_kernel.domain.member_status import LeftCategory, MemberStatus
from membership_kernel.exceptions import (
    HistoryGuardViolationError,
    InvalidPeriodDatesError,
    InvalidTransitionMetadataError,
    TransitionNotFoundError,
)
from membership_kernel.logging_config import get_logger
from membership_kernel.models.membership_period import MembershipPeriod
from membership_kernel.models.status_transition import StatusTransition
from membership_kernel.services._member_lock import load_member
from membership_kernel.services.base import BaseService
from membership_kernel.services.sequence_service import SequenceService

logger = get_logger("services.status_history")


class StatusHistoryService(BaseService):
    """
    Guarded access to ``member_status_transitions``.

    Contract:
        Read operations return StatusTransitionInfo DTOs.  ``record`` returns
        the ORM row so the lifecycle service can flush it together with the
        member update.

    Guarantees:
        - Ordering for display: effective_date, created_at, seq ascending.
        - Recency for the guard: seq only.

    Non-goals:
        - Does NOT change a member's status.  Only MemberLifecycleService
          does that.
    """

    def __init__(self, session, clock=None, sequence_service: SequenceService | None = None):
        super().__init__(session, clock)
        self._sequences = sequence_service or SequenceService(session, self.clock)

    # =========================================================================
    # Queries
    # =========================================================================

    def list(self, tenant_id: UUID, member_id: UUID) -> list[StatusTransitionInfo]:
        """Non-deleted history of a member, oldest first."""
        load_member(self.session, tenant_id, member_id)
        rows = self.session.execute(
            select(StatusTransition)
            .where(
                StatusTransition.tenant_id == tenant_id,
                StatusTransition.member_id == member_id,
                StatusTransition.deleted_at.is_(None),
            )
            .order_by(
                StatusTransition.effective_date,
                StatusTransition.created_at,
                StatusTransition.seq,
            )
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def latest(self, tenant_id: UUID, member_id: UUID) -> StatusTransitionInfo | None:
        """The member's most recent non-deleted entry, or None for an empty history."""
        load_member(self.session, tenant_id, member_id)
        row = self._latest_row(tenant_id, member_id)
        return row.to_dto() if row is not None else None

    def _latest_row(self, tenant_id: UUID, member_id: UUID) -> StatusTransition | None:
        return self.session.execute(
            select(StatusTransition)
            .where(
                StatusTransition.tenant_id == tenant_id,
                StatusTransition.member_id == member_id,
                StatusTransition.deleted_at.is_(None),
            )
            .order_by(StatusTransition.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _get_row(
        self, tenant_id: UUID, member_id: UUID, transition_id: UUID
    ) -> StatusTransition:
        row = self.session.execute(
            select(StatusTransition).where(
                StatusTransition.id == transition_id,
                StatusTransition.tenant_id == tenant_id,
                StatusTransition.member_id == member_id,
                StatusTransition.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if row is None:
            raise TransitionNotFoundError(str(transition_id), str(member_id))
        return row

    # =========================================================================
    # Append (lifecycle service only)
    # =========================================================================

    def record(
        self,
        tenant_id: UUID,
        member_id: UUID,
        from_status: MemberStatus,
        to_status: MemberStatus,
        effective_date: date,
        reason: str,
        actor_id: UUID,
        left_category: LeftCategory | None = None,
    ) -> StatusTransition:
        """
        Append a history row with a freshly allocated ``seq``.

        The caller must hold the member row lock and write the member's
        denormalised status in the same transaction.
        """
        if left_category is not None and MemberStatus(to_status) != MemberStatus.LEFT:
            raise InvalidTransitionMetadataError(
                "(new)", "left category is only recorded on transitions to LEFT"
            )

        now = self.clock.now()
        row = StatusTransition(
            tenant_id=tenant_id,
            member_id=member_id,
            from_status=MemberStatus(from_status).value,
            to_status=MemberStatus(to_status).value,
            effective_date=effective_date,
            reason=reason,
            actor_id=actor_id,
            left_category=left_category.value if left_category is not None else None,
            seq=self._sequences.next_value(tenant_id, SequenceService.STATUS_TRANSITION),
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self.session.add(row)
        self.session.flush()
        return row

    def discard_provisional(
        self,
        tenant_id: UUID,
        member_id: UUID,
        on_date: date,
        actor_id: UUID,
        same_status_only: bool = False,
    ) -> int:
        """
        Soft-delete non-LEFT rows dated ``on_date``; return how many.

        Bypasses the recency guard: callers must append a replacement row
        in the same transaction.  ``same_status_only`` narrows the cleanup
        to audit rows that did not change the status (cancellation notices).
        """
        criteria = [
            StatusTransition.tenant_id == tenant_id,
            StatusTransition.member_id == member_id,
            StatusTransition.effective_date == on_date,
            StatusTransition.to_status != MemberStatus.LEFT.value,
            StatusTransition.deleted_at.is_(None),
        ]
        if same_status_only:
            criteria.append(StatusTransition.from_status == StatusTransition.to_status)

        now = self.clock.now()
        result = self.session.execute(
            update(StatusTransition)
            .where(*criteria)
            .values(deleted_at=now, deleted_by_id=actor_id, updated_at=now, updated_by_id=actor_id)
            .execution_options(synchronize_session="fetch")
        )
        count = result.rowcount or 0
        if count:
            logger.info(
                "status_history_discarded",
                extra={
                    "tenant_id": str(tenant_id),
                    "member_id": str(member_id),
                    "effective_date": on_date,
                    "count": count,
                },
            )
        return count

    # =========================================================================
    # Guarded mutation
    # =========================================================================

    def update(
        self,
        tenant_id: UUID,
        member_id: UUID,
        transition_id: UUID,
        *,
        actor_id: UUID,
        reason: str | None = None,
        effective_date: date | None = None,
        left_category: LeftCategory | str | None = None,
    ) -> StatusTransitionInfo:
        """
        Edit the descriptive metadata of one history row.

        Arguments left as None are unchanged.  When the row is the member's
        latest entry, ``Member.status_change_reason`` follows the new reason.
        When a LEFT row changes date, the period it closed moves with it.
        """
        member = load_member(self.session, tenant_id, member_id, for_update=True)
        row = self._get_row(tenant_id, member_id, transition_id)

        if left_category is not None:
            if MemberStatus(row.to_status) != MemberStatus.LEFT:
                raise InvalidTransitionMetadataError(
                    str(transition_id),
                    "left category is only recorded on transitions to LEFT",
                )
            row.left_category = LeftCategory(left_category).value

        if effective_date is not None and effective_date != row.effective_date:
            if MemberStatus(row.to_status) == MemberStatus.LEFT:
                self._move_closed_period(tenant_id, member_id, row.effective_date, effective_date)
            row.effective_date = effective_date

        if reason is not None:
            row.reason = reason
            latest = self._latest_row(tenant_id, member_id)
            if latest is not None and latest.id == row.id:
                member.status_change_reason = reason
                member.version += 1
                member.updated_by_id = actor_id
                member.updated_at = self.clock.now()

        row.updated_by_id = actor_id
        row.updated_at = self.clock.now()
        self.session.flush()

        logger.info(
            "status_history_updated",
            extra={
                "tenant_id": str(tenant_id),
                "member_id": str(member_id),
                "transition_id": str(transition_id),
                "actor_id": str(actor_id),
            },
        )
        return row.to_dto()

    def _move_closed_period(
        self, tenant_id: UUID, member_id: UUID, old_date: date, new_date: date
    ) -> None:
        period = self.session.execute(
            select(MembershipPeriod)
            .where(
                MembershipPeriod.tenant_id == tenant_id,
                MembershipPeriod.member_id == member_id,
                MembershipPeriod.leave_date == old_date,
            )
            .order_by(MembershipPeriod.join_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        if period is None:
            return
        if new_date < period.join_date:
            raise InvalidPeriodDatesError(period.join_date.isoformat(), new_date.isoformat())
        period.leave_date = new_date
        period.updated_at = self.clock.now()

    def soft_delete(
        self,
        tenant_id: UUID,
        member_id: UUID,
        transition_id: UUID,
        actor_id: UUID,
    ) -> None:
        """
        Soft-delete a history row that is not the member's latest entry.

        Raises:
            HistoryGuardViolationError: The row is the most recent entry.
        """
        load_member(self.session, tenant_id, member_id, for_update=True)
        row = self._get_row(tenant_id, member_id, transition_id)

        latest = self._latest_row(tenant_id, member_id)
        if latest is not None and latest.id == row.id:
            logger.warning(
                "status_history_guard_violation",
                extra={
                    "tenant_id": str(tenant_id),
                    "member_id": str(member_id),
                    "transition_id": str(transition_id),
                },
            )
            raise HistoryGuardViolationError(str(transition_id), str(member_id))

        now = self.clock.now()
        row.deleted_at = now
        row.deleted_by_id = actor_id
        row.updated_at = now
        row.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "status_history_deleted",
            extra={
                "tenant_id": str(tenant_id),
                "member_id": str(member_id),
                "transition_id": str(transition_id),
                "actor_id": str(actor_id),
            },
        )
