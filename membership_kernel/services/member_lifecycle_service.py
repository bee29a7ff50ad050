"""
MemberLifecycleService -- the single executor of member status changes.

Responsibility:
    Loads a member, consults the status policy, appends the history row,
    applies the membership-period side effects and writes the member's
    denormalised status, all inside the caller's transaction.  Also records
    and revokes cancellation notices and applies a status change to many
    members with per-member isolation.

Architecture position:
    Kernel > Services -- imperative shell around the pure policy in
    ``domain.member_status``.  Request handlers and the cancellation
    scheduler call the same ``change_status``; only the actor id differs.

Invariants enforced:
    - Legality: every status write goes through ``plan_status_change``;
      ``preview_change_status`` calls the same function, so a preview can
      never promise what the real call rejects.
    - Projection: ``Member.status`` and the newest history row are written
      in the same flush.  Neither is ever written without the other.
    - Lost updates: the member row is locked (``FOR UPDATE``) and the final
      write is a conditional UPDATE on (status, version).
    - Terminal status: entering LEFT closes the open period as of the
      effective date.

Failure modes:
    - MemberNotFoundError: unknown or soft-deleted member.
    - InvalidTransitionError: the policy rejects the transition.
    - InvalidCancellationStateError: set / revoke in an incompatible state.
    - InvalidPeriodDatesError / PeriodOverlapError: period side effect
      cannot be applied.
    - ConcurrencyConflictError: conditional UPDATE matched no row.

Audit relevance:
    Every status change, cancellation notice and revocation produces a
    history row carrying the actor id.  Scheduler-driven changes carry the
    reserved system actor.
"""

from __future__ import annotations

from datetime import date
from typing import Iterable
from uuid import UUID

from sqlalchemy import update

from membership_kernel.domain.dtos import (
    BulkStatusChangeResult,
    MemberInfo,
    SkippedMember,
    StatusChangePreview,
)
from membership_kernel.domain.member_status import (
    CANCELLABLE_STATUSES,
    LeftCategory,
    MemberStatus,
    OpenPeriodRef,
    StatusChangePlan,
    plan_status_change,
)
from membership_kernel.exceptions import (
    ConcurrencyConflictError,
    InvalidCancellationStateError,
    MembershipKernelError,
)
from membership_kernel.logging_config import LogContext, get_logger
from membership_kernel.models.member import Member
from membership_kernel.models.membership_period import MembershipPeriod
from membership_kernel.services._member_lock import load_member
from membership_kernel.services.base import BaseService
from membership_kernel.services.membership_period_service import MembershipPeriodService
from membership_kernel.services.sequence_service import SequenceService
from membership_kernel.services.status_history_service import StatusHistoryService

logger = get_logger("services.member_lifecycle")


class MemberLifecycleService(BaseService):
    """
    Orchestrates member status changes and cancellation notices.

    Contract:
        All operations flush within the caller's transaction and return
        MemberInfo / preview / result DTOs.

    Guarantees:
        - One history row per successful status change, cancellation notice
          or revocation.
        - ``bulk_change_status`` never aborts: each member runs in its own
          SAVEPOINT and failures become SkippedMember records.

    Non-goals:
        - Does NOT commit.  Does NOT check permissions.
        - Does NOT retry ConcurrencyConflictError (see conflict_retry).
    """

    def __init__(
        self,
        session,
        clock=None,
        sequence_service: SequenceService | None = None,
        history_service: StatusHistoryService | None = None,
        period_service: MembershipPeriodService | None = None,
    ):
        super().__init__(session, clock)
        self._sequences = sequence_service or SequenceService(session, self.clock)
        self._history = history_service or StatusHistoryService(
            session, self.clock, self._sequences
        )
        self._periods = period_service or MembershipPeriodService(session, self.clock)

    # =========================================================================
    # Status change
    # =========================================================================

    def change_status(
        self,
        tenant_id: UUID,
        member_id: UUID,
        to_status: MemberStatus | str,
        reason: str,
        actor_id: UUID,
        effective_date: date | None = None,
        left_category: LeftCategory | str | None = None,
        membership_type_id: UUID | None = None,
    ) -> MemberInfo:
        """
        Move a member to ``to_status``.

        ``effective_date`` defaults to today per the injected clock.  When
        the target is LEFT, ``left_category`` falls back to the category
        implied by the transition (PENDING -> REJECTED, SUSPENDED ->
        EXCLUSION) and may stay None.

        Raises:
            MemberNotFoundError, InvalidTransitionError,
            InvalidPeriodDatesError, PeriodOverlapError,
            ConcurrencyConflictError
        """
        with LogContext.bind(tenant_id=tenant_id, member_id=member_id, actor_id=actor_id):
            member = load_member(self.session, tenant_id, member_id, for_update=True)
            plan, open_period = self._plan(
                member, to_status, effective_date, left_category, membership_type_id
            )

            expected_status = MemberStatus(member.status)
            expected_version = member.version

            self._history.record(
                tenant_id,
                member.id,
                plan.from_status,
                plan.to_status,
                plan.effective_date,
                reason,
                actor_id,
                left_category=plan.left_category,
            )

            if plan.closes_period:
                self._periods.close_period(open_period, plan.period_leave_date, actor_id)
            if plan.open_period:
                self._periods.open_period(
                    tenant_id,
                    member.id,
                    plan.period_join_date,
                    actor_id,
                    membership_type_id=plan.membership_type_id,
                )

            values = {
                "status": plan.to_status.value,
                "status_changed_at": self.clock.now(),
                "status_changed_by_id": actor_id,
                "status_change_reason": reason,
            }
            # The exit date doubles as the cancellation date when no notice was recorded
            if plan.to_status == MemberStatus.LEFT and member.cancellation_date is None:
                values["cancellation_date"] = plan.effective_date

            self._write_member(member, expected_status, expected_version, actor_id, values)

            logger.info(
                "member_status_changed",
                extra={
                    "from_status": plan.from_status,
                    "to_status": plan.to_status,
                    "effective_date": plan.effective_date,
                    "left_category": plan.left_category,
                    "closed_period_id": (
                        str(plan.close_period_id) if plan.close_period_id else None
                    ),
                    "opened_period": plan.open_period,
                },
            )
            return member.to_dto()

    def preview_change_status(
        self,
        tenant_id: UUID,
        member_id: UUID,
        to_status: MemberStatus | str,
        effective_date: date | None = None,
        left_category: LeftCategory | str | None = None,
        membership_type_id: UUID | None = None,
    ) -> StatusChangePreview:
        """
        Dry run of ``change_status``: same validation, nothing written.

        Raises the same errors ``change_status`` would raise for the
        current state of the member.
        """
        member = load_member(self.session, tenant_id, member_id)
        plan, _ = self._plan(member, to_status, effective_date, left_category, membership_type_id)
        return StatusChangePreview(
            member_id=member.id,
            from_status=plan.from_status,
            to_status=plan.to_status,
            effective_date=plan.effective_date,
            left_category=plan.left_category,
            closes_period_id=plan.close_period_id,
            period_leave_date=plan.period_leave_date,
            opens_period=plan.open_period,
            period_join_date=plan.period_join_date,
        )

    def _plan(
        self,
        member: Member,
        to_status: MemberStatus | str,
        effective_date: date | None,
        left_category: LeftCategory | str | None,
        membership_type_id: UUID | None,
    ) -> tuple[StatusChangePlan, MembershipPeriod | None]:
        open_period = self._periods.find_open(member.tenant_id, member.id)
        plan = plan_status_change(
            member.status,
            to_status,
            effective_date or self.clock.today(),
            open_period=(
                OpenPeriodRef(open_period.id, open_period.join_date)
                if open_period is not None
                else None
            ),
            left_category=left_category,
            membership_type_id=membership_type_id,
        )
        if plan.open_period:
            self._periods.validate_new_period(
                member.tenant_id, member.id, plan.period_join_date
            )
        return plan, open_period

    def _write_member(
        self,
        member: Member,
        expected_status: MemberStatus,
        expected_version: int,
        actor_id: UUID,
        values: dict,
    ) -> None:
        result = self.session.execute(
            update(Member)
            .where(
                Member.id == member.id,
                Member.status == expected_status.value,
                Member.version == expected_version,
            )
            .values(
                **values,
                version=expected_version + 1,
                updated_at=self.clock.now(),
                updated_by_id=actor_id,
            )
        )
        if result.rowcount != 1:
            logger.warning(
                "member_conflict_detected",
                extra={
                    "expected_status": expected_status,
                    "expected_version": expected_version,
                },
            )
            raise ConcurrencyConflictError("member", str(member.id))
        self.session.flush()

    # =========================================================================
    # Cancellation notices
    # =========================================================================

    def set_cancellation(
        self,
        tenant_id: UUID,
        member_id: UUID,
        cancellation_date: date,
        cancellation_received_at: date,
        actor_id: UUID,
        reason: str | None = None,
    ) -> MemberInfo:
        """
        Record a notice to leave on ``cancellation_date``.

        The status stays unchanged; the cancellation scheduler performs the
        exit once the date has passed.  A same-status history row dated on
        the cancellation date documents the notice.

        Raises:
            MemberNotFoundError
            InvalidCancellationStateError: PENDING, LEFT, or a notice
                already recorded.
        """
        with LogContext.bind(tenant_id=tenant_id, member_id=member_id, actor_id=actor_id):
            member = load_member(self.session, tenant_id, member_id, for_update=True)
            status = MemberStatus(member.status)

            if status not in CANCELLABLE_STATUSES:
                raise InvalidCancellationStateError(
                    str(member_id), status.value, "status does not accept a cancellation"
                )
            if member.cancellation_date is not None:
                raise InvalidCancellationStateError(
                    str(member_id),
                    status.value,
                    f"cancellation already recorded for {member.cancellation_date.isoformat()}",
                )

            note = reason or f"cancellation recorded for {cancellation_date.isoformat()}"
            expected_version = member.version
            self._history.record(
                tenant_id, member.id, status, status, cancellation_date, note, actor_id
            )
            self._write_member(
                member,
                status,
                expected_version,
                actor_id,
                {
                    "cancellation_date": cancellation_date,
                    "cancellation_received_at": cancellation_received_at,
                    "status_changed_at": self.clock.now(),
                    "status_changed_by_id": actor_id,
                    "status_change_reason": note,
                },
            )

            logger.info(
                "cancellation_set",
                extra={
                    "cancellation_date": cancellation_date,
                    "cancellation_received_at": cancellation_received_at,
                },
            )
            return member.to_dto()

    def revoke_cancellation(
        self,
        tenant_id: UUID,
        member_id: UUID,
        actor_id: UUID,
        reason: str,
    ) -> MemberInfo:
        """
        Withdraw a recorded notice.

        Clears both cancellation fields, soft-deletes the notice row(s) on
        the cancellation date and appends a same-status row with ``reason``.

        Raises:
            MemberNotFoundError
            InvalidCancellationStateError: no notice recorded, or already LEFT.
        """
        with LogContext.bind(tenant_id=tenant_id, member_id=member_id, actor_id=actor_id):
            member = load_member(self.session, tenant_id, member_id, for_update=True)
            status = MemberStatus(member.status)

            if status == MemberStatus.LEFT:
                raise InvalidCancellationStateError(
                    str(member_id), status.value, "member has already left"
                )
            if member.cancellation_date is None:
                raise InvalidCancellationStateError(
                    str(member_id), status.value, "no cancellation recorded"
                )

            revoked_date = member.cancellation_date
            expected_version = member.version
            self._history.discard_provisional(
                tenant_id, member.id, revoked_date, actor_id, same_status_only=True
            )
            self._history.record(
                tenant_id, member.id, status, status, self.clock.today(), reason, actor_id
            )
            self._write_member(
                member,
                status,
                expected_version,
                actor_id,
                {
                    "cancellation_date": None,
                    "cancellation_received_at": None,
                    "status_changed_at": self.clock.now(),
                    "status_changed_by_id": actor_id,
                    "status_change_reason": reason,
                },
            )

            logger.info("cancellation_revoked", extra={"revoked_date": revoked_date})
            return member.to_dto()

    # =========================================================================
    # Bulk
    # =========================================================================

    def bulk_change_status(
        self,
        tenant_id: UUID,
        member_ids: Iterable[UUID],
        to_status: MemberStatus | str,
        reason: str,
        actor_id: UUID,
        left_category: LeftCategory | str | None = None,
    ) -> BulkStatusChangeResult:
        """
        Apply ``change_status`` to each member independently.

        Each member runs in its own SAVEPOINT.  Any exception rolls back
        that member only and is recorded as a SkippedMember; the loop always
        continues.
        """
        updated: list[UUID] = []
        skipped: list[SkippedMember] = []

        for member_id in member_ids:
            savepoint = self.session.begin_nested()
            try:
                self.change_status(
                    tenant_id, member_id, to_status, reason, actor_id,
                    left_category=left_category,
                )
                savepoint.commit()
                updated.append(member_id)
            except Exception as exc:
                savepoint.rollback()
                code = exc.code if isinstance(exc, MembershipKernelError) else "INTERNAL_ERROR"
                skipped.append(SkippedMember(member_id=member_id, reason=str(exc), code=code))
                logger.warning(
                    "bulk_status_change_skipped",
                    extra={
                        "tenant_id": str(tenant_id),
                        "member_id": str(member_id),
                        "error_code": code,
                        "error": str(exc),
                    },
                )

        logger.info(
            "bulk_status_change_completed",
            extra={
                "tenant_id": str(tenant_id),
                "to_status": str(to_status),
                "updated": len(updated),
                "skipped": len(skipped),
            },
        )
        return BulkStatusChangeResult(updated=tuple(updated), skipped=tuple(skipped))
