"""
MembershipPeriodService -- join / leave spans of a member.

Responsibility:
    Lists, creates, edits and closes membership periods with the date and
    overlap checks that keep a member's periods disjoint.  The lifecycle
    service uses ``find_open`` / ``open_period`` / ``close_period`` to
    apply the side effects of a status change.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - At most one open period per member (also a partial unique index).
    - No two periods of a member intersect; an open period extends to
      infinity for the overlap check.
    - ``leave_date >= join_date``.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select

from membership_kernel.domain.dtos import MembershipPeriodInfo
from membership_kernel.exceptions import (
    InvalidPeriodDatesError,
    OpenPeriodExistsError,
    PeriodAlreadyClosedError,
    PeriodNotFoundError,
    PeriodOverlapError,
)
from membership_kernel.logging_config import get_logger
from membership_kernel.models.membership_period import MembershipPeriod
from membership_kernel.services._member_lock import load_member
from membership_kernel.services.base import BaseService

logger = get_logger("services.membership_period")

_OPEN_END = date.max


class MembershipPeriodService(BaseService):
    """
    Service for membership periods.

    Non-goals:
        - Does NOT touch member status; closing a period here does not make
          a member LEFT.
    """

    def list(self, tenant_id: UUID, member_id: UUID) -> list[MembershipPeriodInfo]:
        """All periods of a member, newest first."""
        load_member(self.session, tenant_id, member_id)
        periods = self._periods_of(tenant_id, member_id)
        return [p.to_dto() for p in sorted(periods, key=lambda p: p.join_date, reverse=True)]

    def find_open(self, tenant_id: UUID, member_id: UUID) -> MembershipPeriod | None:
        return self.session.execute(
            select(MembershipPeriod).where(
                MembershipPeriod.tenant_id == tenant_id,
                MembershipPeriod.member_id == member_id,
                MembershipPeriod.leave_date.is_(None),
            )
        ).scalar_one_or_none()

    def create(
        self,
        tenant_id: UUID,
        member_id: UUID,
        join_date: date,
        actor_id: UUID,
        leave_date: date | None = None,
        membership_type_id: UUID | None = None,
        notes: str | None = None,
    ) -> MembershipPeriodInfo:
        """
        Create a period after checking dates, the open-period rule and overlaps.

        Raises:
            MemberNotFoundError, InvalidPeriodDatesError,
            OpenPeriodExistsError, PeriodOverlapError
        """
        load_member(self.session, tenant_id, member_id, for_update=True)
        period = self.open_period(
            tenant_id,
            member_id,
            join_date,
            actor_id,
            leave_date=leave_date,
            membership_type_id=membership_type_id,
            notes=notes,
        )
        return period.to_dto()

    def open_period(
        self,
        tenant_id: UUID,
        member_id: UUID,
        join_date: date,
        actor_id: UUID,
        leave_date: date | None = None,
        membership_type_id: UUID | None = None,
        notes: str | None = None,
    ) -> MembershipPeriod:
        """Insert a period.  The caller holds the member row lock."""
        self.validate_new_period(tenant_id, member_id, join_date, leave_date)

        now = self.clock.now()
        period = MembershipPeriod(
            tenant_id=tenant_id,
            member_id=member_id,
            join_date=join_date,
            leave_date=leave_date,
            membership_type_id=membership_type_id,
            notes=notes,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self.session.add(period)
        self.session.flush()

        logger.info(
            "membership_period_created",
            extra={
                "tenant_id": str(tenant_id),
                "member_id": str(member_id),
                "period_id": str(period.id),
                "join_date": join_date,
                "leave_date": leave_date,
            },
        )
        return period

    def validate_new_period(
        self,
        tenant_id: UUID,
        member_id: UUID,
        join_date: date,
        leave_date: date | None = None,
    ) -> None:
        """Raise the error ``open_period`` would raise for these dates, without writing."""
        if leave_date is not None and leave_date < join_date:
            raise InvalidPeriodDatesError(join_date.isoformat(), leave_date.isoformat())

        if leave_date is None:
            existing_open = self.find_open(tenant_id, member_id)
            if existing_open is not None:
                raise OpenPeriodExistsError(str(member_id), str(existing_open.id))

        self._check_overlap(tenant_id, member_id, join_date, leave_date)

    def update(
        self,
        tenant_id: UUID,
        period_id: UUID,
        actor_id: UUID,
        *,
        join_date: date | None = None,
        leave_date: date | None = None,
        membership_type_id: UUID | None = None,
        notes: str | None = None,
    ) -> MembershipPeriodInfo:
        """Edit a period; the result is re-checked against the member's other periods."""
        period = self._get(tenant_id, period_id)
        load_member(self.session, tenant_id, period.member_id, for_update=True)

        new_join = join_date if join_date is not None else period.join_date
        new_leave = leave_date if leave_date is not None else period.leave_date
        if new_leave is not None and new_leave < new_join:
            raise InvalidPeriodDatesError(new_join.isoformat(), new_leave.isoformat())
        self._check_overlap(tenant_id, period.member_id, new_join, new_leave, exclude_id=period.id)

        period.join_date = new_join
        period.leave_date = new_leave
        if membership_type_id is not None:
            period.membership_type_id = membership_type_id
        if notes is not None:
            period.notes = notes
        period.updated_at = self.clock.now()
        period.updated_by_id = actor_id
        self.session.flush()
        return period.to_dto()

    def close(
        self, tenant_id: UUID, period_id: UUID, leave_date: date, actor_id: UUID
    ) -> MembershipPeriodInfo:
        period = self._get(tenant_id, period_id)
        load_member(self.session, tenant_id, period.member_id, for_update=True)
        return self.close_period(period, leave_date, actor_id).to_dto()

    def close_period(
        self, period: MembershipPeriod, leave_date: date, actor_id: UUID
    ) -> MembershipPeriod:
        """Set ``leave_date`` on an open period.  The caller holds the member row lock."""
        if period.leave_date is not None:
            raise PeriodAlreadyClosedError(str(period.id), period.leave_date.isoformat())
        if leave_date < period.join_date:
            raise InvalidPeriodDatesError(period.join_date.isoformat(), leave_date.isoformat())

        period.leave_date = leave_date
        period.updated_at = self.clock.now()
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "membership_period_closed",
            extra={
                "tenant_id": str(period.tenant_id),
                "member_id": str(period.member_id),
                "period_id": str(period.id),
                "leave_date": leave_date,
            },
        )
        return period

    def _get(self, tenant_id: UUID, period_id: UUID) -> MembershipPeriod:
        period = self.session.execute(
            select(MembershipPeriod).where(
                MembershipPeriod.id == period_id,
                MembershipPeriod.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return period

    def _periods_of(self, tenant_id: UUID, member_id: UUID) -> list[MembershipPeriod]:
        return list(
            self.session.execute(
                select(MembershipPeriod).where(
                    MembershipPeriod.tenant_id == tenant_id,
                    MembershipPeriod.member_id == member_id,
                )
            ).scalars()
        )

    def _check_overlap(
        self,
        tenant_id: UUID,
        member_id: UUID,
        join_date: date,
        leave_date: date | None,
        exclude_id: UUID | None = None,
    ) -> None:
        # [a1, a2] and [b1, b2] overlap when a1 <= b2 and b1 <= a2
        new_end = leave_date or _OPEN_END
        for existing in self._periods_of(tenant_id, member_id):
            if existing.id == exclude_id:
                continue
            existing_end = existing.leave_date or _OPEN_END
            if join_date <= existing_end and existing.join_date <= new_end:
                raise PeriodOverlapError(str(member_id), str(existing.id))
