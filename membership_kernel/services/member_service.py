"""
MemberService -- member registration.

Responsibility:
    Creates members in the PENDING entry state, assigns their member number
    from the tenant's MEMBER sequence (or accepts a manual number) and
    writes the initial history row, so the status projection holds from the
    very first row.

Architecture position:
    Kernel > Services -- imperative shell.

Failure modes:
    - MemberNumberInUseError: the number already belongs to a member of the
      tenant.
    - MemberNotFoundError from ``get``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select

from membership_kernel.domain.dtos import MemberInfo
from membership_kernel.domain.member_status import MemberStatus
from membership_kernel.exceptions import MemberNumberInUseError
from membership_kernel.logging_config import get_logger
from membership_kernel.models.member import Member
from membership_kernel.services._member_lock import load_member
from membership_kernel.services.base import BaseService
from membership_kernel.services.sequence_service import SequenceService
from membership_kernel.services.status_history_service import StatusHistoryService

logger = get_logger("services.member")

INITIAL_REASON = "member created"


class MemberService(BaseService):
    """Registration and lookup of members."""

    def __init__(
        self,
        session,
        clock=None,
        sequence_service: SequenceService | None = None,
        history_service: StatusHistoryService | None = None,
    ):
        super().__init__(session, clock)
        self._sequences = sequence_service or SequenceService(session, self.clock)
        self._history = history_service or StatusHistoryService(
            session, self.clock, self._sequences
        )

    def create_member(
        self,
        tenant_id: UUID,
        first_name: str,
        last_name: str,
        actor_id: UUID,
        member_number: str | None = None,
    ) -> MemberInfo:
        """
        Register a member in PENDING.

        Without ``member_number`` the next number of the tenant's MEMBER
        counter is used.  The initial PENDING -> PENDING history row is
        dated today.
        """
        if member_number is None:
            member_number = self._sequences.next(tenant_id, SequenceService.MEMBER)
            # Skip numbers that were assigned manually
            while self._number_taken(tenant_id, member_number):
                member_number = self._sequences.next(tenant_id, SequenceService.MEMBER)
        elif self._number_taken(tenant_id, member_number):
            raise MemberNumberInUseError(member_number)

        now = self.clock.now()
        member = Member(
            tenant_id=tenant_id,
            member_number=member_number,
            first_name=first_name,
            last_name=last_name,
            status=MemberStatus.PENDING.value,
            version=1,
            status_changed_at=now,
            status_changed_by_id=actor_id,
            status_change_reason=INITIAL_REASON,
            created_at=now,
            updated_at=now,
            created_by_id=actor_id,
        )
        self.session.add(member)
        self.session.flush()

        self._history.record(
            tenant_id,
            member.id,
            MemberStatus.PENDING,
            MemberStatus.PENDING,
            self.clock.today(),
            INITIAL_REASON,
            actor_id,
        )

        logger.info(
            "member_created",
            extra={
                "tenant_id": str(tenant_id),
                "member_id": str(member.id),
                "member_number": member_number,
            },
        )
        return member.to_dto()

    def get(self, tenant_id: UUID, member_id: UUID) -> MemberInfo:
        return load_member(self.session, tenant_id, member_id).to_dto()

    def _number_taken(self, tenant_id: UUID, member_number: str) -> bool:
        return (
            self.session.execute(
                select(Member.id).where(
                    Member.tenant_id == tenant_id,
                    Member.member_number == member_number,
                )
            ).first()
            is not None
        )
