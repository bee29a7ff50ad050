"""
Module: membership_kernel.models.member
Responsibility: ORM persistence for club members and their denormalised
    lifecycle state.
Architecture position: Kernel > Models.  May import from db/base.py and the
    pure domain layer only.

Invariants enforced:
    - ``status`` equals the ``to_status`` of the member's most recent
      non-deleted StatusTransition.  Both are written in the same flush by
      MemberLifecycleService; nothing else writes the status fields.
    - ``member_number`` is unique per tenant and never reassigned.
    - ``version`` increases on every lifecycle write and guards the
      conditional UPDATE that detects lost updates.

Failure modes:
    - IntegrityError on a duplicate (tenant_id, member_number); surfaced by
      MemberService as MemberNumberInUseError.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from membership_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from membership_kernel.domain.member_status import MemberStatus

if TYPE_CHECKING:
    from membership_kernel.domain.dtos import MemberInfo


class Member(TrackedBase):
    """
    A member of one tenant (club).

    Contract:
        Profile fields are owned by onboarding flows.  The status and
        cancellation fields are owned by MemberLifecycleService.

    Non-goals:
        - Households, contact data and payment details live elsewhere.
    """

    __tablename__ = "members"

    __table_args__ = (
        UniqueConstraint("tenant_id", "member_number", name="uq_member_number_per_tenant"),
        Index("idx_member_tenant_status", "tenant_id", "status"),
        Index("idx_member_cancellation_date", "cancellation_date"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    member_number: Mapped[str] = mapped_column(String(50), nullable=False)

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)

    last_name: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[MemberStatus] = mapped_column(
        String(20),
        default=MemberStatus.PENDING,
        nullable=False,
    )

    # Notice of cancellation: the exit date and when the notice arrived
    cancellation_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    cancellation_received_at: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Denormalised pointer to the latest history entry
    status_changed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    status_changed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    status_change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(default=1, nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    deleted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<Member {self.member_number}: {self.status}>"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dto(self) -> MemberInfo:
        from membership_kernel.domain.dtos import MemberInfo

        return MemberInfo(
            member_id=self.id,
            tenant_id=self.tenant_id,
            member_number=self.member_number,
            first_name=self.first_name,
            last_name=self.last_name,
            status=MemberStatus(self.status),
            version=self.version,
            cancellation_date=self.cancellation_date,
            cancellation_received_at=self.cancellation_received_at,
            status_changed_at=self.status_changed_at,
            status_changed_by_id=self.status_changed_by_id,
            status_change_reason=self.status_change_reason,
            deleted_at=self.deleted_at,
        )
