"""
Module: membership_kernel.models.status_transition
Responsibility: ORM persistence for the member status audit log.
Architecture position: Kernel > Models.  May import from db/base.py and the
    pure domain layer only.

Invariants enforced:
    - ``from_status`` / ``to_status`` never change after insert.  Only
      ``reason``, ``effective_date`` and ``left_category`` are editable.
    - ``seq`` is allocated from the tenant's STATUS_TRANSITION counter and
      orders rows by insertion; the non-deleted row with the highest ``seq``
      is the member's most recent transition and cannot be deleted.
    - ``left_category`` is only set when ``to_status`` is LEFT.

Audit relevance:
    Rows are never physically deleted.  Soft-deleted rows keep the deleting
    actor and timestamp.  ``actor_id`` is either a user or the reserved
    system actor of the cancellation scheduler.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from membership_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from membership_kernel.domain.member_status import LeftCategory, MemberStatus

if TYPE_CHECKING:
    from membership_kernel.domain.dtos import StatusTransitionInfo


class StatusTransition(TrackedBase):
    """One entry of a member's status history."""

    __tablename__ = "member_status_transitions"

    __table_args__ = (
        UniqueConstraint("tenant_id", "seq", name="uq_status_transition_seq"),
        Index("idx_status_transition_member", "tenant_id", "member_id", "effective_date"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    member_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("members.id"),
        nullable=False,
    )

    from_status: Mapped[MemberStatus] = mapped_column(String(20), nullable=False)

    to_status: Mapped[MemberStatus] = mapped_column(String(20), nullable=False)

    effective_date: Mapped[date] = mapped_column(Date, nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    left_category: Mapped[LeftCategory | None] = mapped_column(String(20), nullable=True)

    seq: Mapped[int] = mapped_column(nullable=False)

    deleted_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )

    deleted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<StatusTransition #{self.seq} {self.from_status} -> {self.to_status} "
            f"on {self.effective_date}>"
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dto(self) -> StatusTransitionInfo:
        from membership_kernel.domain.dtos import StatusTransitionInfo

        return StatusTransitionInfo(
            transition_id=self.id,
            tenant_id=self.tenant_id,
            member_id=self.member_id,
            from_status=MemberStatus(self.from_status),
            to_status=MemberStatus(self.to_status),
            effective_date=self.effective_date,
            reason=self.reason,
            actor_id=self.actor_id,
            seq=self.seq,
            left_category=(
                LeftCategory(self.left_category) if self.left_category else None
            ),
            created_at=self.created_at,
        )
