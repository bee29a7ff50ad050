"""
Module: membership_kernel.models.membership_period
Responsibility: ORM persistence for uninterrupted spans of membership.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - At most one open period (``leave_date IS NULL``) per member, enforced
      by a partial unique index on both PostgreSQL and SQLite.
    - ``leave_date >= join_date`` (checked by MembershipPeriodService and the
      status policy before a period is closed).
"""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from membership_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from membership_kernel.domain.dtos import MembershipPeriodInfo


class MembershipPeriod(TrackedBase):
    """A join / leave span.  An open period means current membership."""

    __tablename__ = "membership_periods"

    __table_args__ = (
        Index(
            "uq_membership_period_open",
            "member_id",
            unique=True,
            postgresql_where=text("leave_date IS NULL"),
            sqlite_where=text("leave_date IS NULL"),
        ),
        Index("idx_membership_period_member", "tenant_id", "member_id", "join_date"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    member_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("members.id"),
        nullable=False,
    )

    join_date: Mapped[date] = mapped_column(Date, nullable=False)

    # Null while the period is open
    leave_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    membership_type_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<MembershipPeriod {self.join_date} - {self.leave_date or 'open'}>"

    @property
    def is_open(self) -> bool:
        return self.leave_date is None

    def to_dto(self) -> MembershipPeriodInfo:
        from membership_kernel.domain.dtos import MembershipPeriodInfo

        return MembershipPeriodInfo(
            period_id=self.id,
            tenant_id=self.tenant_id,
            member_id=self.member_id,
            join_date=self.join_date,
            leave_date=self.leave_date,
            membership_type_id=self.membership_type_id,
            notes=self.notes,
        )
