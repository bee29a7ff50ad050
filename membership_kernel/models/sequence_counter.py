"""
Module: membership_kernel.models.sequence_counter
Responsibility: ORM persistence for per-tenant number counters.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One counter per (tenant_id, entity_type).
    - ``current_value`` is non-decreasing except on a year reset, and is
      only written by SequenceService through a conditional UPDATE.
    - The year of ``updated_at`` is the counter's last used year.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from membership_kernel.db.base import Base, UTCDateTime, UUIDString

if TYPE_CHECKING:
    from membership_kernel.domain.dtos import SequenceCounterInfo


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row is the atomic source of one tenant's numbers for one entity
    type (e.g. ``MEMBER`` -> ``M-0042``).
    """

    __tablename__ = "sequence_counters"

    __table_args__ = (
        UniqueConstraint("tenant_id", "entity_type", name="uq_sequence_counter_entity"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Entity type key (e.g. "MEMBER", "STATUS_TRANSITION")
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Prefix template, may embed {YYYY}
    prefix: Mapped[str] = mapped_column(String(50), default="", nullable=False)

    pad_length: Mapped[int] = mapped_column(Integer, default=4, nullable=False)

    current_value: Mapped[int] = mapped_column(default=0, nullable=False)

    year_reset: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.entity_type}: {self.current_value}>"

    def to_dto(self) -> SequenceCounterInfo:
        from membership_kernel.domain.dtos import SequenceCounterInfo

        return SequenceCounterInfo(
            counter_id=self.id,
            tenant_id=self.tenant_id,
            entity_type=self.entity_type,
            prefix=self.prefix,
            pad_length=self.pad_length,
            current_value=self.current_value,
            year_reset=self.year_reset,
            updated_at=self.updated_at,
        )
