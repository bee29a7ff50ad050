"""
SequenceService -- atomic, prefix- and year-aware number allocation.

Responsibility:
    Issues the formatted identifiers of the membership system (member
    numbers such as ``M-0042`` or ``TSV-2026-001``) and the raw integer
    sequence that orders status history.  Also administers the counter
    rows: create, update formatting, delete while unused.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by MemberService (member numbers) and StatusHistoryService
    (``StatusTransition.seq``).

Invariants enforced:
    - Uniqueness: the counter row is locked (``SELECT ... FOR UPDATE``) and
      written with a conditional UPDATE on the value that was read, so two
      callers can never both move the counter from the same value.  A
      counter computed with ``MAX(...) + 1`` is never used.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the number.
    - Year reset: a counter configured for it restarts at 1 on the first
      allocation of a new calendar year (see ``domain.number_format``).
    - Reserved counters (``STATUS_TRANSITION``) are plain, never-resetting
      integers: configured defaults and the administration API do not
      apply to them.

Failure modes:
    - SequenceCounterNotFoundError: counter missing and ``auto_create`` off.
    - SequenceCounterReservedError: administering a reserved counter.
    - ConcurrencyConflictError: the conditional UPDATE matched no row
      (a writer slipped past a dialect that ignores ``FOR UPDATE``).
    - IntegrityError on lazy counter creation races is absorbed by a
      savepoint and a locked re-read.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from membership_kernel.domain.dtos import SequenceCounterInfo
from membership_kernel.domain.number_format import (
    DEFAULT_PAD_LENGTH,
    DEFAULT_PREFIX,
    format_number,
    next_counter_value,
)
from membership_kernel.exceptions import (
    ConcurrencyConflictError,
    SequenceCounterExistsError,
    SequenceCounterInUseError,
    SequenceCounterNotFoundError,
    SequenceCounterReservedError,
)
from membership_kernel.logging_config import get_logger
from membership_kernel.models.sequence_counter import SequenceCounter
from membership_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceService(BaseService):
    """
    Service for generating transactional sequence numbers.

    Contract:
        ``next()`` returns the next formatted identifier for a
        (tenant, entity type) pair; ``next_value()`` the bare integer.
        The increment commits with the caller's transaction.

    Guarantees:
        - No two calls for the same pair return the same value.
        - ``preview()`` and ``next()`` format through the same function.
        - Lazily created counters use the service defaults (empty prefix,
          pad length 4, no year reset unless configured otherwise).

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT reserve numbers across transactions.
    """

    # Well-known entity types
    MEMBER = "MEMBER"
    STATUS_TRANSITION = "STATUS_TRANSITION"

    # Kernel-owned counters; status history ordering depends on them
    RESERVED_ENTITY_TYPES = frozenset({STATUS_TRANSITION})

    def __init__(
        self,
        session,
        clock=None,
        default_prefix: str = DEFAULT_PREFIX,
        default_pad_length: int = DEFAULT_PAD_LENGTH,
        default_year_reset: bool = False,
    ):
        super().__init__(session, clock)
        self._default_prefix = default_prefix
        self._default_pad_length = default_pad_length
        self._default_year_reset = default_year_reset

    # =========================================================================
    # Allocation
    # =========================================================================

    def next(self, tenant_id: UUID, entity_type: str, auto_create: bool = True) -> str:
        """
        Allocate and format the next identifier.

        Preconditions:
            - The caller is within an active database transaction.

        Raises:
            SequenceCounterNotFoundError: No counter and ``auto_create`` is False.
            ConcurrencyConflictError: Lost update detected on the counter row.
        """
        counter, value = self._allocate(tenant_id, entity_type, auto_create)
        return format_number(counter.prefix, value, counter.pad_length, self.clock.now().year)

    def next_value(self, tenant_id: UUID, entity_type: str, auto_create: bool = True) -> int:
        """Allocate the next raw counter value (always > 0)."""
        _, value = self._allocate(tenant_id, entity_type, auto_create)
        return value

    def _allocate(
        self, tenant_id: UUID, entity_type: str, auto_create: bool
    ) -> tuple[SequenceCounter, int]:
        counter = self._lock_counter(tenant_id, entity_type)

        if counter is None:
            if not auto_create:
                raise SequenceCounterNotFoundError(entity_type, str(tenant_id))
            counter = self._create_default_counter(tenant_id, entity_type)

        now = self.clock.now()
        read_value = counter.current_value
        last_used_year = counter.updated_at.year if counter.updated_at else None
        new_value = next_counter_value(
            counter.prefix, self._year_reset_enabled(counter), read_value, last_used_year, now.year,
        )

        # Conditional write on the value read under the lock
        result = self.session.execute(
            update(SequenceCounter)
            .where(
                SequenceCounter.id == counter.id,
                SequenceCounter.current_value == read_value,
            )
            .values(current_value=new_value, updated_at=now)
        )
        if result.rowcount != 1:
            logger.warning(
                "sequence_conflict_detected",
                extra={
                    "tenant_id": str(tenant_id),
                    "entity_type": entity_type,
                    "expected_value": read_value,
                },
            )
            raise ConcurrencyConflictError("sequence_counter", str(counter.id))

        counter.current_value = new_value
        counter.updated_at = now
        self.session.flush()

        if new_value == 1 and read_value > 0:
            logger.info(
                "sequence_year_reset",
                extra={
                    "tenant_id": str(tenant_id),
                    "entity_type": entity_type,
                    "previous_value": read_value,
                    "year": now.year,
                },
            )
        logger.debug(
            "sequence_allocated",
            extra={"tenant_id": str(tenant_id), "entity_type": entity_type, "value": new_value},
        )
        return counter, new_value

    def _defaults_for(self, entity_type: str) -> tuple[str, int, bool]:
        if entity_type in self.RESERVED_ENTITY_TYPES:
            return DEFAULT_PREFIX, DEFAULT_PAD_LENGTH, False
        return self._default_prefix, self._default_pad_length, self._default_year_reset

    def _year_reset_enabled(self, counter: SequenceCounter) -> bool:
        return counter.year_reset and counter.entity_type not in self.RESERVED_ENTITY_TYPES

    def _reject_reserved(self, entity_type: str) -> None:
        if entity_type in self.RESERVED_ENTITY_TYPES:
            raise SequenceCounterReservedError(entity_type)

    def _lock_counter(self, tenant_id: UUID, entity_type: str) -> SequenceCounter | None:
        return self.session.execute(
            select(SequenceCounter)
            .where(
                SequenceCounter.tenant_id == tenant_id,
                SequenceCounter.entity_type == entity_type,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _create_default_counter(self, tenant_id: UUID, entity_type: str) -> SequenceCounter:
        # Another transaction may create the same counter concurrently.
        # A savepoint keeps the caller's other work if our insert loses.
        savepoint = self.session.begin_nested()
        try:
            prefix, pad_length, year_reset = self._defaults_for(entity_type)
            now = self.clock.now()
            counter = SequenceCounter(
                tenant_id=tenant_id,
                entity_type=entity_type,
                prefix=prefix,
                pad_length=pad_length,
                year_reset=year_reset,
                current_value=0,
                created_at=now,
                updated_at=now,
            )
            self.session.add(counter)
            self.session.flush()
            savepoint.commit()
            logger.info(
                "sequence_counter_created",
                extra={"tenant_id": str(tenant_id), "entity_type": entity_type, "lazy": True},
            )
            return counter
        except IntegrityError:
            logger.debug(
                "sequence_counter_race_retry",
                extra={"tenant_id": str(tenant_id), "entity_type": entity_type},
            )
            savepoint.rollback()
            counter = self._lock_counter(tenant_id, entity_type)
            if counter is None:
                raise
            return counter

    # =========================================================================
    # Preview
    # =========================================================================

    def preview(self, prefix: str, current_value: int, pad_length: int) -> str:
        """Render the number that follows ``current_value``.  Writes nothing."""
        return format_number(prefix, current_value + 1, pad_length, self.clock.now().year)

    def preview_next(self, tenant_id: UUID, entity_type: str) -> str:
        """Render what ``next()`` would return for a stored counter right now."""
        counter = self._find_counter(tenant_id, entity_type)
        if counter is None:
            prefix, pad_length, _ = self._defaults_for(entity_type)
            return self.preview(prefix, 0, pad_length)

        now = self.clock.now()
        value = next_counter_value(
            counter.prefix,
            self._year_reset_enabled(counter),
            counter.current_value,
            counter.updated_at.year if counter.updated_at else None,
            now.year,
        )
        return format_number(counter.prefix, value, counter.pad_length, now.year)

    # =========================================================================
    # Counter administration
    # =========================================================================

    def get_counter(self, tenant_id: UUID, entity_type: str) -> SequenceCounterInfo:
        counter = self._find_counter(tenant_id, entity_type)
        if counter is None:
            raise SequenceCounterNotFoundError(entity_type, str(tenant_id))
        return counter.to_dto()

    def list_counters(self, tenant_id: UUID) -> list[SequenceCounterInfo]:
        counters = self.session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.tenant_id == tenant_id)
            .order_by(SequenceCounter.entity_type)
        ).scalars().all()
        return [c.to_dto() for c in counters]

    def create_counter(
        self,
        tenant_id: UUID,
        entity_type: str,
        prefix: str = DEFAULT_PREFIX,
        pad_length: int = DEFAULT_PAD_LENGTH,
        year_reset: bool = False,
    ) -> SequenceCounterInfo:
        """
        Create a counter with explicit formatting.

        Raises:
            SequenceCounterExistsError: The pair already has a counter.
            SequenceCounterReservedError: ``entity_type`` is kernel-owned.
        """
        self._reject_reserved(entity_type)
        if self._find_counter(tenant_id, entity_type) is not None:
            raise SequenceCounterExistsError(entity_type, str(tenant_id))
        if pad_length < 0:
            raise ValueError(f"Pad length must be non-negative, got {pad_length}")

        now = self.clock.now()
        counter = SequenceCounter(
            tenant_id=tenant_id,
            entity_type=entity_type,
            prefix=prefix,
            pad_length=pad_length,
            year_reset=year_reset,
            current_value=0,
            created_at=now,
            updated_at=now,
        )
        savepoint = self.session.begin_nested()
        try:
            self.session.add(counter)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise SequenceCounterExistsError(entity_type, str(tenant_id)) from None

        logger.info(
            "sequence_counter_created",
            extra={
                "tenant_id": str(tenant_id),
                "entity_type": entity_type,
                "prefix": prefix,
                "pad_length": pad_length,
                "year_reset": year_reset,
            },
        )
        return counter.to_dto()

    def ensure_counter(
        self,
        tenant_id: UUID,
        entity_type: str,
        prefix: str = DEFAULT_PREFIX,
        pad_length: int = DEFAULT_PAD_LENGTH,
        year_reset: bool = False,
    ) -> SequenceCounterInfo:
        """Return the existing counter, creating it with the given formatting if absent."""
        self._reject_reserved(entity_type)
        existing = self._find_counter(tenant_id, entity_type)
        if existing is not None:
            return existing.to_dto()
        return self.create_counter(tenant_id, entity_type, prefix, pad_length, year_reset)

    def update_counter(
        self,
        tenant_id: UUID,
        entity_type: str,
        *,
        prefix: str | None = None,
        pad_length: int | None = None,
        year_reset: bool | None = None,
    ) -> SequenceCounterInfo:
        """
        Change a counter's formatting.

        ``entity_type`` and ``current_value`` are never editable.  The row is
        locked so the change cannot interleave with an allocation.
        ``updated_at`` is left alone: it records the last allocation, which
        the year reset reads.
        """
        self._reject_reserved(entity_type)
        counter = self._lock_counter(tenant_id, entity_type)
        if counter is None:
            raise SequenceCounterNotFoundError(entity_type, str(tenant_id))

        if prefix is not None:
            counter.prefix = prefix
        if pad_length is not None:
            if pad_length < 0:
                raise ValueError(f"Pad length must be non-negative, got {pad_length}")
            counter.pad_length = pad_length
        if year_reset is not None:
            counter.year_reset = year_reset
        self.session.flush()

        logger.info(
            "sequence_counter_updated",
            extra={
                "tenant_id": str(tenant_id),
                "entity_type": entity_type,
                "prefix": counter.prefix,
                "pad_length": counter.pad_length,
                "year_reset": counter.year_reset,
            },
        )
        return counter.to_dto()

    def delete_counter(self, tenant_id: UUID, entity_type: str) -> None:
        """
        Delete a counter that has not issued any number.

        Raises:
            SequenceCounterNotFoundError: No such counter.
            SequenceCounterReservedError: ``entity_type`` is kernel-owned.
            SequenceCounterInUseError: ``current_value`` is not 0.
        """
        self._reject_reserved(entity_type)
        counter = self._lock_counter(tenant_id, entity_type)
        if counter is None:
            raise SequenceCounterNotFoundError(entity_type, str(tenant_id))
        if counter.current_value != 0:
            raise SequenceCounterInUseError(entity_type, counter.current_value)

        self.session.delete(counter)
        self.session.flush()
        logger.info(
            "sequence_counter_deleted",
            extra={"tenant_id": str(tenant_id), "entity_type": entity_type},
        )

    def _find_counter(self, tenant_id: UUID, entity_type: str) -> SequenceCounter | None:
        return self.session.execute(
            select(SequenceCounter).where(
                SequenceCounter.tenant_id == tenant_id,
                SequenceCounter.entity_type == entity_type,
            )
        ).scalar_one_or_none()
