"""
CancellationScheduler -- In-process polling executor of expired notices.

Contract:
    Periodically finds, across all tenants, non-deleted members in the
    active family whose ``cancellation_date`` is on or before today, and
    drives each of them to LEFT through ``MemberLifecycleService``.  Before
    the exit is recorded, same-date non-LEFT history rows of the member are
    soft-deleted; they would otherwise conflict visually with the automatic
    exit.

Architecture: membership_batch/services.  Uses membership_kernel services
    only; never reimplements the status policy.

Invariants enforced:
    - Same entry point as interactive callers; only the actor differs
      (the configured system actor).
    - Each member is processed in its own session and transaction: cleanup
      and exit commit together or not at all.
    - Per-member timeout: a member exceeding ``item_timeout_seconds`` is
      recorded as timed out and its transaction is never committed.
      The worker thread cannot be interrupted: it keeps its session, and on
      SQLite the database write lock, until it returns on its own and rolls
      back (logged as ``cancellation_item_released``).  The next member may
      wait on that lock.
    - Graceful shutdown: the stop signal is honoured between members.
    - A lost update on a member is retried in a fresh transaction up to
      ``conflict_retry_attempts`` times.
    - All timestamps from the injected Clock.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import date
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from membership_kernel.domain.actors import SYSTEM_ACTOR_ID
from membership_kernel.domain.clock import Clock, SystemClock
from membership_kernel.domain.member_status import ACTIVE_FAMILY, LeftCategory, MemberStatus
from membership_kernel.exceptions import ConcurrencyConflictError, MembershipKernelError
from membership_kernel.logging_config import LogContext, get_logger
from membership_kernel.models.member import Member
from membership_kernel.services.member_lifecycle_service import MemberLifecycleService
from membership_kernel.services.status_history_service import StatusHistoryService

from membership_batch.domain.types import (
    CancellationItemResult,
    CancellationOutcome,
    CancellationRunResult,
    DueCancellation,
)

logger = get_logger("batch.cancellation_scheduler")

DEFAULT_INTERVAL_SECONDS = 6 * 60 * 60
DEFAULT_ITEM_TIMEOUT_SECONDS = 60.0

EXIT_REASON = "automatic exit after notice period expiry"

_ACTIVE_FAMILY_VALUES = sorted(s.value for s in ACTIVE_FAMILY)


class CancellationScheduler:
    """Polling scheduler for expired cancellation notices.

    Contract:
        - ``run_once()`` performs one full pass and returns its result.
        - ``start()`` / ``stop()`` for background thread operation.
        - Respects stop signal between members.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Running two
          instances is safe (row locks plus the due re-check) but wasteful.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        system_actor_id: UUID = SYSTEM_ACTOR_ID,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        item_timeout_seconds: float = DEFAULT_ITEM_TIMEOUT_SECONDS,
        lifecycle_factory: Callable[[Session], MemberLifecycleService] | None = None,
        conflict_retry_attempts: int = 1,
    ):
        if conflict_retry_attempts < 1:
            raise ValueError(
                f"conflict_retry_attempts must be >= 1, got {conflict_retry_attempts}"
            )
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._system_actor_id = system_actor_id
        self._interval = interval_seconds
        self._item_timeout = item_timeout_seconds
        self._lifecycle_factory = lifecycle_factory or (
            lambda session: MemberLifecycleService(session, self._clock)
        )
        self._conflict_attempts = conflict_retry_attempts
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def find_due(self) -> list[DueCancellation]:
        """Cross-tenant candidate query.

        The session is closed before any member is processed, so no lock
        or open transaction outlives the query.
        """
        today = self._clock.today()
        session = self._session_factory()
        try:
            rows = session.execute(
                select(Member.tenant_id, Member.id, Member.cancellation_date)
                .where(
                    Member.deleted_at.is_(None),
                    Member.status.in_(_ACTIVE_FAMILY_VALUES),
                    Member.cancellation_date.is_not(None),
                    Member.cancellation_date <= today,
                )
                .order_by(Member.cancellation_date, Member.id)
            ).all()
            return [
                DueCancellation(tenant_id=t, member_id=m, cancellation_date=d)
                for t, m, d in rows
            ]
        finally:
            session.close()

    def run_once(self) -> CancellationRunResult:
        """Process every due member once."""
        run_id = uuid4()
        started_at = self._clock.now()
        start = time.monotonic()
        as_of = started_at.date()

        with LogContext.bind(run_id=run_id, actor_id=self._system_actor_id):
            due = self.find_due()
            logger.info(
                "cancellation_run_started",
                extra={"as_of": as_of, "candidates": len(due)},
            )

            item_results: list[CancellationItemResult] = []
            stopped_early = False
            for item in due:
                if self._stop_event.is_set():
                    stopped_early = True
                    logger.info(
                        "cancellation_run_interrupted",
                        extra={"remaining": len(due) - len(item_results)},
                    )
                    break
                item_results.append(self._run_item(item))

            result = CancellationRunResult(
                run_id=run_id,
                as_of=as_of,
                candidates=len(due),
                item_results=tuple(item_results),
                stopped_early=stopped_early,
                started_at=started_at,
                completed_at=self._clock.now(),
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            logger.info(
                "cancellation_run_completed",
                extra={
                    "candidates": result.candidates,
                    "executed": len(result.executed),
                    "skipped": len(result.skipped),
                    "failed": len(result.failures),
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    def tick(self) -> int:
        """One pass for the polling loop.  Returns the number of members moved to LEFT."""
        return len(self.run_once().executed)

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="cancellation-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current member to finish.

        Args:
            timeout: Max seconds to wait for the thread to finish.
        """
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        """Background polling loop. Exits when stop_event is set."""
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            # Wait for interval or until stopped
            self._stop_event.wait(timeout=self._interval)

    def _run_item(self, item: DueCancellation) -> CancellationItemResult:
        """Run one member on a worker thread bounded by the item timeout."""
        abandoned = threading.Event()
        start = time.monotonic()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cancellation-item")
        future = pool.submit(
            contextvars.copy_context().run, self._process_with_retry, item, abandoned,
        )
        try:
            outcome, discarded = future.result(timeout=self._item_timeout)
            return CancellationItemResult(
                tenant_id=item.tenant_id,
                member_id=item.member_id,
                outcome=outcome,
                discarded_rows=discarded,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except FuturesTimeoutError:
            abandoned.set()
            logger.error(
                "cancellation_item_timed_out",
                extra={
                    "tenant_id": str(item.tenant_id),
                    "member_id": str(item.member_id),
                    "timeout_seconds": self._item_timeout,
                },
            )
            return CancellationItemResult(
                tenant_id=item.tenant_id,
                member_id=item.member_id,
                outcome=CancellationOutcome.TIMED_OUT,
                error_code="ITEM_TIMEOUT",
                error_message=f"exceeded {self._item_timeout}s",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except Exception as exc:
            code = exc.code if isinstance(exc, MembershipKernelError) else "INTERNAL_ERROR"
            logger.exception(
                "cancellation_item_failed",
                extra={
                    "tenant_id": str(item.tenant_id),
                    "member_id": str(item.member_id),
                    "error_code": code,
                },
            )
            return CancellationItemResult(
                tenant_id=item.tenant_id,
                member_id=item.member_id,
                outcome=CancellationOutcome.FAILED,
                error_code=code,
                error_message=str(exc),
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        finally:
            pool.shutdown(wait=False)

    def _process_with_retry(
        self, item: DueCancellation, abandoned: threading.Event
    ) -> tuple[CancellationOutcome, int]:
        for attempt in range(1, self._conflict_attempts + 1):
            try:
                return self._process_member(item, abandoned)
            except ConcurrencyConflictError:
                if attempt == self._conflict_attempts or abandoned.is_set():
                    raise
                logger.warning(
                    "cancellation_conflict_retry",
                    extra={
                        "tenant_id": str(item.tenant_id),
                        "member_id": str(item.member_id),
                        "attempt": attempt,
                    },
                )
        raise AssertionError("unreachable")

    def _process_member(
        self, item: DueCancellation, abandoned: threading.Event
    ) -> tuple[CancellationOutcome, int]:
        """Clean up and execute the exit of one member in its own transaction."""
        began = time.monotonic()
        session = self._session_factory()
        try:
            lifecycle = self._lifecycle_factory(session)
            if abandoned.is_set():
                return CancellationOutcome.TIMED_OUT, 0

            with LogContext.bind(tenant_id=item.tenant_id, member_id=item.member_id):
                member = session.execute(
                    select(Member)
                    .where(
                        Member.id == item.member_id,
                        Member.tenant_id == item.tenant_id,
                        Member.deleted_at.is_(None),
                    )
                    .with_for_update()
                ).scalar_one_or_none()

                if not self._still_due(member):
                    session.rollback()
                    logger.info("cancellation_no_longer_due")
                    return CancellationOutcome.SKIPPED, 0

                exit_date: date = member.cancellation_date
                history = StatusHistoryService(session, self._clock)
                discarded = history.discard_provisional(
                    item.tenant_id, item.member_id, exit_date, self._system_actor_id,
                )
                lifecycle.change_status(
                    item.tenant_id,
                    item.member_id,
                    MemberStatus.LEFT,
                    EXIT_REASON,
                    self._system_actor_id,
                    effective_date=exit_date,
                    left_category=LeftCategory.VOLUNTARY,
                )

                if abandoned.is_set():
                    session.rollback()
                    logger.warning(
                        "cancellation_item_released",
                        extra={"held_ms": int((time.monotonic() - began) * 1000)},
                    )
                    return CancellationOutcome.TIMED_OUT, 0

                session.commit()
                logger.info(
                    "cancellation_executed",
                    extra={"effective_date": exit_date, "discarded_rows": discarded},
                )
                return CancellationOutcome.EXECUTED, discarded
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _still_due(self, member: Member | None) -> bool:
        if member is None or member.cancellation_date is None:
            return False
        if MemberStatus(member.status) not in ACTIVE_FAMILY:
            return False
        return member.cancellation_date <= self._clock.today()
