"""
Tests for CancellationScheduler.

Members are seeded and committed through session_scope so that every
scheduler item runs in its own session and transaction, as in production.
"""

import threading
import time
from datetime import date, timedelta
from uuid import uuid4

from sqlalchemy.orm import sessionmaker

from membership_batch.domain.types import CancellationOutcome
from membership_batch.services.cancellation_scheduler import EXIT_REASON, CancellationScheduler
from membership_kernel.db.engine import build_engine, create_tables, session_scope
from membership_kernel.domain.actors import SYSTEM_ACTOR_ID
from membership_kernel.domain.member_status import LeftCategory, MemberStatus
from membership_kernel.exceptions import ConcurrencyConflictError
from membership_kernel.services.member_lifecycle_service import MemberLifecycleService
from membership_kernel.services.member_service import MemberService
from membership_kernel.services.membership_period_service import MembershipPeriodService
from membership_kernel.services.status_history_service import StatusHistoryService

NOTICE_DATE = date(2026, 6, 10)


def _seed(session_factory, clock, tenant_id, actor_id, status="ACTIVE", notice=NOTICE_DATE):
    """Commit one admitted member, optionally with a cancellation notice."""
    with session_scope(session_factory) as session:
        lifecycle = MemberLifecycleService(session, clock)
        member = MemberService(session, clock).create_member(tenant_id, "Ada", "L", actor_id)
        lifecycle.change_status(
            tenant_id, member.member_id, "ACTIVE", "admitted", actor_id,
            effective_date=date(2025, 1, 1),
        )
        if status != "ACTIVE":
            lifecycle.change_status(tenant_id, member.member_id, status, "moved", actor_id)
        if notice is not None:
            lifecycle.set_cancellation(
                tenant_id, member.member_id, notice, notice - timedelta(days=90), actor_id,
            )
        return member.member_id


def _read(session_factory, clock, tenant_id, member_id):
    session = session_factory()
    try:
        member = MemberService(session, clock).get(tenant_id, member_id)
        history = StatusHistoryService(session, clock).list(tenant_id, member_id)
        periods = MembershipPeriodService(session, clock).list(tenant_id, member_id)
        return member, history, periods
    finally:
        session.close()


class _FailingLifecycle(MemberLifecycleService):
    def __init__(self, session, clock, fail_for):
        super().__init__(session, clock)
        self._fail_for = fail_for

    def change_status(self, tenant_id, member_id, *args, **kwargs):
        if member_id in self._fail_for:
            raise RuntimeError("simulated failure")
        return super().change_status(tenant_id, member_id, *args, **kwargs)


class _ConflictingLifecycle(MemberLifecycleService):
    """Raises a lost-update conflict while ``remaining`` is non-empty."""

    def __init__(self, session, clock, remaining):
        super().__init__(session, clock)
        self._remaining = remaining

    def change_status(self, tenant_id, member_id, *args, **kwargs):
        if self._remaining:
            self._remaining.pop()
            raise ConcurrencyConflictError("member", str(member_id))
        return super().change_status(tenant_id, member_id, *args, **kwargs)


class _StallingLifecycle(MemberLifecycleService):
    """Records the exit, then stalls while holding the transaction open."""

    def __init__(self, session, clock, release):
        super().__init__(session, clock)
        self._release = release

    def change_status(self, *args, **kwargs):
        result = super().change_status(*args, **kwargs)
        self._release.wait(5)
        return result


class TestRunOnce:
    def test_executes_expired_notice(self, session_factory, clock, tenant_id, actor_id):
        member_id = _seed(session_factory, clock, tenant_id, actor_id)
        scheduler = CancellationScheduler(session_factory, clock=clock)

        result = scheduler.run_once()

        assert result.candidates == 1
        assert result.executed == (member_id,)
        assert result.item_results[0].discarded_rows == 1
        assert not result.failures

        member, history, periods = _read(session_factory, clock, tenant_id, member_id)
        assert member.status == MemberStatus.LEFT
        exit_row = max(history, key=lambda r: r.seq)
        assert exit_row.to_status == MemberStatus.LEFT
        assert exit_row.actor_id == SYSTEM_ACTOR_ID
        assert exit_row.reason == EXIT_REASON
        assert exit_row.left_category == LeftCategory.VOLUNTARY
        assert exit_row.effective_date == NOTICE_DATE
        assert [r for r in history if r.effective_date == NOTICE_DATE] == [exit_row]
        assert periods[0].leave_date == NOTICE_DATE

    def test_notice_due_today_is_executed(self, session_factory, clock, tenant_id, actor_id):
        member_id = _seed(session_factory, clock, tenant_id, actor_id, notice=clock.today())

        result = CancellationScheduler(session_factory, clock=clock).run_once()

        assert result.executed == (member_id,)

    def test_future_notice_not_due(self, session_factory, clock, tenant_id, actor_id):
        _seed(session_factory, clock, tenant_id, actor_id, notice=clock.today() + timedelta(days=1))

        result = CancellationScheduler(session_factory, clock=clock).run_once()

        assert result.candidates == 0

    def test_members_without_notice_ignored(self, session_factory, clock, tenant_id, actor_id):
        _seed(session_factory, clock, tenant_id, actor_id, notice=None)

        assert CancellationScheduler(session_factory, clock=clock).find_due() == []

    def test_suspended_member_leaves_voluntarily(
        self, session_factory, clock, tenant_id, actor_id,
    ):
        member_id = _seed(session_factory, clock, tenant_id, actor_id, status="SUSPENDED")

        CancellationScheduler(session_factory, clock=clock).run_once()

        _, history, _ = _read(session_factory, clock, tenant_id, member_id)
        assert max(history, key=lambda r: r.seq).left_category == LeftCategory.VOLUNTARY

    def test_runs_across_tenants(
        self, session_factory, clock, tenant_id, other_tenant_id, actor_id,
    ):
        first = _seed(session_factory, clock, tenant_id, actor_id)
        second = _seed(session_factory, clock, other_tenant_id, actor_id)

        result = CancellationScheduler(session_factory, clock=clock).run_once()

        assert set(result.executed) == {first, second}

    def test_second_run_finds_nothing(self, session_factory, clock, tenant_id, actor_id):
        _seed(session_factory, clock, tenant_id, actor_id)
        scheduler = CancellationScheduler(session_factory, clock=clock)
        scheduler.run_once()

        result = scheduler.run_once()

        assert result.candidates == 0
        assert scheduler.tick() == 0

    def test_configured_system_actor(self, session_factory, clock, tenant_id, actor_id):
        robot = uuid4()
        member_id = _seed(session_factory, clock, tenant_id, actor_id)

        CancellationScheduler(session_factory, clock=clock, system_actor_id=robot).run_once()

        _, history, _ = _read(session_factory, clock, tenant_id, member_id)
        assert max(history, key=lambda r: r.seq).actor_id == robot

    def test_run_logged(self, session_factory, clock, tenant_id, actor_id, captured_logs):
        _seed(session_factory, clock, tenant_id, actor_id)

        result = CancellationScheduler(session_factory, clock=clock).run_once()

        logs = captured_logs()
        [completed] = [r for r in logs if r["message"] == "cancellation_run_completed"]
        assert completed["run_id"] == str(result.run_id)
        assert completed["executed"] == 1
        [executed] = [r for r in logs if r["message"] == "cancellation_executed"]
        assert executed["actor_id"] == str(SYSTEM_ACTOR_ID)


class TestIsolation:
    def test_failure_does_not_stop_the_run(self, session_factory, clock, tenant_id, actor_id):
        broken = _seed(session_factory, clock, tenant_id, actor_id, notice=date(2026, 6, 1))
        healthy = _seed(session_factory, clock, tenant_id, actor_id, notice=date(2026, 6, 2))
        scheduler = CancellationScheduler(
            session_factory,
            clock=clock,
            lifecycle_factory=lambda s: _FailingLifecycle(s, clock, {broken}),
        )

        result = scheduler.run_once()

        assert result.executed == (healthy,)
        [failure] = result.failures
        assert failure.member_id == broken
        assert failure.outcome == CancellationOutcome.FAILED
        assert failure.error_code == "INTERNAL_ERROR"

        member, history, _ = _read(session_factory, clock, tenant_id, broken)
        assert member.status == MemberStatus.ACTIVE
        assert member.cancellation_date == date(2026, 6, 1)
        assert any(r.effective_date == date(2026, 6, 1) for r in history)

    def test_timeout_does_not_stop_the_run(self, session_factory, clock, tenant_id, actor_id):
        slow = _seed(session_factory, clock, tenant_id, actor_id, notice=date(2026, 6, 1))
        fast = _seed(session_factory, clock, tenant_id, actor_id, notice=date(2026, 6, 2))
        release = threading.Event()
        calls = []

        def factory(session):
            calls.append(session)
            if len(calls) == 1:
                release.wait(5)
            return MemberLifecycleService(session, clock)

        scheduler = CancellationScheduler(
            session_factory, clock=clock, item_timeout_seconds=0.2, lifecycle_factory=factory,
        )
        try:
            result = scheduler.run_once()
        finally:
            release.set()

        assert result.executed == (fast,)
        [timed_out] = result.failures
        assert timed_out.member_id == slow
        assert timed_out.outcome == CancellationOutcome.TIMED_OUT
        assert timed_out.error_code == "ITEM_TIMEOUT"

        time.sleep(0.1)
        member, _, _ = _read(session_factory, clock, tenant_id, slow)
        assert member.status == MemberStatus.ACTIVE

    def test_revoked_before_processing_is_skipped(
        self, session_factory, clock, tenant_id, actor_id,
    ):
        member_id = _seed(session_factory, clock, tenant_id, actor_id)
        scheduler = CancellationScheduler(session_factory, clock=clock)
        [item] = scheduler.find_due()
        with session_scope(session_factory) as session:
            MemberLifecycleService(session, clock).revoke_cancellation(
                tenant_id, member_id, actor_id, "withdrawn",
            )

        outcome = scheduler._run_item(item)

        assert outcome.outcome == CancellationOutcome.SKIPPED
        member, _, _ = _read(session_factory, clock, tenant_id, member_id)
        assert member.status == MemberStatus.ACTIVE

    def test_conflict_is_retried(self, session_factory, clock, tenant_id, actor_id):
        member_id = _seed(session_factory, clock, tenant_id, actor_id)
        remaining = [1]
        scheduler = CancellationScheduler(
            session_factory,
            clock=clock,
            lifecycle_factory=lambda s: _ConflictingLifecycle(s, clock, remaining),
            conflict_retry_attempts=2,
        )

        result = scheduler.run_once()

        assert result.executed == (member_id,)
        assert result.item_results[0].discarded_rows == 1

    def test_conflict_exhausted_is_a_failure(self, session_factory, clock, tenant_id, actor_id):
        member_id = _seed(session_factory, clock, tenant_id, actor_id)
        remaining = [1, 2]
        scheduler = CancellationScheduler(
            session_factory,
            clock=clock,
            lifecycle_factory=lambda s: _ConflictingLifecycle(s, clock, remaining),
            conflict_retry_attempts=2,
        )

        result = scheduler.run_once()

        [failure] = result.failures
        assert failure.error_code == "CONCURRENCY_CONFLICT"
        member, _, _ = _read(session_factory, clock, tenant_id, member_id)
        assert member.status == MemberStatus.ACTIVE

    def test_abandoned_item_rolls_back_and_releases(
        self, tmp_path, clock, tenant_id, actor_id, captured_logs,
    ):
        # The stalled worker and the reader need separate connections
        engine = build_engine(f"sqlite:///{tmp_path / 'abandon.db'}")
        create_tables(engine)
        session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        member_id = _seed(session_factory, clock, tenant_id, actor_id)
        release = threading.Event()
        scheduler = CancellationScheduler(
            session_factory,
            clock=clock,
            item_timeout_seconds=0.2,
            lifecycle_factory=lambda s: _StallingLifecycle(s, clock, release),
        )
        try:
            result = scheduler.run_once()
        finally:
            release.set()

        [timed_out] = result.failures
        assert timed_out.outcome == CancellationOutcome.TIMED_OUT

        released = []
        deadline = time.monotonic() + 5
        while not released and time.monotonic() < deadline:
            released = [r for r in captured_logs() if r["message"] == "cancellation_item_released"]
            time.sleep(0.05)
        assert released[0]["member_id"] == str(member_id)

        member, history, _ = _read(session_factory, clock, tenant_id, member_id)
        engine.dispose()
        assert member.status == MemberStatus.ACTIVE
        assert member.cancellation_date == NOTICE_DATE
        assert all(r.to_status != MemberStatus.LEFT for r in history)


class TestLifecycle:
    def test_stop_between_members(self, session_factory, clock, tenant_id, actor_id):
        first = _seed(session_factory, clock, tenant_id, actor_id, notice=date(2026, 6, 1))
        _seed(session_factory, clock, tenant_id, actor_id, notice=date(2026, 6, 2))
        holder = {}

        def factory(session):
            holder["scheduler"].stop(timeout=0)
            return MemberLifecycleService(session, clock)

        scheduler = CancellationScheduler(session_factory, clock=clock, lifecycle_factory=factory)
        holder["scheduler"] = scheduler

        result = scheduler.run_once()

        assert result.executed == (first,)
        assert result.stopped_early
        assert result.candidates == 2

    def test_start_and_stop(self, tmp_path, clock, tenant_id, actor_id):
        # Background thread and reader need separate connections
        engine = build_engine(f"sqlite:///{tmp_path / 'scheduler.db'}")
        create_tables(engine)
        session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        member_id = _seed(session_factory, clock, tenant_id, actor_id)
        scheduler = CancellationScheduler(session_factory, clock=clock, interval_seconds=3600)

        scheduler.start()
        assert scheduler.is_running
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            member, _, _ = _read(session_factory, clock, tenant_id, member_id)
            if member.status == MemberStatus.LEFT:
                break
            time.sleep(0.05)
        scheduler.stop(timeout=5)
        engine.dispose()

        assert not scheduler.is_running
        assert member.status == MemberStatus.LEFT
