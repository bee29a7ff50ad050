"""
Real-thread tests against a file-backed SQLite database.

Each worker uses its own session and connection; SQLite's immediate
transactions serialise the writers the way row locks do on PostgreSQL.
"""

import threading
from datetime import date

import pytest
from sqlalchemy.orm import sessionmaker

from membership_kernel.db.engine import build_engine, create_tables, session_scope
from membership_kernel.domain.member_status import MemberStatus
from membership_kernel.exceptions import InvalidTransitionError
from membership_kernel.services.member_lifecycle_service import MemberLifecycleService
from membership_kernel.services.member_service import MemberService
from membership_kernel.services.sequence_service import SequenceService
from membership_kernel.services.status_history_service import StatusHistoryService

pytestmark = pytest.mark.slow_locks

WORKERS = 8


@pytest.fixture
def file_session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'membership.db'}")
    create_tables(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


def _run_in_threads(target, count):
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            value = target()
            with lock:
                results.append(value)
        except Exception as exc:
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results, errors


class TestParallelSequence:
    def test_numbers_are_unique_and_gap_free(self, file_session_factory, clock, tenant_id):
        with session_scope(file_session_factory) as session:
            SequenceService(session, clock).create_counter(
                tenant_id, SequenceService.MEMBER, prefix="M-", pad_length=4,
            )

        def allocate():
            with session_scope(file_session_factory) as session:
                return SequenceService(session, clock).next(tenant_id, SequenceService.MEMBER)

        results, errors = _run_in_threads(allocate, WORKERS)

        assert errors == []
        assert sorted(results) == [f"M-{n:04d}" for n in range(1, WORKERS + 1)]

    def test_lazy_counter_creation_race(self, file_session_factory, clock, tenant_id):
        def allocate():
            with session_scope(file_session_factory) as session:
                return SequenceService(session, clock).next_value(tenant_id, "RACE")

        results, errors = _run_in_threads(allocate, WORKERS)

        assert errors == []
        assert sorted(results) == list(range(1, WORKERS + 1))


class TestParallelStatusChange:
    def test_only_one_exit_wins(self, file_session_factory, clock, tenant_id, actor_id):
        with session_scope(file_session_factory) as session:
            member = MemberService(session, clock).create_member(tenant_id, "Ada", "L", actor_id)
            MemberLifecycleService(session, clock).change_status(
                tenant_id, member.member_id, "ACTIVE", "admitted", actor_id,
                effective_date=date(2025, 1, 1),
            )

        def leave():
            with session_scope(file_session_factory) as session:
                return MemberLifecycleService(session, clock).change_status(
                    tenant_id, member.member_id, "LEFT", "left", actor_id,
                )

        results, errors = _run_in_threads(leave, 4)

        assert len(results) == 1
        assert len(errors) == 3
        assert all(isinstance(e, InvalidTransitionError) for e in errors)

        session = file_session_factory()
        try:
            history = StatusHistoryService(session, clock).list(tenant_id, member.member_id)
        finally:
            session.close()
        assert [r.to_status for r in history].count(MemberStatus.LEFT) == 1

    def test_parallel_moves_keep_projection_consistent(
        self, file_session_factory, clock, tenant_id, actor_id,
    ):
        with session_scope(file_session_factory) as session:
            member = MemberService(session, clock).create_member(tenant_id, "Ada", "L", actor_id)
            MemberLifecycleService(session, clock).change_status(
                tenant_id, member.member_id, "ACTIVE", "admitted", actor_id,
                effective_date=date(2025, 1, 1),
            )

        targets = iter(["DORMANT", "SUSPENDED", "PROBATION", "ACTIVE"])
        target_lock = threading.Lock()

        def move():
            with target_lock:
                target = next(targets)
            with session_scope(file_session_factory) as session:
                return MemberLifecycleService(session, clock).change_status(
                    tenant_id, member.member_id, target, "move", actor_id,
                )

        results, errors = _run_in_threads(move, 4)

        assert all(isinstance(e, InvalidTransitionError) for e in errors)
        session = file_session_factory()
        try:
            current = MemberService(session, clock).get(tenant_id, member.member_id)
            latest = StatusHistoryService(session, clock).latest(tenant_id, member.member_id)
        finally:
            session.close()
        assert current.status == latest.to_status
        assert current.version == 2 + len(results)
