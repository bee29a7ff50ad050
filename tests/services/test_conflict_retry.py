"""Tests for retry_on_conflict."""

import pytest

from membership_kernel.domain.member_status import MemberStatus
from membership_kernel.exceptions import ConcurrencyConflictError, MemberNotFoundError
from membership_kernel.services.conflict_retry import retry_on_conflict
from membership_kernel.services.member_lifecycle_service import MemberLifecycleService
from membership_kernel.services.member_service import MemberService


class _FlakyOperation:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, session):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConcurrencyConflictError("member", "m-1")
        return "done"


class TestRetryOnConflict:
    def test_succeeds_after_conflicts(self, session_factory):
        operation = _FlakyOperation(failures=2)
        sleeps = []

        assert retry_on_conflict(session_factory, operation, sleep=sleeps.append) == "done"
        assert operation.calls == 3
        assert sleeps == [0.05, 0.1]

    def test_exhausted_reraises(self, session_factory, captured_logs):
        operation = _FlakyOperation(failures=5)

        with pytest.raises(ConcurrencyConflictError):
            retry_on_conflict(session_factory, operation, max_attempts=2, sleep=lambda s: None)

        assert operation.calls == 2
        assert any(r["message"] == "conflict_retry_exhausted" for r in captured_logs())

    def test_other_errors_not_retried(self, session_factory):
        calls = []

        def operation(session):
            calls.append(1)
            raise MemberNotFoundError("m-1")

        with pytest.raises(MemberNotFoundError):
            retry_on_conflict(session_factory, operation, sleep=lambda s: None)

        assert len(calls) == 1

    def test_invalid_attempts(self, session_factory):
        with pytest.raises(ValueError):
            retry_on_conflict(session_factory, lambda s: None, max_attempts=0)

    def test_commits_the_unit_of_work(self, session_factory, clock, tenant_id, actor_id):
        member = retry_on_conflict(
            session_factory,
            lambda s: MemberService(s, clock).create_member(tenant_id, "Ada", "L", actor_id),
        )
        retry_on_conflict(
            session_factory,
            lambda s: MemberLifecycleService(s, clock).change_status(
                tenant_id, member.member_id, "ACTIVE", "admitted", actor_id,
            ),
        )

        session = session_factory()
        try:
            assert MemberService(session, clock).get(tenant_id, member.member_id).status == (
                MemberStatus.ACTIVE
            )
        finally:
            session.close()
