"""
Database-level constraints that back the service checks.

Rows are inserted directly, bypassing the services, to prove the schema
itself rejects them.
"""

from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError

from membership_kernel.domain.member_status import MemberStatus
from membership_kernel.models.membership_period import MembershipPeriod
from membership_kernel.models.member import Member
from membership_kernel.models.status_transition import StatusTransition


def _period(member, actor_id, join_date, leave_date=None):
    return MembershipPeriod(
        tenant_id=member.tenant_id,
        member_id=member.member_id,
        join_date=join_date,
        leave_date=leave_date,
        created_by_id=actor_id,
    )


class TestConstraints:
    def test_one_open_period_per_member(self, make_member, session, actor_id):
        member = make_member(MemberStatus.ACTIVE)

        session.add(_period(member, actor_id, date(2030, 1, 1)))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_closed_periods_not_limited(self, make_member, session, actor_id):
        member = make_member(MemberStatus.PENDING)

        session.add(_period(member, actor_id, date(2020, 1, 1), date(2020, 12, 31)))
        session.add(_period(member, actor_id, date(2021, 1, 1), date(2021, 12, 31)))
        session.flush()

    def test_member_number_unique_per_tenant(self, make_member, session, actor_id):
        existing = make_member(MemberStatus.PENDING)

        session.add(Member(
            tenant_id=existing.tenant_id,
            member_number=existing.member_number,
            first_name="Dup",
            last_name="Licate",
            status=MemberStatus.PENDING.value,
            created_by_id=actor_id,
        ))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_history_seq_unique_per_tenant(self, make_member, history_service, session, actor_id):
        member = make_member(MemberStatus.PENDING)
        [row] = history_service.list(member.tenant_id, member.member_id)

        session.add(StatusTransition(
            tenant_id=member.tenant_id,
            member_id=member.member_id,
            from_status="PENDING",
            to_status="PENDING",
            effective_date=date(2026, 1, 1),
            reason="copy",
            actor_id=actor_id,
            seq=row.seq,
            created_by_id=actor_id,
        ))
        with pytest.raises(IntegrityError):
            session.flush()
