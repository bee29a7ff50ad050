"""Shared member-row loading for the lifecycle, history and period services."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from membership_kernel.exceptions import MemberNotFoundError
from membership_kernel.models.member import Member


def load_member(
    session: Session,
    tenant_id: UUID,
    member_id: UUID,
    for_update: bool = False,
) -> Member:
    """
    Load a non-deleted member of ``tenant_id``.

    With ``for_update`` the row is locked until the transaction ends, which
    serialises concurrent lifecycle writes on the same member.

    Raises:
        MemberNotFoundError: Missing, soft-deleted, or owned by another tenant.
    """
    stmt = select(Member).where(
        Member.id == member_id,
        Member.tenant_id == tenant_id,
        Member.deleted_at.is_(None),
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)

    member = session.execute(stmt).scalar_one_or_none()
    if member is None:
        raise MemberNotFoundError(str(member_id), str(tenant_id))
    return member
