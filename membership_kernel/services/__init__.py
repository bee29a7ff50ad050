"""Kernel services: flush-only, caller-owned transactions."""

from membership_kernel.services.conflict_retry import retry_on_conflict
from membership_kernel.services.member_lifecycle_service import MemberLifecycleService
from membership_kernel.services.member_service import MemberService
from membership_kernel.services.membership_period_service import MembershipPeriodService
from membership_kernel.services.sequence_service import SequenceService
from membership_kernel.services.status_history_service import StatusHistoryService

__all__ = [
    "MemberLifecycleService",
    "MemberService",
    "MembershipPeriodService",
    "SequenceService",
    "StatusHistoryService",
    "retry_on_conflict",
]
