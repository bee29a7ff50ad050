"""
Pure domain layer: status policy, number formatting, clock, DTOs.

Nothing in this package performs I/O (SystemClock excepted).
"""

from membership_kernel.domain.actors import SYSTEM_ACTOR_ID, is_system_actor
from membership_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from membership_kernel.domain.dtos import (
    BulkStatusChangeResult,
    MemberInfo,
    MembershipPeriodInfo,
    SequenceCounterInfo,
    SkippedMember,
    StatusChangePreview,
    StatusTransitionInfo,
)
from membership_kernel.domain.member_status import (
    ACTIVE_FAMILY,
    CANCELLABLE_STATUSES,
    VALID_TRANSITIONS,
    LeftCategory,
    MemberStatus,
    OpenPeriodRef,
    StatusChangePlan,
    allowed_targets,
    is_terminal,
    is_valid,
    plan_status_change,
)

__all__ = [
    "SYSTEM_ACTOR_ID",
    "is_system_actor",
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "MemberInfo",
    "StatusTransitionInfo",
    "MembershipPeriodInfo",
    "StatusChangePreview",
    "SkippedMember",
    "BulkStatusChangeResult",
    "SequenceCounterInfo",
    "MemberStatus",
    "LeftCategory",
    "ACTIVE_FAMILY",
    "CANCELLABLE_STATUSES",
    "VALID_TRANSITIONS",
    "OpenPeriodRef",
    "StatusChangePlan",
    "allowed_targets",
    "is_terminal",
    "is_valid",
    "plan_status_change",
]
