"""
Membership Kernel

The lifecycle engine of a multi-tenant club-management system:
- Member status state machine with a single source of truth for legality
- Append-mostly status history with guarded edits and soft-deletes
- Cancellation notice handling (set / revoke, executed by membership_batch)
- Bulk status changes with per-member isolation
- Atomic, prefix- and year-aware sequence numbers
"""

__version__ = "0.1.0"
