"""
membership_batch -- background processing of the membership system.

Provides the cancellation scheduler: an in-process polling loop that finds,
across all tenants, members whose notice period has expired and drives
them to LEFT through ``MemberLifecycleService.change_status``, the same
entry point interactive requests use.

Architecture:
    membership_batch/ is a top-level package.  Nothing in
    membership_kernel imports from membership_batch.

Invariants:
    - One session and transaction per member; a failure on one member
      never affects another.
    - All timestamps come from the injected Clock.
    - Bounded per-member runtime; a stuck member is abandoned.
    - Graceful shutdown between members.
"""
