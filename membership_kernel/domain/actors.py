"""
Reserved actor identities.

Automatic processes (the cancellation scheduler, lazily created sequence
counters) attribute their writes to a stable, well-known id so the audit
trail can tell machine-initiated transitions from human ones.  Deployments
may point ``system_actor_id`` in the configuration at a seeded system user
instead.
"""

from uuid import UUID

SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-00000000c0de")


def is_system_actor(actor_id: UUID, system_actor_id: UUID = SYSTEM_ACTOR_ID) -> bool:
    return actor_id == system_actor_id
