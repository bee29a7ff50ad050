"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every service in the kernel layer.  Concrete services receive a
    SQLAlchemy ``Session`` and an optional ``Clock`` and persist through
    ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back the outer transaction.
      Request handlers, the bulk endpoint's savepoints and the scheduler's
      per-member session own commit/rollback.
"""

from abc import ABC

from sqlalchemy.orm import Session

from membership_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Guarantees:
        - The service never calls ``session.commit()`` -- the caller
          controls transaction boundaries, so a status change, its history
          row and its period side effects land atomically.
        - All timestamps written come from ``self.clock``.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT check permissions; tenant and actor ids arrive pre-checked.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
