"""
Bounded transparent retry of units of work that hit a lost update.

ConcurrencyConflictError is the only retryable kernel error.  Each attempt
runs the whole operation again in a fresh session and transaction, so the
retried attempt re-reads the state the winning writer committed.

Usage:
    member = retry_on_conflict(
        session_factory,
        lambda session: MemberLifecycleService(session, clock).change_status(...),
        max_attempts=3,
    )
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from sqlalchemy.orm import Session, sessionmaker

from membership_kernel.db.engine import session_scope
from membership_kernel.exceptions import ConcurrencyConflictError
from membership_kernel.logging_config import get_logger

logger = get_logger("services.conflict_retry")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3


def retry_on_conflict(
    session_factory: sessionmaker[Session],
    operation: Callable[[Session], T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_seconds: float = 0.05,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` in its own committed transaction, retrying on conflict.

    Any other exception propagates immediately.  After ``max_attempts``
    conflicts the last ConcurrencyConflictError is re-raised.
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    for attempt in range(1, max_attempts + 1):
        try:
            with session_scope(session_factory) as session:
                return operation(session)
        except ConcurrencyConflictError as exc:
            if attempt == max_attempts:
                logger.error(
                    "conflict_retry_exhausted",
                    extra={
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "entity_type": exc.entity_type,
                        "entity_id": exc.entity_id,
                    },
                )
                raise
            logger.warning(
                "conflict_retry",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "entity_type": exc.entity_type,
                    "entity_id": exc.entity_id,
                },
            )
            sleep(backoff_seconds * attempt)

    raise AssertionError("unreachable")
