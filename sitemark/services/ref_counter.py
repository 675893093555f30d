"""
Reference Number Allocator

Issues per-file refNo values from the ``ref_counters`` row with an optimistic
compare-and-swap:

    current = SELECT last_ref
    UPDATE ref_counters SET last_ref = current + 1
     WHERE file_id = :id AND last_ref = :current

Zero rows updated (or a duplicate insert of the first row) means another
writer got there first; the transaction is rolled back and retried. The write
that consumes the refNo runs inside the same transaction, so an exhausted or
failed allocation never leaves a half-created annotation behind.
"""

import logging
from typing import Callable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from sitemark.config import settings
from sitemark.db import RefCounter, get_session_factory
from sitemark.errors import RefCounterCorruptError, RefCounterExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# refNos are shown to people and round-trip through JSON clients
MAX_SAFE_REF = 2 ** 53 - 1


class CounterConflict(Exception):
    """Concurrent modification detected; the attempt must be retried."""


class RefCounterAllocator:
    """Allocates monotonically increasing refNos per FileRecord."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.max_attempts = max_attempts or settings.ref_counter_max_attempts

    def _check_current(self, file_id: str, value) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise RefCounterCorruptError(
                f"Counter for {file_id} holds a non-integer value",
                details={"file_id": file_id, "value": repr(value)},
            )
        if value < 0 or value >= MAX_SAFE_REF:
            raise RefCounterCorruptError(
                f"Counter for {file_id} is out of range",
                details={"file_id": file_id, "value": value},
            )
        return value

    def bump(self, session: Session, file_id: str) -> int:
        """Advance the counter inside the caller's transaction; returns the new value."""
        current = session.execute(
            select(RefCounter.last_ref).where(RefCounter.file_id == file_id)
        ).scalar_one_or_none()

        if current is None:
            session.add(RefCounter(file_id=file_id, last_ref=1))
            try:
                session.flush()
            except IntegrityError as e:
                raise CounterConflict(f"counter row for {file_id} created concurrently") from e
            return 1

        current = self._check_current(file_id, current)
        next_ref = current + 1
        result = session.execute(
            update(RefCounter)
            .where(RefCounter.file_id == file_id, RefCounter.last_ref == current)
            .values(last_ref=next_ref)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CounterConflict(f"counter for {file_id} moved past {current}")
        return next_ref

    def _attempt(self, file_id: str, write: Optional[Callable[[Session, int], T]]):
        session = self.session_factory()
        try:
            ref_no = self.bump(session, file_id)
            result = write(session, ref_no) if write else ref_no
            session.commit()
            logger.debug(f"Committed refNo {ref_no} for file {file_id}")
            return result
        except (IntegrityError, OperationalError) as e:
            session.rollback()
            raise CounterConflict(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_with_ref_no(self, file_id: str, write: Optional[Callable[[Session, int], T]] = None):
        """
        Allocate a refNo and run ``write(session, ref_no)`` in the same transaction.

        Args:
            file_id: FileRecord id owning the counter
            write: Dependent record write; its return value is returned

        Returns:
            The write's return value, or the allocated refNo when no write is given

        Raises:
            RefCounterExhaustedError: Every attempt conflicted
            RefCounterCorruptError: Stored counter value is unusable
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(multiplier=0.01, max=0.5),
            retry=retry_if_exception_type(CounterConflict),
            before_sleep=lambda retry_state: logger.warning(
                f"Retrying refNo allocation for {file_id} "
                f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
            ),
        )
        try:
            return retrying(self._attempt, file_id, write)
        except RetryError as e:
            logger.error(f"refNo allocation for {file_id} gave up after {self.max_attempts} attempts")
            raise RefCounterExhaustedError(
                f"Could not allocate a reference number for {file_id}",
                details={"file_id": file_id, "attempts": self.max_attempts},
            ) from e

    def allocate_next(self, file_id: str) -> int:
        """Allocate the next refNo for a file."""
        return self.run_with_ref_no(file_id)

    def current(self, file_id: str) -> int:
        """Last issued refNo (0 if none)."""
        session = self.session_factory()
        try:
            value = session.execute(
                select(RefCounter.last_ref).where(RefCounter.file_id == file_id)
            ).scalar_one_or_none()
            return 0 if value is None else self._check_current(file_id, value)
        finally:
            session.close()
