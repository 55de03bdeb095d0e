"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly monotonically increasing sequence numbers for audit
    events and reimbursement batch numbers.  Uses a dedicated counter table
    with row-level locking (``SELECT ... FOR UPDATE``) to guarantee
    uniqueness and ordering under concurrent access.

Architecture position:
    Kernel > Services.  Called by AuditorService and the reimbursement
    batcher.

Invariants enforced:
    - Sequences are strictly monotonic.  The aggregate-max-plus-one pattern
      is never used; the locked counter row is the sole source of truth.
    - The increment is only visible after the caller's transaction commits.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from hrms_kernel.db.base import Base
from hrms_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """
    Sequence counter table.

    Each row represents a named sequence with its current value.
    """

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    AUDIT_EVENT = "audit_event"
    REIMBURSEMENT_BATCH = "reimbursement_batch"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        """
        Get the next value for a named sequence.

        Postconditions:
            - Returns an integer > 0 strictly greater than any previously
              returned value for this sequence name.
            - The counter row is locked until the transaction completes.
        """
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            # First use of this sequence.  A concurrent creator may win the
            # insert; the savepoint keeps the caller's work intact.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._session.execute(
                    select(SequenceCounter)
                    .where(SequenceCounter.name == sequence_name)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                ).scalar_one()

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Get the current value of a sequence without incrementing."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()

        return counter.current_value if counter else None
