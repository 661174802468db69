"""
SequenceService -- yearly folio numbers from locked counter rows.

Dispatch notes (``DN-2024-0001``) and controlled ledger entries
(``CSL-MG-2024-0001``) are numbered per kind and per calendar year.  Each
``kind:year`` pair owns one row in ``sequence_counters``; allocating a
number locks that row (``SELECT ... FOR UPDATE``), so two operators
generating notes at the same moment queue behind each other instead of
reading the same maximum.

The increment belongs to the caller's transaction: a rolled-back dispatch
note gives its number back.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from magistral_kernel.db.base import Base
from magistral_kernel.logging_config import get_logger
from magistral_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # "<kind>:<year>", e.g. "dispatch_note:2024"
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def format_folio(prefix: str, year: int, value: int) -> str:
    """``DN`` / 2024 / 7 -> ``DN-2024-0007``.  Values past 9999 keep every digit."""
    return f"{prefix}-{year}-{value:04d}"


class SequenceService(BaseService):
    """Allocates sequence values inside the caller's transaction; flushes only."""

    DISPATCH_NOTE = "dispatch_note"
    CONTROLLED_LEDGER = "controlled_ledger"

    def _select(self, name: str, lock: bool):
        stmt = select(SequenceCounter).where(SequenceCounter.name == name)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.session.execute(stmt).scalar_one_or_none()

    def _create_counter(self, name: str) -> SequenceCounter | None:
        """
        Insert the first row of a sequence inside a savepoint.

        Returns None when another transaction inserted it first; the
        caller then locks the winner's row.
        """
        savepoint = self.session.begin_nested()
        counter = SequenceCounter(name=name, current_value=0)
        self.session.add(counter)
        try:
            self.session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_created_concurrently", extra={"sequence_name": name})
            return None
        savepoint.commit()
        return counter

    def next_value(self, sequence_name: str) -> int:
        """Lock, increment and return the counter; the first value is 1."""
        counter = self._select(sequence_name, lock=True)
        if counter is None:
            counter = self._create_counter(sequence_name) or self._select(sequence_name, lock=True)
            if counter is None:
                raise RuntimeError(f"Sequence counter {sequence_name!r} vanished during creation")

        counter.current_value += 1
        self.session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def next_folio(self, kind: str, prefix: str, year: int) -> str:
        return format_folio(prefix, year, self.next_value(f"{kind}:{year}"))

    def current_value(self, sequence_name: str) -> int | None:
        """Last allocated value, or None for a sequence never used."""
        counter = self._select(sequence_name, lock=False)
        return counter.current_value if counter else None
