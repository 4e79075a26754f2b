"""Order number minting.

Numbers look like ``ORD26000042``: prefix, two-digit year, then a counter
scoped to that year. The counter lives in the ``sequences`` table and is
bumped with a single ``UPDATE value = value + 1`` so concurrent checkouts
never see the same value and restarts never reset it.
"""

from datetime import datetime
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.domain.errors import ConflictError
from app.domain.models import Sequence, utcnow
from shared.core import get_logger

logger = get_logger(__name__)


class OrderIdGenerator:
    def __init__(
        self,
        db: Session,
        prefix: str = "ORD",
        width: int = 6,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
    ):
        self.db = db
        self.prefix = prefix
        self.width = width
        self.clock = clock
        self.max_attempts = max_attempts

    def next(self) -> str:
        """Mint the next identifier. Commits the session."""
        year = self.clock().year % 100
        value = self._increment(f"order:{year:02d}")
        return f"{self.prefix}{year:02d}{value:0{self.width}d}"

    def _increment(self, name: str) -> int:
        for attempt in range(1, self.max_attempts + 1):
            result = self.db.execute(
                update(Sequence)
                .where(Sequence.name == name)
                .values(value=Sequence.value + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # first order of the year; a racing creator may insert the
                # same row, in which case the retry takes the UPDATE path
                try:
                    self.db.add(Sequence(name=name, value=1))
                    self.db.commit()
                    return 1
                except IntegrityError:
                    self.db.rollback()
                    logger.info(f"Sequence {name} created concurrently, retrying (attempt {attempt})")
                    continue
            value = self.db.scalar(select(Sequence.value).where(Sequence.name == name))
            self.db.commit()
            return value
        raise ConflictError(f"Could not allocate an order number from {name}", code="sequence_unavailable")
