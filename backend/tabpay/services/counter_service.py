"""Named sequence counters (invoice numbering).

``get_next`` is a single ``UPDATE ... RETURNING`` statement, so the increment
and the read happen atomically in the database: concurrent callers never see
the same value. The increment joins the caller's transaction; if that
transaction rolls back, the value is released and no gap is left.
"""

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from tabpay.models.ordering import Counter

logger = logging.getLogger(__name__)

INVOICE_NUMBER_KEY = "invoice_number"


def format_invoice_number(sequence_value: int) -> str:
    """``INV-001`` ... ``INV-999``, then ``INV-1000`` (the field only widens)."""
    return f"INV-{sequence_value:03d}"


class CounterService:
    def __init__(self, db: Session):
        self.db = db

    def _insert_if_absent(self, key: str) -> None:
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert

        stmt = (
            insert(Counter)
            .values(key=key, sequence_value=0)
            .on_conflict_do_nothing(index_elements=["key"])
        )
        self.db.execute(stmt)

    def _increment(self, key: str):
        stmt = (
            update(Counter)
            .where(Counter.key == key)
            .values(sequence_value=Counter.sequence_value + 1)
            .returning(Counter.sequence_value)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def init_counter(self, key: str) -> None:
        """Create the counter at 0 if it does not exist yet."""
        self._insert_if_absent(key)
        self.db.commit()
        logger.info(f"Counter '{key}' ready")

    def get_next(self, key: str) -> int:
        """Atomically increment and return the counter for ``key``.

        A missing counter is created at 0 first, so the first value is 1.
        """
        value = self._increment(key)
        if value is None:
            self._insert_if_absent(key)
            value = self._increment(key)
        if value is None:
            raise RuntimeError(f"Counter '{key}' could not be created")
        return value

    def current(self, key: str) -> int:
        counter = self.db.get(Counter, key)
        return counter.sequence_value if counter else 0
