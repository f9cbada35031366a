"""
Document numbering for purchase documents.

On databases with native sequences (PostgreSQL) numbers come from
``nextval``, which never waits on other transactions; a rolled back unit of
work leaves a gap. Elsewhere a counter row is incremented inside the
caller's transaction, which is only safe where writers are already
serialized (SQLite).
"""
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.config import settings
from app.modules.sequences.models import DocumentSequence, DOCUMENT_SEQUENCES

logger = logging.getLogger(__name__)

# Prefixes used by the engine
PURCHASE_ORDER = "PO"
GOODS_RECEIPT = "GRN"
PURCHASE_BILL = "PB"
PURCHASE_RETURN = "PR"
JOURNAL_VOUCHER = "JV"


class SequenceService:
    """Allocates monotonically increasing document numbers."""

    def __init__(self, db: Session, padding: int = None):
        self.db = db
        self.padding = padding or settings.DOCUMENT_NUMBER_PADDING

    def uses_native_sequence(self, name: str) -> bool:
        return name in DOCUMENT_SEQUENCES and self.db.get_bind().dialect.supports_sequences

    def next_value(self, name: str) -> int:
        if self.uses_native_sequence(name):
            return self.db.execute(select(DOCUMENT_SEQUENCES[name].next_value())).scalar()
        return self._next_counter_value(name)

    def _next_counter_value(self, name: str) -> int:
        counter = self.db.execute(
            select(DocumentSequence)
            .where(DocumentSequence.name == name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            # A concurrent first insert fails on the unique name; the caller's
            # unit of work is replayed and then finds the row.
            logger.info(f"Creating document sequence {name}")
            counter = DocumentSequence(name=name, current_value=0)
            self.db.add(counter)

        counter.current_value += 1
        self.db.flush()
        return counter.current_value

    def next_number(self, prefix: str) -> str:
        """Ej: next_number("PO") -> "PO-000001" """
        value = self.next_value(prefix)
        return f"{prefix}-{value:0{self.padding}d}"
