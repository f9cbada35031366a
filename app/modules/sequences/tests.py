"""
Tests para la numeración de documentos
"""

from types import SimpleNamespace

from sqlalchemy.dialects import postgresql

from app.modules.sequences.models import DOCUMENT_SEQUENCES
from app.modules.sequences.service import (
    SequenceService, PURCHASE_ORDER, GOODS_RECEIPT, JOURNAL_VOUCHER
)


class FakeSequenceSession:
    """Sesión mínima sobre un dialecto con secuencias nativas"""

    def __init__(self, value):
        self.value = value
        self.statements = []

    def get_bind(self):
        return SimpleNamespace(dialect=postgresql.dialect())

    def execute(self, statement):
        self.statements.append(statement)
        return SimpleNamespace(scalar=lambda: self.value)


class TestSequenceService:

    def test_numbers_are_consecutive_per_prefix(self, db):
        sequences = SequenceService(db)
        assert sequences.next_number(PURCHASE_ORDER) == "PO-000001"
        assert sequences.next_number(PURCHASE_ORDER) == "PO-000002"
        assert sequences.next_number(GOODS_RECEIPT) == "GRN-000001"

    def test_counter_row_follows_the_transaction_on_sqlite(self, db):
        sequences = SequenceService(db)
        assert not sequences.uses_native_sequence(PURCHASE_ORDER)
        assert sequences.next_number(PURCHASE_ORDER) == "PO-000001"
        db.rollback()
        assert sequences.next_number(PURCHASE_ORDER) == "PO-000001"

    def test_custom_padding(self, db):
        assert SequenceService(db, padding=3).next_number("JV") == "JV-001"

    def test_native_sequence_uses_nextval_without_row_lock(self):
        session = FakeSequenceSession(42)
        sequences = SequenceService(session)

        assert sequences.uses_native_sequence(GOODS_RECEIPT)
        assert sequences.next_number(GOODS_RECEIPT) == "GRN-000042"

        sql = str(session.statements[0].compile(dialect=postgresql.dialect()))
        assert "nextval('grn_number_seq')" in sql
        assert "FOR UPDATE" not in sql

    def test_each_prefix_has_its_own_sequence(self):
        session = FakeSequenceSession(7)
        SequenceService(session).next_number(JOURNAL_VOUCHER)
        SequenceService(session).next_number(PURCHASE_ORDER)

        compiled = [str(s.compile(dialect=postgresql.dialect())) for s in session.statements]
        assert "jv_number_seq" in compiled[0]
        assert "po_number_seq" in compiled[1]
        assert set(DOCUMENT_SEQUENCES) == {"PO", "GRN", "PB", "PR", "JV"}
