"""
Tests para los comprobantes contables del ciclo de compras
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import event

from app.common.exceptions import InvalidTransition, UnbalancedJournalEntry
from app.modules.accounting.models import JournalEntry
from app.modules.accounting.service import (
    PostingService, CASH, BANK, GST_INPUT, PURCHASE_EXP, PURCH_RETURN, supplier_account_code
)
from app.modules.purchases.ledger import ZERO
from app.modules.purchases.orchestrator import PurchaseLifecycle
from app.modules.purchases.models import PaymentMethod, PaymentType
from app.modules.purchases.schemas import (
    BillLineCreate, PurchaseBillCreate, PurchaseBillUpdate, BillPaymentCreate,
    ReturnLineCreate, PurchaseReturnCreate
)


def balance(db, code):
    return PostingService(db).get_balance(code)


def entry_lines(db, ref_type, ref_id):
    entries = PostingService(db).list_entries(ref_type=ref_type, ref_id=ref_id).items
    assert len(entries) == 1
    return [(line.account_code, line.debit, line.credit) for line in entries[0].lines]


@pytest.fixture
def bill(db, supplier, make_product):
    product = make_product(stock=10)
    return PurchaseLifecycle(db).create_bill(PurchaseBillCreate(
        supplier_id=supplier.id,
        lines=[BillLineCreate(product_id=product.id, quantity=2, rate=Decimal("50"), tax_percent=Decimal("19"))],
        paid_amount=Decimal("0"),
        discount=Decimal("10"),
    ))


class TestPosting:
    """Asientos generados por facturas, abonos y devoluciones"""

    def test_bill_entry(self, db, bill, supplier):
        supplier_code = supplier_account_code(supplier.id)
        assert entry_lines(db, "purchase_bill", bill.id) == [
            (PURCHASE_EXP, Decimal("90"), ZERO),
            (GST_INPUT, Decimal("19"), ZERO),
            (supplier_code, ZERO, Decimal("109")),
        ]
        assert balance(db, supplier_code) == Decimal("-109")

    def test_payment_entry_by_method(self, db, bill, supplier):
        lifecycle = PurchaseLifecycle(db)
        lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("9"), method=PaymentMethod.BANK))
        lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("100")))

        assert balance(db, BANK) == Decimal("-9")
        assert balance(db, CASH) == Decimal("-100")
        assert balance(db, supplier_account_code(supplier.id)) == ZERO

    def test_initial_payment_is_posted(self, db, supplier, make_product):
        product = make_product()
        bill = PurchaseLifecycle(db).create_bill(PurchaseBillCreate(
            supplier_id=supplier.id,
            lines=[BillLineCreate(product_id=product.id, quantity=1, rate=Decimal("40"))],
            paid_amount=Decimal("40"),
            payment_type=PaymentType.BANK,
        ))
        assert bill.payments[0].method == PaymentMethod.BANK
        assert entry_lines(db, "bill_payment", bill.payments[0].id) == [
            (supplier_account_code(supplier.id), Decimal("40"), ZERO),
            (BANK, ZERO, Decimal("40")),
        ]

    def test_return_entry(self, db, bill, supplier, make_product):
        purchase_return = PurchaseLifecycle(db).create_return(PurchaseReturnCreate(
            supplier_id=supplier.id,
            bill_id=bill.id,
            lines=[ReturnLineCreate(
                product_id=bill.lines[0].product_id, qty=1, rate=Decimal("50"), tax_percent=Decimal("19")
            )],
        ))
        # Mitad de la factura: mitad del descuento de 10
        assert purchase_return.discount == Decimal("5")
        assert entry_lines(db, "purchase_return", purchase_return.id) == [
            (supplier_account_code(supplier.id), Decimal("54.5"), ZERO),
            (PURCH_RETURN, ZERO, Decimal("45")),
            (GST_INPUT, ZERO, Decimal("9.5")),
        ]
        assert balance(db, GST_INPUT) == Decimal("9.5")
        assert balance(db, supplier_account_code(supplier.id)) == Decimal("-54.5")

    def test_bill_adjustment_entry(self, db, bill, supplier):
        PurchaseLifecycle(db).update_bill(bill.id, PurchaseBillUpdate(discount=Decimal("0")))
        assert entry_lines(db, "bill_adjustment", bill.id) == [
            (PURCHASE_EXP, Decimal("10"), ZERO),
            (supplier_account_code(supplier.id), ZERO, Decimal("10")),
        ]
        assert balance(db, supplier_account_code(supplier.id)) == Decimal("-119")

    def test_every_entry_is_balanced(self, db, bill):
        PurchaseLifecycle(db).record_payment(bill.id, BillPaymentCreate(amount=Decimal("50")))
        for entry in db.query(JournalEntry).all():
            assert sum(line.debit for line in entry.lines) == sum(line.credit for line in entry.lines)

    def test_unbalanced_entry_is_rejected(self, db):
        with pytest.raises(UnbalancedJournalEntry) as exc:
            PostingService(db).post("manual", uuid4(), [
                (CASH, Decimal("10"), ZERO),
                (BANK, ZERO, Decimal("9")),
            ])
        assert exc.value.status_code == 500
        assert db.query(JournalEntry).count() == 0

    def test_journal_lines_are_immutable(self, db, bill):
        entry = db.query(JournalEntry).first()
        entry.lines[0].debit = Decimal("1")
        with pytest.raises(InvalidTransition):
            db.flush()
        db.rollback()

    def test_accounts_endpoint(self, client, bill):
        response = client.get("/accounting/accounts")
        assert response.status_code == 200
        accounts = {account["code"]: account for account in response.json()["items"]}
        assert accounts[PURCHASE_EXP]["balance"] == "90.00"
        assert accounts[GST_INPUT]["balance"] == "19.00"

    def test_posting_never_updates_account_rows(self, db, engine, bill):
        statements = []

        def capture(conn, cursor, statement, *args):
            statements.append(statement)

        event.listen(engine, "before_cursor_execute", capture)
        try:
            PurchaseLifecycle(db).record_payment(bill.id, BillPaymentCreate(amount=Decimal("9")))
        finally:
            event.remove(engine, "before_cursor_execute", capture)

        assert any(s.lstrip().upper().startswith("INSERT INTO JOURNAL_LINES") for s in statements)
        assert not [s for s in statements if s.lstrip().upper().startswith("UPDATE ACCOUNTS")]
        assert balance(db, CASH) == Decimal("-9")
