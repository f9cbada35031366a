"""
Tests para el ciclo de compras

Cubren:
- Aritmética de documentos (totales exactos, saldos, redondeo de presentación)
- Máquina de estados de órdenes de compra
- Recepciones (GRN) con y sin orden
- Facturas: saldos, abonos, edición de líneas
- Devoluciones: stock FIFO, saldo de factura, sobre-devolución
- Escenarios A-E de punta a punta
- Idempotencia y reintentos ante escrituras concurrentes
"""

import pytest
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.orm.exc import StaleDataError

from app.common.exceptions import (
    AlreadyComplete, Conflict, InsufficientStock, InvalidPOState, InvalidTransition,
    NotFound, OverPayment, OverReceipt, OverReturn, ValidationError
)
from app.modules.products.models import Product, StockBatch
from app.modules.purchases import ledger
from app.modules.purchases.models import (
    GoodsReceipt, PurchaseOrder, PurchaseOrderStatus, PurchaseBill, BillPayment, BillStatus,
    PaymentType, PurchaseReturn
)
from app.modules.purchases.orchestrator import PurchaseLifecycle, is_retryable
from app.modules.purchases.schemas import (
    POLineCreate, PurchaseOrderCreate, GRNLineCreate, GoodsReceiptCreate,
    BillLineCreate, PurchaseBillCreate, PurchaseBillUpdate, BillPaymentCreate,
    ReturnLineCreate, PurchaseReturnCreate
)


# ===== HELPERS =====

def new_po(lifecycle, supplier, lines, **kwargs):
    return lifecycle.create_po(PurchaseOrderCreate(
        supplier_id=supplier.id,
        lines=[
            POLineCreate(product_id=product.id, qty_ordered=qty, unit_cost=Decimal(cost))
            for product, qty, cost in lines
        ],
    ), **kwargs)


def receive(lifecycle, po, product, qty, unit_cost=None, **kwargs):
    return lifecycle.receive_grn(GoodsReceiptCreate(
        purchase_order_id=po.id if po is not None else None,
        supplier_id=kwargs.pop("supplier_id", None),
        lines=[GRNLineCreate(
            product_id=product.id, received_qty=qty,
            unit_cost=Decimal(unit_cost) if unit_cost is not None else None
        )],
    ), **kwargs)


def new_bill(lifecycle, supplier, lines, paid="0", **kwargs):
    return lifecycle.create_bill(PurchaseBillCreate(
        supplier_id=supplier.id,
        lines=[
            BillLineCreate(product_id=product.id, quantity=qty, rate=Decimal(rate), tax_percent=Decimal(tax))
            for product, qty, rate, tax in lines
        ],
        paid_amount=Decimal(paid),
        **kwargs
    ))


def new_return(lifecycle, supplier, lines, **kwargs):
    return lifecycle.create_return(PurchaseReturnCreate(
        supplier_id=supplier.id,
        lines=[
            ReturnLineCreate(product_id=product.id, qty=qty, rate=Decimal(rate) if rate is not None else None)
            for product, qty, rate in lines
        ],
        **kwargs
    ))


@pytest.fixture
def lifecycle(db):
    return PurchaseLifecycle(db)


# ===== TESTS DE ARITMÉTICA =====

class TestLedger:
    """Tests para las funciones puras de totales y saldos"""

    def test_totals_with_tax_and_discount(self):
        totals = ledger.compute_totals(
            [(2, Decimal("50"), Decimal("19")), (1, Decimal("30"), Decimal("0"))],
            discount=Decimal("10"),
        )
        assert totals.subtotal == Decimal("130")
        assert totals.tax_total == Decimal("19")
        assert totals.discount == Decimal("10")
        assert totals.total_amount == Decimal("139")

    def test_no_intermediate_rounding(self):
        lines = [(1, Decimal("0.333"), Decimal("10"))] * 3
        totals = ledger.compute_totals(lines)
        assert totals.subtotal == Decimal("0.999")
        assert totals.tax_total == Decimal("0.0999")
        assert ledger.present(totals.total_amount) == Decimal("1.10")

    def test_float_inputs_keep_their_literal_value(self):
        assert ledger.line_subtotal(3, 0.1) == Decimal("0.3")

    def test_missing_number_is_validation_error(self):
        with pytest.raises(ValidationError) as exc:
            ledger.compute_totals([(1, None, Decimal("0"))])
        assert exc.value.context["field"] == "rate"

    def test_non_finite_number_is_validation_error(self):
        with pytest.raises(ValidationError):
            ledger.to_decimal("NaN", "rate")

    def test_discount_cannot_exceed_subtotal(self):
        with pytest.raises(ValidationError) as exc:
            ledger.compute_totals([(1, Decimal("10"), Decimal("0"))], discount=Decimal("11"))
        assert exc.value.context["allowed"] == Decimal("10")

    def test_settle_exposes_credit_instead_of_clamping(self):
        settlement = ledger.settle(Decimal("1000"), Decimal("1000"), Decimal("200"))
        assert settlement.due_amount == Decimal("-200")
        assert settlement.credit_balance == Decimal("200")

    def test_settle_without_returns(self):
        settlement = ledger.settle(Decimal("1000"), Decimal("400"))
        assert settlement.due_amount == Decimal("600")
        assert settlement.credit_balance == Decimal("0")

    def test_present_rounds_half_up(self):
        assert ledger.present(Decimal("2.345")) == Decimal("2.35")
        assert ledger.present(Decimal("2.344")) == Decimal("2.34")
        assert ledger.present(None) is None

    def test_weighted_average_cost(self):
        assert ledger.weighted_average_cost(10, Decimal("5"), 10, Decimal("7")) == Decimal("6")
        assert ledger.weighted_average_cost(0, None, 4, Decimal("3.5")) == Decimal("3.5")

    def test_batch_valuation(self):
        assert ledger.batch_valuation([(2, Decimal("1.5")), (3, Decimal("2"))]) == Decimal("9")

    def test_discount_share_adds_up_to_the_bill_discount(self):
        first = ledger.discount_share(Decimal("30"), Decimal("10"), ledger.ZERO, ledger.ZERO, Decimal("10"))
        second = ledger.discount_share(Decimal("30"), Decimal("10"), Decimal("10"), first, Decimal("10"))
        third = ledger.discount_share(Decimal("30"), Decimal("10"), Decimal("20"), first + second, Decimal("10"))

        assert first == Decimal("3.333333333333")
        assert second == Decimal("3.333333333334")
        assert first + second + third == Decimal("10")

    def test_discount_share_without_discount(self):
        assert ledger.discount_share(Decimal("30"), ledger.ZERO, ledger.ZERO, ledger.ZERO, Decimal("10")) == 0

    def test_input_precision_limits(self):
        with pytest.raises(SchemaValidationError):
            BillLineCreate(product_id=uuid4(), quantity=1, rate=Decimal("0.1234567"))
        with pytest.raises(SchemaValidationError):
            BillLineCreate(product_id=uuid4(), quantity=1, rate=Decimal("1"), tax_percent=Decimal("19.12345"))
        line = BillLineCreate(product_id=uuid4(), quantity=1, rate=Decimal("0.123456"), tax_percent=Decimal("19.1234"))
        assert ledger.line_tax(line.quantity, line.rate, line.tax_percent) == Decimal("0.023608984704")


# ===== TESTS DE ÓRDENES DE COMPRA =====

class TestPurchaseOrderStateMachine:
    """Tests de transiciones de la orden de compra"""

    def test_create_po_in_draft(self, lifecycle, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "5")])

        assert po.status == PurchaseOrderStatus.DRAFT
        assert po.po_number == "PO-000001"
        assert po.lines[0].qty_received == 0
        assert po.lines[0].qty_remaining == 10
        assert po.total_amount == Decimal("50")

    def test_duplicate_product_rejected(self, lifecycle, supplier, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            new_po(lifecycle, supplier, [(product, 1, "5"), (product, 2, "5")])

    def test_unknown_product_not_found(self, lifecycle, supplier):
        ghost = SimpleNamespace(id=uuid4())
        with pytest.raises(NotFound):
            new_po(lifecycle, supplier, [(ghost, 1, "5")])

    def test_unknown_supplier_not_found(self, lifecycle, make_product):
        product = make_product()
        with pytest.raises(NotFound):
            lifecycle.create_po(PurchaseOrderCreate(
                supplier_id=uuid4(),
                lines=[POLineCreate(product_id=product.id, qty_ordered=1, unit_cost=Decimal("1"))],
            ))

    def test_confirm_only_from_draft(self, lifecycle, supplier, make_product):
        po = new_po(lifecycle, supplier, [(make_product(), 5, "1")])
        po = lifecycle.confirm_po(po.id)
        assert po.status == PurchaseOrderStatus.CONFIRMED
        assert po.confirmed_at is not None

        with pytest.raises(InvalidTransition) as exc:
            lifecycle.confirm_po(po.id)
        assert exc.value.status_code == 409
        assert exc.value.context["from_status"] == "confirmed"

    def test_cancel_appends_reason(self, lifecycle, supplier, make_product):
        po = new_po(lifecycle, supplier, [(make_product(), 5, "1")])
        po = lifecycle.cancel_po(po.id, "Proveedor sin existencias")

        assert po.status == PurchaseOrderStatus.CANCELLED
        assert "Proveedor sin existencias" in po.notes

    def test_cancel_twice_is_invalid(self, lifecycle, supplier, make_product):
        po = new_po(lifecycle, supplier, [(make_product(), 5, "1")])
        lifecycle.cancel_po(po.id)
        with pytest.raises(InvalidTransition):
            lifecycle.cancel_po(po.id)

    def test_cancel_complete_is_invalid(self, lifecycle, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 2, "1")])
        receive(lifecycle, po, product, 2)
        with pytest.raises(InvalidTransition):
            lifecycle.cancel_po(po.id)

    def test_cancel_keeps_prior_receipts(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "1")])
        receive(lifecycle, po, product, 4)
        po = lifecycle.cancel_po(po.id)

        assert po.status == PurchaseOrderStatus.CANCELLED
        assert po.lines[0].qty_received == 4
        assert db.get(Product, product.id).stock == 4

    def test_cancelled_po_rejects_receipts(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "1")])
        lifecycle.cancel_po(po.id)

        with pytest.raises(InvalidPOState) as exc:
            receive(lifecycle, po, product, 1)
        assert exc.value.kind == "invalid_po_state"
        assert db.get(Product, product.id).stock == 0

    def test_draft_po_can_receive(self, lifecycle, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "1")])
        receive(lifecycle, po, product, 3)
        assert lifecycle.db.get(PurchaseOrder, po.id).status == PurchaseOrderStatus.PARTIALLY_RECEIVED

    def test_multi_line_completes_only_when_every_line_full(self, lifecycle, db, supplier, make_product):
        a, b = make_product(), make_product()
        po = new_po(lifecycle, supplier, [(a, 2, "1"), (b, 3, "1")])
        lifecycle.confirm_po(po.id)

        receive(lifecycle, po, a, 2)
        assert db.get(PurchaseOrder, po.id).status == PurchaseOrderStatus.PARTIALLY_RECEIVED
        receive(lifecycle, po, b, 3)
        po = db.get(PurchaseOrder, po.id)
        assert po.status == PurchaseOrderStatus.COMPLETE
        assert all(line.qty_received <= line.qty_ordered for line in po.lines)


# ===== TESTS DE RECEPCIONES =====

class TestGoodsReceipt:
    """Tests del procesador de recepciones"""

    def test_unit_cost_defaults_to_po_line(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 5, "8.5")])
        grn = receive(lifecycle, po, product, 5)

        assert grn.grn_number == "GRN-000001"
        assert grn.supplier_id == supplier.id
        assert grn.lines[0].unit_cost == Decimal("8.5")
        batch = db.query(StockBatch).filter(StockBatch.grn_id == grn.id).one()
        assert batch.quantity == 5
        assert batch.batch_no == grn.grn_number

    def test_supplier_must_match_po(self, lifecycle, supplier, other_supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 5, "1")])
        with pytest.raises(ValidationError):
            receive(lifecycle, po, product, 1, supplier_id=other_supplier.id)

    def test_product_must_be_on_po(self, lifecycle, db, supplier, make_product):
        ordered, stray = make_product(), make_product()
        po = new_po(lifecycle, supplier, [(ordered, 5, "1")])
        with pytest.raises(ValidationError):
            receive(lifecycle, po, stray, 1, unit_cost="1")
        assert db.get(Product, stray.id).stock == 0

    def test_lines_for_same_product_are_summed(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 5, "1")])
        with pytest.raises(OverReceipt) as exc:
            lifecycle.receive_grn(GoodsReceiptCreate(
                purchase_order_id=po.id,
                lines=[
                    GRNLineCreate(product_id=product.id, received_qty=3),
                    GRNLineCreate(product_id=product.id, received_qty=3),
                ],
            ))
        assert exc.value.context["requested"] == 6
        assert exc.value.context["remaining"] == 5
        assert db.get(Product, product.id).stock == 0

    def test_standalone_grn_only_increases_stock(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=2)
        grn = receive(lifecycle, None, product, 3, unit_cost="4", supplier_id=supplier.id)

        assert grn.purchase_order_id is None
        assert db.get(Product, product.id).stock == 5

    def test_standalone_grn_requires_supplier_and_cost(self, lifecycle, supplier, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            receive(lifecycle, None, product, 3, unit_cost="4")
        with pytest.raises(ValidationError):
            receive(lifecycle, None, product, 3, supplier_id=supplier.id)

    def test_grn_is_immutable(self, lifecycle, db, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 1, unit_cost="1", supplier_id=supplier.id)
        grn.notes = "editada"
        with pytest.raises(InvalidTransition):
            db.flush()
        db.rollback()

    def test_grn_cannot_be_deleted(self, lifecycle, db, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 1, unit_cost="1", supplier_id=supplier.id)
        db.delete(grn)
        with pytest.raises(InvalidTransition):
            db.flush()
        db.rollback()


# ===== TESTS DE FACTURAS =====

class TestPurchaseBill:
    """Tests del procesador de facturas"""

    def test_create_bill_totals_and_initial_payment(self, lifecycle, supplier, make_product):
        product = make_product()
        bill = new_bill(lifecycle, supplier, [(product, 2, "50", "19")], paid="50",
                        discount=Decimal("10"), payment_type=PaymentType.CASH)

        assert bill.bill_no == "PB-000001"
        assert bill.subtotal == Decimal("100")
        assert bill.tax_total == Decimal("19")
        assert bill.total_amount == Decimal("109")
        assert bill.paid_amount == Decimal("50")
        assert bill.due_amount == Decimal("59")
        assert bill.status == BillStatus.PARTIAL
        assert len(bill.payments) == 1

    def test_paid_above_total_is_overpayment(self, lifecycle, supplier, make_product):
        product = make_product()
        with pytest.raises(OverPayment) as exc:
            new_bill(lifecycle, supplier, [(product, 1, "100", "0")], paid="100.01")
        assert exc.value.context["allowed"] == Decimal("100")

    def test_direct_bill_does_not_touch_stock(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=1)
        bill = new_bill(lifecycle, supplier, [(product, 5, "10", "0")])
        assert bill.grn_id is None
        assert db.get(Product, product.id).stock == 1

    def test_receive_goods_records_direct_grn(self, lifecycle, db, supplier, make_product):
        product = make_product()
        bill = new_bill(lifecycle, supplier, [(product, 3, "10", "0")], receive_goods=True)

        grn = db.get(GoodsReceipt, bill.grn_id)
        assert grn is not None
        assert grn.purchase_order_id is None
        assert grn.lines[0].received_qty == 3
        assert db.get(Product, product.id).stock == 3

    def test_receive_goods_with_grn_is_rejected(self, lifecycle, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 1, unit_cost="1", supplier_id=supplier.id)
        with pytest.raises(ValidationError):
            new_bill(lifecycle, supplier, [(product, 1, "1", "0")], grn_id=grn.id, receive_goods=True)

    def test_grn_of_other_supplier_rejected(self, lifecycle, supplier, other_supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 1, unit_cost="1", supplier_id=other_supplier.id)
        with pytest.raises(ValidationError):
            new_bill(lifecycle, supplier, [(product, 1, "1", "0")], grn_id=grn.id)

    def test_bill_on_grn_cannot_exceed_received(self, lifecycle, db, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 5, unit_cost="10", supplier_id=supplier.id)

        with pytest.raises(ValidationError) as exc:
            new_bill(lifecycle, supplier, [(product, 6, "10", "0")], grn_id=grn.id)
        assert exc.value.context["requested"] == 6
        assert exc.value.context["allowed"] == 5
        assert db.query(PurchaseBill).count() == 0

    def test_bills_on_same_grn_are_summed(self, lifecycle, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 5, unit_cost="10", supplier_id=supplier.id)
        new_bill(lifecycle, supplier, [(product, 3, "10", "0")], grn_id=grn.id)

        with pytest.raises(ValidationError) as exc:
            new_bill(lifecycle, supplier, [(product, 3, "10", "0")], grn_id=grn.id)
        assert exc.value.context["allowed"] == 2

        bill = new_bill(lifecycle, supplier, [(product, 2, "10", "0")], grn_id=grn.id)
        assert bill.grn_id == grn.id

    def test_bill_on_grn_rejects_product_not_received(self, lifecycle, supplier, make_product):
        received, other = make_product(), make_product()
        grn = receive(lifecycle, None, received, 5, unit_cost="10", supplier_id=supplier.id)
        with pytest.raises(ValidationError) as exc:
            new_bill(lifecycle, supplier, [(received, 1, "10", "0"), (other, 1, "10", "0")], grn_id=grn.id)
        assert exc.value.context["product_id"] == other.id

    def test_update_lines_on_grn_bill_is_checked(self, lifecycle, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 5, unit_cost="10", supplier_id=supplier.id)
        bill = new_bill(lifecycle, supplier, [(product, 5, "10", "0")], grn_id=grn.id)

        with pytest.raises(ValidationError):
            lifecycle.update_bill(bill.id, PurchaseBillUpdate(
                lines=[BillLineCreate(product_id=product.id, quantity=6, rate=Decimal("10"))],
            ))
        bill = lifecycle.update_bill(bill.id, PurchaseBillUpdate(
            lines=[BillLineCreate(product_id=product.id, quantity=4, rate=Decimal("10"))],
        ))
        assert bill.total_amount == Decimal("40")

    def test_line_tax_is_stored_without_rounding(self, lifecycle, db, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 1, "0.123456", "19.1234")])
        db.expire_all()

        stored = db.get(PurchaseBill, bill.id)
        assert stored.tax_total == Decimal("0.023608984704")
        assert stored.total_amount == Decimal("0.147064984704")

    def test_non_positive_payment_is_validation_error(self, lifecycle, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 1, "100", "0")])
        with pytest.raises(ValidationError):
            lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("0")))
        with pytest.raises(ValidationError):
            lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("-5")))

    def test_payment_to_zero_marks_paid(self, lifecycle, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 1, "100", "0")])
        bill = lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("100")))
        assert bill.status == BillStatus.PAID
        assert bill.due_amount == Decimal("0")

    def test_update_lines_before_payment(self, lifecycle, supplier, make_product):
        product = make_product()
        bill = new_bill(lifecycle, supplier, [(product, 1, "100", "0")])
        bill = lifecycle.update_bill(bill.id, PurchaseBillUpdate(
            lines=[BillLineCreate(product_id=product.id, quantity=3, rate=Decimal("100"))],
            discount=Decimal("20"),
        ))

        assert len(bill.lines) == 1
        assert bill.subtotal == Decimal("300")
        assert bill.total_amount == Decimal("280")
        assert bill.due_amount == Decimal("280")

    def test_update_lines_after_payment_is_invalid(self, lifecycle, supplier, make_product):
        product = make_product()
        bill = new_bill(lifecycle, supplier, [(product, 1, "100", "0")])
        lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("10")))

        with pytest.raises(InvalidTransition):
            lifecycle.update_bill(bill.id, PurchaseBillUpdate(discount=Decimal("5")))

    def test_update_lines_after_return_is_invalid(self, lifecycle, supplier, make_product):
        product = make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(product, 2, "100", "0")])
        new_return(lifecycle, supplier, [(product, 1, "100")], bill_id=bill.id)

        with pytest.raises(InvalidTransition):
            lifecycle.update_bill(bill.id, PurchaseBillUpdate(notes="corrección"))


# ===== TESTS DE DEVOLUCIONES =====

class TestPurchaseReturn:
    """Tests del procesador de devoluciones"""

    def test_return_consumes_fifo_batches(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=2, cost_price="4")
        receive(lifecycle, None, product, 5, unit_cost="6", supplier_id=supplier.id)

        purchase_return = new_return(lifecycle, supplier, [(product, 3, "6")], reason="Averiado")

        assert purchase_return.return_no == "PR-000001"
        consumed = purchase_return.lines[0].consumed_batches
        assert [c["quantity"] for c in consumed] == [2, 1]
        assert consumed[0]["batch_no"] == "OPENING"
        assert db.get(Product, product.id).stock == 4

    def test_return_reduces_bill_due(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=10)
        bill = new_bill(lifecycle, supplier, [(product, 10, "100", "0")], paid="300")
        new_return(lifecycle, supplier, [(product, 2, "100")], bill_id=bill.id)

        bill = lifecycle.db.get(type(bill), bill.id)
        assert bill.total_returned == Decimal("200")
        assert bill.paid_amount == Decimal("300")
        assert bill.due_amount == Decimal("500")
        assert bill.credit_balance == Decimal("0")

    def test_over_return_against_bill(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=10)
        bill = new_bill(lifecycle, supplier, [(product, 2, "100", "0")])
        new_return(lifecycle, supplier, [(product, 1, "100")], bill_id=bill.id)

        with pytest.raises(OverReturn) as exc:
            new_return(lifecycle, supplier, [(product, 2, "100")], bill_id=bill.id)
        assert exc.value.context["allowed"] == 1
        assert db.get(Product, product.id).stock == 9

    def test_product_not_on_bill_rejected(self, lifecycle, supplier, make_product):
        billed, other = make_product(stock=5), make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(billed, 2, "100", "0")])
        with pytest.raises(ValidationError):
            new_return(lifecycle, supplier, [(other, 1, "100")], bill_id=bill.id)

    def test_over_return_against_grn(self, lifecycle, supplier, make_product):
        product = make_product(stock=10)
        grn = receive(lifecycle, None, product, 2, unit_cost="3", supplier_id=supplier.id)
        with pytest.raises(OverReturn):
            new_return(lifecycle, supplier, [(product, 3, "3")], grn_id=grn.id)

    def test_return_against_other_supplier_bill(self, lifecycle, supplier, other_supplier, make_product):
        product = make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(product, 2, "100", "0")])
        with pytest.raises(ValidationError):
            new_return(lifecycle, other_supplier, [(product, 1, "100")], bill_id=bill.id)

    def test_bill_return_takes_billed_rate_and_tax(self, lifecycle, supplier, make_product):
        product = make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(product, 2, "100", "19")])
        purchase_return = new_return(lifecycle, supplier, [(product, 1, None)], bill_id=bill.id)

        assert purchase_return.lines[0].rate == Decimal("100")
        assert purchase_return.lines[0].tax_percent == Decimal("19")
        assert purchase_return.total_amount == Decimal("119")

    def test_bill_return_at_other_rate_is_rejected(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(product, 1, "100", "0")], paid="0")

        with pytest.raises(ValidationError) as exc:
            new_return(lifecycle, supplier, [(product, 1, "5000")], bill_id=bill.id)
        assert exc.value.context["field"] == "rate"

        bill = db.get(PurchaseBill, bill.id)
        assert bill.total_returned == Decimal("0")
        assert bill.credit_balance == Decimal("0")
        assert db.get(Product, product.id).stock == 5
        assert db.query(PurchaseReturn).count() == 0

    def test_bill_return_at_other_tax_is_rejected(self, lifecycle, supplier, make_product):
        product = make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(product, 1, "100", "19")])
        with pytest.raises(ValidationError):
            lifecycle.create_return(PurchaseReturnCreate(
                supplier_id=supplier.id,
                bill_id=bill.id,
                lines=[ReturnLineCreate(product_id=product.id, qty=1, tax_percent=Decimal("50"))],
            ))

    def test_full_return_never_exceeds_bill_total(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=5)
        bill = new_bill(lifecycle, supplier, [(product, 3, "10", "0")], discount=Decimal("10"))
        assert bill.total_amount == Decimal("20")

        for _ in range(3):
            new_return(lifecycle, supplier, [(product, 1, None)], bill_id=bill.id)

        bill = db.get(PurchaseBill, bill.id)
        assert bill.total_returned == bill.total_amount
        assert bill.due_amount == Decimal("0")
        assert bill.credit_balance == Decimal("0")
        discounts = [r.discount for r in db.query(PurchaseReturn).order_by(PurchaseReturn.return_no)]
        assert sum(discounts, Decimal("0")) == Decimal("10")

    def test_each_billed_rate_is_capped(self, lifecycle, supplier, make_product):
        product = make_product(stock=10)
        bill = new_bill(lifecycle, supplier, [(product, 1, "100", "0"), (product, 5, "1", "0")])

        with pytest.raises(ValidationError):
            new_return(lifecycle, supplier, [(product, 1, None)], bill_id=bill.id)

        new_return(lifecycle, supplier, [(product, 1, "100")], bill_id=bill.id)
        with pytest.raises(OverReturn) as exc:
            new_return(lifecycle, supplier, [(product, 1, "100")], bill_id=bill.id)
        assert exc.value.context["allowed"] == 0

        purchase_return = new_return(lifecycle, supplier, [(product, 2, "1")], bill_id=bill.id)
        assert purchase_return.total_amount == Decimal("2")

    def test_grn_return_takes_received_cost(self, lifecycle, supplier, make_product):
        product = make_product()
        grn = receive(lifecycle, None, product, 4, unit_cost="3", supplier_id=supplier.id)

        with pytest.raises(ValidationError):
            new_return(lifecycle, supplier, [(product, 1, "4")], grn_id=grn.id)
        purchase_return = new_return(lifecycle, supplier, [(product, 2, None)], grn_id=grn.id)
        assert purchase_return.lines[0].rate == Decimal("3")
        assert purchase_return.total_amount == Decimal("6")

    def test_unlinked_return_requires_rate(self, lifecycle, supplier, make_product):
        product = make_product(stock=5)
        with pytest.raises(ValidationError) as exc:
            new_return(lifecycle, supplier, [(product, 1, None)])
        assert exc.value.context["field"] == "rate"

    def test_return_is_immutable(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=5)
        purchase_return = new_return(lifecycle, supplier, [(product, 1, "1")])
        purchase_return.reason = "otra"
        with pytest.raises(InvalidTransition):
            db.flush()
        db.rollback()


# ===== ESCENARIOS =====

class TestScenarios:
    """Escenarios de punta a punta del ciclo de compras"""

    def test_scenario_a_partial_then_complete(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "5")])
        lifecycle.confirm_po(po.id)

        receive(lifecycle, po, product, 6)
        po = db.get(PurchaseOrder, po.id)
        assert po.status == PurchaseOrderStatus.PARTIALLY_RECEIVED
        assert po.lines[0].qty_received == 6

        receive(lifecycle, po, product, 4)
        po = db.get(PurchaseOrder, po.id)
        assert po.status == PurchaseOrderStatus.COMPLETE
        assert po.lines[0].qty_received == 10

        with pytest.raises(AlreadyComplete):
            receive(lifecycle, po, product, 1)
        assert db.get(Product, product.id).stock == 10

    def test_scenario_b_over_receipt(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 5, "5")])
        lifecycle.confirm_po(po.id)

        with pytest.raises(OverReceipt) as exc:
            receive(lifecycle, po, product, 6)
        assert exc.value.context["requested"] == 6
        assert exc.value.context["remaining"] == 5

        po = db.get(PurchaseOrder, po.id)
        assert po.status == PurchaseOrderStatus.CONFIRMED
        assert po.lines[0].qty_received == 0
        assert db.get(Product, product.id).stock == 0
        assert db.query(GoodsReceipt).count() == 0

    def test_scenario_c_payments(self, lifecycle, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 10, "100", "0")], paid="0")
        assert bill.total_amount == Decimal("1000")
        assert bill.due_amount == Decimal("1000")

        bill = lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("400")))
        assert bill.paid_amount == Decimal("400")
        assert bill.due_amount == Decimal("600")

        with pytest.raises(OverPayment) as exc:
            lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("700")))
        assert exc.value.context["requested"] == Decimal("700")
        assert exc.value.context["allowed"] == Decimal("600")

        bill = lifecycle.db.get(type(bill), bill.id)
        assert bill.paid_amount == Decimal("400")
        assert bill.due_amount == Decimal("600")
        assert len(bill.payments) == 1

    def test_scenario_d_return_after_full_payment(self, lifecycle, supplier, make_product):
        product = make_product(stock=10)
        bill = new_bill(lifecycle, supplier, [(product, 10, "100", "0")], paid="1000")
        assert bill.due_amount == Decimal("0")

        purchase_return = new_return(lifecycle, supplier, [(product, 2, "100")], bill_id=bill.id)
        assert purchase_return.total_amount == Decimal("200")

        bill = lifecycle.db.get(type(bill), bill.id)
        assert bill.due_amount == Decimal("-200")
        assert bill.credit_balance == Decimal("200")
        assert bill.paid_amount == Decimal("1000")
        assert bill.status == BillStatus.PAID

    def test_scenario_e_insufficient_stock(self, lifecycle, db, supplier, make_product):
        product = make_product(stock=5)
        with pytest.raises(InsufficientStock) as exc:
            new_return(lifecycle, supplier, [(product, 6, "10")])
        assert exc.value.context["requested"] == 6
        assert exc.value.context["available"] == 5
        assert db.get(Product, product.id).stock == 5
        assert db.query(PurchaseReturn).count() == 0

    def test_full_chain(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "20")])
        lifecycle.confirm_po(po.id)
        grn = receive(lifecycle, po, product, 10)
        bill = new_bill(lifecycle, supplier, [(product, 10, "20", "19")], paid="100", grn_id=grn.id)
        assert bill.total_amount == Decimal("238")

        purchase_return = new_return(lifecycle, supplier, [(product, 1, "20")], bill_id=bill.id, grn_id=grn.id)
        # La unidad devuelta se acredita con su impuesto facturado
        assert purchase_return.lines[0].tax_percent == Decimal("19")
        assert purchase_return.total_amount == Decimal("23.8")

        bill = lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("114.2")))

        assert bill.total_returned == Decimal("23.8")
        assert bill.due_amount == Decimal("0")
        assert bill.status == BillStatus.PAID
        assert db.get(Product, product.id).stock == 9


# ===== TESTS DE IDEMPOTENCIA Y CONCURRENCIA =====

class TestUnitOfWork:
    """Idempotencia y reintentos del orquestador"""

    def test_create_po_replays_idempotency_key(self, lifecycle, db, supplier, make_product):
        product = make_product()
        first = new_po(lifecycle, supplier, [(product, 1, "1")], idempotency_key="po-abc")
        second = new_po(lifecycle, supplier, [(product, 1, "1")], idempotency_key="po-abc")

        assert first.id == second.id
        assert db.query(PurchaseOrder).count() == 1

    def test_grn_replay_applies_stock_once(self, lifecycle, db, supplier, make_product):
        product = make_product()
        po = new_po(lifecycle, supplier, [(product, 10, "1")])
        receive(lifecycle, po, product, 4, idempotency_key="grn-1")
        receive(lifecycle, po, product, 4, idempotency_key="grn-1")

        assert db.get(Product, product.id).stock == 4
        assert db.get(PurchaseOrder, po.id).lines[0].qty_received == 4

    def test_payment_replay_applies_once(self, lifecycle, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 1, "100", "0")])
        lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("40")), idempotency_key="pay-1")
        bill = lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("40")), idempotency_key="pay-1")

        assert bill.paid_amount == Decimal("40")
        assert len(bill.payments) == 1

    def test_reused_key_with_other_po_is_rejected(self, lifecycle, db, supplier, make_product):
        product = make_product()
        new_po(lifecycle, supplier, [(product, 1, "1")], idempotency_key="po-abc")

        with pytest.raises(ValidationError) as exc:
            new_po(lifecycle, supplier, [(product, 2, "1")], idempotency_key="po-abc")
        assert exc.value.context["field"] == "Idempotency-Key"
        assert db.query(PurchaseOrder).count() == 1

    def test_reused_payment_key_with_other_amount_is_rejected(self, lifecycle, db, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 1, "100", "0")])
        lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("40")), idempotency_key="pay-1")

        with pytest.raises(ValidationError):
            lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("50")), idempotency_key="pay-1")
        assert db.get(PurchaseBill, bill.id).paid_amount == Decimal("40")
        assert db.query(BillPayment).count() == 1

    def test_replay_ignores_decimal_formatting(self, lifecycle, supplier, make_product):
        bill = new_bill(lifecycle, supplier, [(make_product(), 1, "100", "0")])
        lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("40")), idempotency_key="pay-1")
        bill = lifecycle.record_payment(bill.id, BillPaymentCreate(amount=Decimal("40.00")), idempotency_key="pay-1")

        assert bill.paid_amount == Decimal("40")
        assert len(bill.payments) == 1

    def test_failed_operation_does_not_consume_counter_number(self, lifecycle, supplier, make_product):
        product = make_product()
        with pytest.raises(OverPayment):
            new_bill(lifecycle, supplier, [(product, 1, "10", "0")], paid="20")
        bill = new_bill(lifecycle, supplier, [(product, 1, "10", "0")])
        assert bill.bill_no == "PB-000001"

    def test_stale_write_is_detected(self, session_factory, make_product):
        product = make_product(stock=1)
        first, second = session_factory(), session_factory()
        try:
            mine = first.get(Product, product.id)
            theirs = second.get(Product, product.id)
            assert mine.stock == theirs.stock == 1

            mine.stock = 2
            first.commit()

            theirs.stock = 5
            with pytest.raises(StaleDataError):
                second.flush()
            second.rollback()
        finally:
            first.close()
            second.close()

    def test_lost_race_is_replayed_on_fresh_state(self, db, session_factory, make_product):
        product = make_product(stock=5)
        rival = session_factory()
        attempts = []

        def work():
            attempts.append(1)
            mine = db.get(Product, product.id)
            current = mine.stock
            if len(attempts) == 1:
                theirs = rival.get(Product, product.id)
                theirs.stock = theirs.stock + 1
                rival.commit()
            mine.stock = current + 1
            db.flush()
            return mine

        try:
            PurchaseLifecycle(db, max_retries=3)._run("adjust", work)
        finally:
            rival.close()

        assert len(attempts) == 2
        db.expire_all()
        assert db.get(Product, product.id).stock == 7

    def test_conflict_after_retries_exhausted(self, db):
        attempts = []

        def always_stale():
            attempts.append(1)
            raise StaleDataError("row changed")

        with pytest.raises(Conflict) as exc:
            PurchaseLifecycle(db, max_retries=2)._run("receive_grn", always_stale)
        assert exc.value.status_code == 409
        assert exc.value.context["attempts"] == 3
        assert len(attempts) == 3

    def test_engine_errors_are_not_retried(self, db):
        attempts = []

        def rejected():
            attempts.append(1)
            raise OverReceipt("too much", requested=2, remaining=1)

        with pytest.raises(OverReceipt):
            PurchaseLifecycle(db, max_retries=5)._run("receive_grn", rejected)
        assert len(attempts) == 1

    def test_retryable_errors(self):
        assert is_retryable(StaleDataError("x"))
        assert not is_retryable(ValueError("x"))
