"""
Servicios de negocio para el ciclo de compras

Implementa:
- Proveedores (alta y consulta)
- Máquina de estados de órdenes de compra
- Recepciones (GRN): única entrada de stock, avanza la orden ligada
- Facturas de proveedor: totales, saldos, abonos y edición de líneas
- Devoluciones: salida de stock FIFO y reducción del saldo de la factura

Los servicios de documentos solo hacen flush: la unidad de trabajo (commit / rollback /
reintento) pertenece a PurchaseLifecycle. Las filas en disputa se bloquean
en orden: orden de compra, factura, recepción, productos por id.

Integración con otros módulos:
- Inventory: StockAdjuster (stock, lotes y movimientos)
- Sequences: numeración PO / GRN / PB / PR
"""

from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.common.exceptions import (
    AlreadyComplete, InvalidPOState, InvalidTransition, NotFound, OverPayment,
    OverReceipt, OverReturn, ValidationError
)
from app.modules.inventory.service import StockAdjuster
from app.modules.products.service import require_products
from app.modules.purchases import ledger
from app.modules.purchases.models import (
    Supplier, PurchaseOrder, POLine, GoodsReceipt, GRNLine,
    PurchaseBill, BillLine, BillPayment, PurchaseReturn, ReturnLine,
    PurchaseOrderStatus, BillStatus, PaymentType, PaymentMethod
)
from app.modules.purchases.schemas import (
    SupplierCreate, SupplierList,
    PurchaseOrderCreate, PurchaseOrderList,
    GoodsReceiptCreate, GoodsReceiptList,
    PurchaseBillCreate, PurchaseBillUpdate, PurchaseBillList, BillPaymentCreate,
    PurchaseReturnCreate, PurchaseReturnList
)
from app.modules.sequences.service import (
    SequenceService, PURCHASE_ORDER, GOODS_RECEIPT, PURCHASE_BILL, PURCHASE_RETURN
)

logger = logging.getLogger(__name__)

# Estados desde los que una orden acepta mercancía o anulación
OPEN_PO_STATES = (
    PurchaseOrderStatus.DRAFT,
    PurchaseOrderStatus.CONFIRMED,
    PurchaseOrderStatus.PARTIALLY_RECEIVED,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _sum_by_product(pairs: Iterable) -> Dict[UUID, int]:
    """(product_id, qty) -> {product_id: Σqty}, preserving first-seen order."""
    totals: Dict[UUID, int] = OrderedDict()
    for product_id, qty in pairs:
        totals[product_id] = totals.get(product_id, 0) + qty
    return totals


# ===== PROVEEDORES =====

class ProviderValidator:
    """Helper para validar que el proveedor exista y esté activo"""
    def __init__(self, db: Session):
        self.db = db

    def require_supplier(self, supplier_id: UUID) -> Supplier:
        if supplier_id is None:
            raise ValidationError("supplier_id is required", field="supplier_id")
        supplier = self.db.get(Supplier, supplier_id)
        if not supplier:
            raise NotFound("Supplier", supplier_id)
        if not supplier.is_active:
            raise ValidationError("Supplier is inactive", field="supplier_id", supplier_id=supplier_id)
        return supplier


class SupplierService:
    def __init__(self, db: Session):
        self.db = db

    def create_supplier(self, supplier_data: SupplierCreate) -> Supplier:
        if supplier_data.document:
            existing = self.db.query(Supplier).filter(Supplier.document == supplier_data.document).first()
            if existing:
                raise ValidationError(
                    f"A supplier with document '{supplier_data.document}' already exists",
                    field="document"
                )
        try:
            supplier = Supplier(**supplier_data.model_dump())
            self.db.add(supplier)
            self.db.commit()
            self.db.refresh(supplier)
            logger.info(f"Supplier {supplier.name} created")
            return supplier
        except IntegrityError:
            self.db.rollback()
            raise ValidationError(
                f"A supplier with document '{supplier_data.document}' already exists",
                field="document"
            )

    def get_suppliers(self, limit: int = 100, offset: int = 0, search: Optional[str] = None) -> SupplierList:
        query = self.db.query(Supplier)
        if search:
            query = query.filter(Supplier.name.ilike(f"%{search}%"))
        total = query.count()
        suppliers = query.order_by(Supplier.name).offset(offset).limit(limit).all()
        return SupplierList(items=suppliers, total=total, limit=limit, offset=offset)

    def get_supplier_by_id(self, supplier_id: UUID) -> Supplier:
        supplier = self.db.get(Supplier, supplier_id)
        if not supplier:
            raise NotFound("Supplier", supplier_id)
        return supplier


# ===== ÓRDENES DE COMPRA =====

class PurchaseOrderService:
    """
    Máquina de estados de la orden de compra

    draft → confirmed → partially_received → complete
    draft | confirmed | partially_received → cancelled
    """

    def __init__(self, db: Session):
        self.db = db

    def create_purchase_order(
        self,
        po_data: PurchaseOrderCreate,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None
    ) -> PurchaseOrder:
        """Crear orden de compra en borrador"""
        ProviderValidator(self.db).require_supplier(po_data.supplier_id)

        seen = set()
        for line in po_data.lines:
            if line.product_id in seen:
                raise ValidationError(
                    "A purchase order cannot list the same product twice",
                    field="lines", product_id=line.product_id
                )
            seen.add(line.product_id)
        require_products(self.db, seen)

        totals = ledger.compute_totals(
            (line.qty_ordered, line.unit_cost, line.tax_percent) for line in po_data.lines
        )

        po = PurchaseOrder(
            po_number=SequenceService(self.db).next_number(PURCHASE_ORDER),
            supplier_id=po_data.supplier_id,
            status=PurchaseOrderStatus.DRAFT,
            expected_date=po_data.expected_date,
            notes=po_data.notes,
            subtotal=totals.subtotal,
            tax_total=totals.tax_total,
            total_amount=totals.total_amount,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        for line_no, line in enumerate(po_data.lines, start=1):
            po.lines.append(POLine(
                line_no=line_no,
                product_id=line.product_id,
                qty_ordered=line.qty_ordered,
                qty_received=0,
                unit_cost=line.unit_cost,
                tax_percent=line.tax_percent,
            ))
        self.db.add(po)
        self.db.flush()
        logger.info(f"Purchase order {po.po_number} created with {len(po.lines)} lines")
        return po

    def get_purchase_orders(
        self,
        limit: int = 100,
        offset: int = 0,
        status_filter: Optional[PurchaseOrderStatus] = None,
        supplier_id: Optional[UUID] = None
    ) -> PurchaseOrderList:
        query = self.db.query(PurchaseOrder)
        if status_filter:
            query = query.filter(PurchaseOrder.status == status_filter)
        if supplier_id:
            query = query.filter(PurchaseOrder.supplier_id == supplier_id)
        total = query.count()
        orders = query.order_by(PurchaseOrder.po_number.desc()).offset(offset).limit(limit).all()
        return PurchaseOrderList(items=orders, total=total, limit=limit, offset=offset)

    def get_purchase_order_by_id(self, po_id: UUID) -> PurchaseOrder:
        po = self.db.get(PurchaseOrder, po_id)
        if not po:
            raise NotFound("PurchaseOrder", po_id)
        return po

    def lock(self, po_id: UUID) -> PurchaseOrder:
        """Carga la orden con SELECT ... FOR UPDATE (y sus líneas frescas)."""
        po = self.db.execute(
            select(PurchaseOrder)
            .where(PurchaseOrder.id == po_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not po:
            raise NotFound("PurchaseOrder", po_id)
        self.db.execute(
            select(POLine)
            .where(POLine.purchase_order_id == po.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        return po

    def confirm(self, po: PurchaseOrder) -> PurchaseOrder:
        if po.status != PurchaseOrderStatus.DRAFT:
            raise InvalidTransition(
                f"Purchase order {po.po_number} cannot be confirmed from {po.status.value}",
                po_number=po.po_number, from_status=po.status.value, to_status="confirmed"
            )
        po.status = PurchaseOrderStatus.CONFIRMED
        po.confirmed_at = _now()
        self.db.flush()
        logger.info(f"Purchase order {po.po_number} confirmed")
        return po

    def cancel(self, po: PurchaseOrder, reason: Optional[str] = None) -> PurchaseOrder:
        """Anular orden. Las recepciones previas siguen siendo válidas."""
        if po.status not in OPEN_PO_STATES:
            raise InvalidTransition(
                f"Purchase order {po.po_number} cannot be cancelled from {po.status.value}",
                po_number=po.po_number, from_status=po.status.value, to_status="cancelled"
            )
        po.status = PurchaseOrderStatus.CANCELLED
        po.cancelled_at = _now()
        if reason:
            po.notes = f"{po.notes}\nAnulada: {reason}" if po.notes else f"Anulada: {reason}"
        self.db.flush()
        logger.info(f"Purchase order {po.po_number} cancelled")
        return po

    def check_receivable(self, po: PurchaseOrder) -> None:
        if po.status == PurchaseOrderStatus.COMPLETE:
            raise AlreadyComplete(
                f"Purchase order {po.po_number} is already complete",
                po_number=po.po_number, status=po.status.value
            )
        if po.status not in OPEN_PO_STATES:
            raise InvalidPOState(
                f"Purchase order {po.po_number} cannot receive goods in status {po.status.value}",
                po_number=po.po_number, status=po.status.value
            )

    def check_capacity(self, po: PurchaseOrder, quantities: Dict[UUID, int]) -> Dict[UUID, POLine]:
        """Cada producto debe estar en la orden y caber en lo pendiente."""
        lines = {line.product_id: line for line in po.lines}
        for product_id, qty in quantities.items():
            line = lines.get(product_id)
            if line is None:
                raise ValidationError(
                    f"Product {product_id} is not on purchase order {po.po_number}",
                    field="product_id", product_id=product_id, po_number=po.po_number
                )
            if qty > line.qty_remaining:
                raise OverReceipt(
                    f"Over-receipt on {po.po_number}: requested {qty}, only {line.qty_remaining} remaining",
                    product_id=product_id, requested=qty, remaining=line.qty_remaining,
                    ordered=line.qty_ordered, received=line.qty_received
                )
        return lines

    def apply_receipt(self, po: PurchaseOrder, quantities: Dict[UUID, int]) -> PurchaseOrder:
        """
        Suma lo recibido a la orden y recalcula su estado.

        Args:
            quantities: {product_id: cantidad recibida}
        """
        self.check_receivable(po)
        lines = self.check_capacity(po, quantities)

        for product_id, qty in quantities.items():
            lines[product_id].qty_received += qty

        if all(line.qty_received == line.qty_ordered for line in po.lines):
            po.status = PurchaseOrderStatus.COMPLETE
        elif any(line.qty_received > 0 for line in po.lines):
            po.status = PurchaseOrderStatus.PARTIALLY_RECEIVED
        po.last_received_at = _now()
        self.db.flush()
        logger.info(f"Purchase order {po.po_number} now {po.status.value}")
        return po


# ===== RECEPCIONES (GRN) =====

class GoodsReceiptService:
    def __init__(self, db: Session):
        self.db = db

    def receive(
        self,
        grn_data: GoodsReceiptCreate,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None
    ) -> GoodsReceipt:
        """
        Registrar recepción de mercancía.

        Orden de efectos: (1) stock por línea, (2) avance de la orden ligada,
        (3) documento GRN inmutable. Todo en la transacción del llamador.
        """
        po_service = PurchaseOrderService(self.db)
        quantities = _sum_by_product((line.product_id, line.received_qty) for line in grn_data.lines)
        require_products(self.db, quantities.keys())

        po = None
        supplier_id = grn_data.supplier_id
        unit_costs: Dict[UUID, Decimal] = {}
        if grn_data.purchase_order_id:
            po = po_service.lock(grn_data.purchase_order_id)
            po_service.check_receivable(po)
            if supplier_id is None:
                supplier_id = po.supplier_id
            elif supplier_id != po.supplier_id:
                raise ValidationError(
                    "Supplier does not match the purchase order supplier",
                    field="supplier_id", supplier_id=supplier_id, po_supplier_id=po.supplier_id
                )
            po_lines = po_service.check_capacity(po, quantities)
            unit_costs = {product_id: line.unit_cost for product_id, line in po_lines.items()}
        ProviderValidator(self.db).require_supplier(supplier_id)

        grn_number = SequenceService(self.db).next_number(GOODS_RECEIPT)
        adjuster = StockAdjuster(self.db)
        adjuster.lock_products(quantities.keys())

        # (1) stock
        received = []
        for line in grn_data.lines:
            unit_cost = line.unit_cost if line.unit_cost is not None else unit_costs.get(line.product_id)
            unit_cost = ledger.to_decimal(unit_cost, "unit_cost")
            batch = adjuster.receive(
                line.product_id, line.received_qty, unit_cost, reference=grn_number,
                batch_no=line.batch_no, expiry=line.expiry, supplier_id=supplier_id
            )
            received.append((line, unit_cost, batch))

        # (2) orden de compra
        if po is not None:
            po_service.apply_receipt(po, quantities)

        # (3) documento
        grn = GoodsReceipt(
            grn_number=grn_number,
            purchase_order_id=po.id if po is not None else None,
            supplier_id=supplier_id,
            notes=grn_data.notes,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        for line_no, (line, unit_cost, batch) in enumerate(received, start=1):
            grn.lines.append(GRNLine(
                line_no=line_no,
                product_id=line.product_id,
                batch_no=batch.batch_no,
                expiry=line.expiry,
                received_qty=line.received_qty,
                unit_cost=unit_cost,
            ))
        self.db.add(grn)
        self.db.flush()
        for _, _, batch in received:
            batch.grn_id = grn.id
        self.db.flush()

        logger.info(
            f"GRN {grn.grn_number} recorded"
            + (f" against {po.po_number}" if po is not None else " (direct inward)")
        )
        return grn

    def get_goods_receipts(
        self,
        limit: int = 100,
        offset: int = 0,
        purchase_order_id: Optional[UUID] = None,
        supplier_id: Optional[UUID] = None
    ) -> GoodsReceiptList:
        query = self.db.query(GoodsReceipt)
        if purchase_order_id:
            query = query.filter(GoodsReceipt.purchase_order_id == purchase_order_id)
        if supplier_id:
            query = query.filter(GoodsReceipt.supplier_id == supplier_id)
        total = query.count()
        receipts = query.order_by(GoodsReceipt.grn_number.desc()).offset(offset).limit(limit).all()
        return GoodsReceiptList(items=receipts, total=total, limit=limit, offset=offset)

    def get_goods_receipt_by_id(self, grn_id: UUID) -> GoodsReceipt:
        grn = self.db.get(GoodsReceipt, grn_id)
        if not grn:
            raise NotFound("GoodsReceipt", grn_id)
        return grn


# ===== FACTURAS =====

class BillService:
    def __init__(self, db: Session):
        self.db = db

    def _refresh_balances(self, bill: PurchaseBill) -> None:
        settlement = ledger.settle(bill.total_amount, bill.paid_amount, bill.total_returned)
        bill.due_amount = settlement.due_amount
        bill.credit_balance = settlement.credit_balance
        if settlement.due_amount <= 0:
            bill.status = BillStatus.PAID
        elif bill.paid_amount > 0 or bill.total_returned > 0:
            bill.status = BillStatus.PARTIAL
        else:
            bill.status = BillStatus.OPEN

    def _require_grn_for_supplier(self, grn_id: UUID, supplier_id: UUID) -> GoodsReceipt:
        # FOR UPDATE serializa facturas y devoluciones sobre la misma recepción
        grn = self.db.execute(
            select(GoodsReceipt)
            .where(GoodsReceipt.id == grn_id)
            .with_for_update()
        ).scalar_one_or_none()
        if not grn:
            raise NotFound("GoodsReceipt", grn_id)
        if grn.supplier_id != supplier_id:
            raise ValidationError(
                f"GRN {grn.grn_number} belongs to another supplier",
                field="grn_id", grn_id=grn_id
            )
        return grn

    def _check_against_grn(self, grn: GoodsReceipt, lines, bill_id: Optional[UUID] = None) -> None:
        """
        Lo facturado sobre una recepción no supera lo recibido, sumando
        todas las facturas ligadas a ella (menos `bill_id` al editarla).
        """
        received = _sum_by_product((line.product_id, line.received_qty) for line in grn.lines)
        query = (
            select(BillLine.product_id, func.sum(BillLine.quantity))
            .join(PurchaseBill, BillLine.bill_id == PurchaseBill.id)
            .where(PurchaseBill.grn_id == grn.id)
            .group_by(BillLine.product_id)
        )
        if bill_id is not None:
            query = query.where(PurchaseBill.id != bill_id)
        billed = {product_id: int(qty or 0) for product_id, qty in self.db.execute(query).all()}

        for product_id, qty in _sum_by_product((line.product_id, line.quantity) for line in lines).items():
            if product_id not in received:
                raise ValidationError(
                    f"Product {product_id} does not appear on {grn.grn_number}",
                    field="product_id", product_id=product_id, grn_number=grn.grn_number
                )
            allowed = received[product_id] - billed.get(product_id, 0)
            if qty > allowed:
                raise ValidationError(
                    f"Billed quantity exceeds {grn.grn_number}: requested {qty}, only {allowed} received and unbilled",
                    field="quantity", product_id=product_id, requested=qty, allowed=allowed,
                    grn_number=grn.grn_number
                )

    def create_bill(
        self,
        bill_data: PurchaseBillCreate,
        grn_id: Optional[UUID] = None,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None
    ) -> PurchaseBill:
        """Crear factura de proveedor con abono inicial opcional"""
        ProviderValidator(self.db).require_supplier(bill_data.supplier_id)
        require_products(self.db, (line.product_id for line in bill_data.lines))

        grn_id = grn_id or bill_data.grn_id
        if grn_id:
            grn = self._require_grn_for_supplier(grn_id, bill_data.supplier_id)
            self._check_against_grn(grn, bill_data.lines)

        totals = ledger.compute_totals(
            ((line.quantity, line.rate, line.tax_percent) for line in bill_data.lines),
            discount=bill_data.discount,
        )
        paid_amount = ledger.to_decimal(bill_data.paid_amount, "paid_amount")
        if paid_amount < 0:
            raise ValidationError("paid_amount cannot be negative", field="paid_amount", value=paid_amount)
        if paid_amount > totals.total_amount:
            raise OverPayment(
                f"Paid amount ({paid_amount}) exceeds bill total ({totals.total_amount})",
                requested=paid_amount, allowed=totals.total_amount
            )

        bill = PurchaseBill(
            bill_no=SequenceService(self.db).next_number(PURCHASE_BILL),
            supplier_id=bill_data.supplier_id,
            grn_id=grn_id,
            payment_type=bill_data.payment_type,
            notes=bill_data.notes,
            subtotal=totals.subtotal,
            discount=totals.discount,
            tax_total=totals.tax_total,
            total_amount=totals.total_amount,
            paid_amount=paid_amount,
            total_returned=ledger.ZERO,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        for line_no, line in enumerate(bill_data.lines, start=1):
            bill.lines.append(BillLine(
                line_no=line_no,
                product_id=line.product_id,
                quantity=line.quantity,
                rate=line.rate,
                tax_percent=line.tax_percent,
            ))
        if paid_amount > 0:
            method = PaymentMethod.BANK if bill_data.payment_type == PaymentType.BANK else PaymentMethod.CASH
            bill.payments.append(BillPayment(amount=paid_amount, method=method, reference="Pago inicial"))
        self._refresh_balances(bill)

        self.db.add(bill)
        self.db.flush()
        logger.info(f"Bill {bill.bill_no} created: total {bill.total_amount}, due {bill.due_amount}")
        return bill

    def get_bills(
        self,
        limit: int = 100,
        offset: int = 0,
        supplier_id: Optional[UUID] = None,
        status_filter: Optional[BillStatus] = None
    ) -> PurchaseBillList:
        query = self.db.query(PurchaseBill)
        if supplier_id:
            query = query.filter(PurchaseBill.supplier_id == supplier_id)
        if status_filter:
            query = query.filter(PurchaseBill.status == status_filter)
        total = query.count()
        bills = query.order_by(PurchaseBill.bill_no.desc()).offset(offset).limit(limit).all()
        return PurchaseBillList(items=bills, total=total, limit=limit, offset=offset)

    def get_bill_by_id(self, bill_id: UUID) -> PurchaseBill:
        bill = self.db.get(PurchaseBill, bill_id)
        if not bill:
            raise NotFound("PurchaseBill", bill_id)
        return bill

    def lock(self, bill_id: UUID) -> PurchaseBill:
        bill = self.db.execute(
            select(PurchaseBill)
            .where(PurchaseBill.id == bill_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not bill:
            raise NotFound("PurchaseBill", bill_id)
        return bill

    def record_payment(
        self,
        bill: PurchaseBill,
        payment_data: BillPaymentCreate,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None
    ) -> BillPayment:
        """Registrar abono; nunca por encima del saldo pendiente"""
        amount = ledger.to_decimal(payment_data.amount, "amount")
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero", field="amount", value=amount)
        if amount > bill.due_amount:
            allowed = max(bill.due_amount, ledger.ZERO)
            raise OverPayment(
                f"Payment ({amount}) exceeds the amount due ({allowed}) on {bill.bill_no}",
                requested=amount, allowed=allowed, bill_no=bill.bill_no
            )

        payment = BillPayment(
            amount=amount,
            method=payment_data.method,
            reference=payment_data.reference,
            notes=payment_data.notes,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        bill.payments.append(payment)
        bill.paid_amount = bill.paid_amount + amount
        self._refresh_balances(bill)
        self.db.flush()
        logger.info(f"Payment of {amount} on {bill.bill_no}; due {bill.due_amount}")
        return payment

    def list_payments(self, bill_id: UUID) -> List[BillPayment]:
        self.get_bill_by_id(bill_id)
        return (
            self.db.query(BillPayment)
            .filter(BillPayment.bill_id == bill_id)
            .order_by(BillPayment.paid_at)
            .all()
        )

    def update_lines(self, bill: PurchaseBill, bill_update: PurchaseBillUpdate) -> ledger.DocumentTotals:
        """
        Editar líneas / descuento de una factura.

        Solo antes del primer abono y antes de cualquier devolución.

        Returns:
            Totales anteriores, para el asiento de ajuste
        """
        if bill.paid_amount > 0 or bill.payments:
            raise InvalidTransition(
                f"Bill {bill.bill_no} already has payments and cannot be edited",
                bill_no=bill.bill_no
            )
        has_returns = self.db.query(PurchaseReturn.id).filter(PurchaseReturn.bill_id == bill.id).first()
        if has_returns or bill.total_returned > 0:
            raise InvalidTransition(
                f"Bill {bill.bill_no} has returns and cannot be edited",
                bill_no=bill.bill_no
            )

        previous = ledger.DocumentTotals(
            subtotal=bill.subtotal,
            discount=bill.discount,
            tax_total=bill.tax_total,
            total_amount=bill.total_amount,
        )

        if bill_update.lines is not None:
            require_products(self.db, (line.product_id for line in bill_update.lines))
            if bill.grn_id:
                grn = self._require_grn_for_supplier(bill.grn_id, bill.supplier_id)
                self._check_against_grn(grn, bill_update.lines, bill_id=bill.id)
            bill.lines.clear()
            self.db.flush()
            for line_no, line in enumerate(bill_update.lines, start=1):
                bill.lines.append(BillLine(
                    line_no=line_no,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    rate=line.rate,
                    tax_percent=line.tax_percent,
                ))

        discount = bill_update.discount if bill_update.discount is not None else bill.discount
        totals = ledger.compute_totals(
            ((line.quantity, line.rate, line.tax_percent) for line in bill.lines),
            discount=discount,
        )
        bill.subtotal = totals.subtotal
        bill.discount = totals.discount
        bill.tax_total = totals.tax_total
        bill.total_amount = totals.total_amount
        if bill_update.notes is not None:
            bill.notes = bill_update.notes
        self._refresh_balances(bill)
        self.db.flush()
        logger.info(f"Bill {bill.bill_no} edited: total {previous.total_amount} -> {bill.total_amount}")
        return previous


# ===== DEVOLUCIONES =====

class PurchaseReturnService:
    def __init__(self, db: Session):
        self.db = db

    def _check_returnable(
        self,
        document: str,
        available: Dict[UUID, int],
        already_returned: Dict[UUID, int],
        quantities: Dict[UUID, int]
    ) -> None:
        for product_id, qty in quantities.items():
            if product_id not in available:
                raise ValidationError(
                    f"Product {product_id} does not appear on {document}",
                    field="product_id", product_id=product_id
                )
            allowed = available[product_id] - already_returned.get(product_id, 0)
            if qty > allowed:
                raise OverReturn(
                    f"Over-return against {document}: requested {qty}, only {allowed} returnable",
                    product_id=product_id, requested=qty, allowed=allowed
                )

    def _returned_by_product(self, condition) -> Dict[UUID, int]:
        rows = self.db.execute(
            select(ReturnLine.product_id, func.sum(ReturnLine.qty))
            .join(PurchaseReturn, ReturnLine.purchase_return_id == PurchaseReturn.id)
            .where(condition)
            .group_by(ReturnLine.product_id)
        ).all()
        return {product_id: int(qty or 0) for product_id, qty in rows}

    def _resolve_price(self, document: str, line, candidates: List[Tuple[Decimal, Optional[Decimal]]]):
        """
        Tarifa e impuesto de una línea devuelta, tomados del documento ligado.

        candidates: pares (rate, tax_percent) de las líneas del documento para
        ese producto; tax_percent None cuando el documento no lo define (GRN).
        Un valor enviado que no coincide con ninguna línea es un error.
        """
        matches = {
            (rate, tax) for rate, tax in candidates
            if (line.rate is None or rate == line.rate)
            and (tax is None or line.tax_percent is None or tax == line.tax_percent)
        }
        if not matches:
            raise ValidationError(
                f"Rate or tax of product {line.product_id} does not match {document}",
                field="rate", product_id=line.product_id,
                rate=line.rate, tax_percent=line.tax_percent
            )
        if len(matches) > 1:
            raise ValidationError(
                f"Product {line.product_id} appears on {document} at more than one rate; send the rate",
                field="rate", product_id=line.product_id
            )
        rate, tax = matches.pop()
        if tax is None:
            tax = line.tax_percent if line.tax_percent is not None else ledger.ZERO
        return rate, tax

    def _price_lines(self, return_data: PurchaseReturnCreate, bill, grn) -> List[Tuple[Decimal, Decimal]]:
        if bill is not None:
            document, source = bill.bill_no, [
                (line.product_id, line.rate, line.tax_percent) for line in bill.lines
            ]
        elif grn is not None:
            document, source = grn.grn_number, [
                (line.product_id, line.unit_cost, None) for line in grn.lines
            ]
        else:
            return [
                (ledger.to_decimal(line.rate, "rate"),
                 line.tax_percent if line.tax_percent is not None else ledger.ZERO)
                for line in return_data.lines
            ]

        candidates: Dict[UUID, List] = {}
        for product_id, rate, tax in source:
            candidates.setdefault(product_id, []).append((rate, tax))
        return [self._resolve_price(document, line, candidates[line.product_id]) for line in return_data.lines]

    def _check_returnable_by_price(self, bill: PurchaseBill, return_data: PurchaseReturnCreate, prices) -> None:
        """Por cada tarifa facturada no se devuelve más de lo facturado a esa tarifa."""
        billed = _sum_by_product(
            ((line.product_id, line.rate, line.tax_percent), line.quantity) for line in bill.lines
        )
        rows = self.db.execute(
            select(ReturnLine.product_id, ReturnLine.rate, ReturnLine.tax_percent, func.sum(ReturnLine.qty))
            .join(PurchaseReturn, ReturnLine.purchase_return_id == PurchaseReturn.id)
            .where(PurchaseReturn.bill_id == bill.id)
            .group_by(ReturnLine.product_id, ReturnLine.rate, ReturnLine.tax_percent)
        ).all()
        returned = {(product_id, rate, tax): int(qty or 0) for product_id, rate, tax, qty in rows}
        requested = _sum_by_product(
            ((line.product_id, rate, tax), line.qty) for line, (rate, tax) in zip(return_data.lines, prices)
        )
        for key, qty in requested.items():
            allowed = billed.get(key, 0) - returned.get(key, 0)
            if qty > allowed:
                raise OverReturn(
                    f"Over-return against {bill.bill_no}: requested {qty} at rate {key[1]}, only {allowed} returnable",
                    product_id=key[0], rate=key[1], requested=qty, allowed=allowed
                )

    def _bill_discount_share(self, bill: PurchaseBill, return_subtotal: Decimal) -> Decimal:
        previous = self.db.query(PurchaseReturn).filter(PurchaseReturn.bill_id == bill.id).all()
        return ledger.discount_share(
            bill.subtotal,
            bill.discount,
            sum((r.subtotal for r in previous), ledger.ZERO),
            sum((r.discount for r in previous), ledger.ZERO),
            return_subtotal,
        )

    def create_return(
        self,
        return_data: PurchaseReturnCreate,
        idempotency_key: Optional[str] = None,
        request_hash: Optional[str] = None
    ) -> PurchaseReturn:
        """
        Registrar devolución a proveedor.

        Precios: con factura ligada, tarifa e impuesto de su línea y la parte
        proporcional del descuento; con solo GRN, el costo de su línea.
        Stock: salida FIFO por línea (InsufficientStock detiene todo).
        Factura ligada: total_returned += total, nunca por encima de su total;
        paid_amount no cambia.
        """
        ProviderValidator(self.db).require_supplier(return_data.supplier_id)
        quantities = _sum_by_product((line.product_id, line.qty) for line in return_data.lines)
        require_products(self.db, quantities.keys())

        bill = None
        if return_data.bill_id:
            bill_service = BillService(self.db)
            bill = bill_service.lock(return_data.bill_id)
            if bill.supplier_id != return_data.supplier_id:
                raise ValidationError(
                    f"Bill {bill.bill_no} belongs to another supplier",
                    field="bill_id", bill_id=bill.id
                )
            self._check_returnable(
                bill.bill_no,
                _sum_by_product((line.product_id, line.quantity) for line in bill.lines),
                self._returned_by_product(PurchaseReturn.bill_id == bill.id),
                quantities,
            )

        grn = None
        if return_data.grn_id:
            grn = BillService(self.db)._require_grn_for_supplier(return_data.grn_id, return_data.supplier_id)
            self._check_returnable(
                grn.grn_number,
                _sum_by_product((line.product_id, line.received_qty) for line in grn.lines),
                self._returned_by_product(PurchaseReturn.grn_id == grn.id),
                quantities,
            )

        prices = self._price_lines(return_data, bill, grn)
        discount = ledger.ZERO
        if bill is not None:
            self._check_returnable_by_price(bill, return_data, prices)
            return_subtotal = sum(
                (ledger.line_subtotal(line.qty, rate) for line, (rate, _) in zip(return_data.lines, prices)),
                ledger.ZERO,
            )
            discount = self._bill_discount_share(bill, return_subtotal)

        totals = ledger.compute_totals(
            ((line.qty, rate, tax) for line, (rate, tax) in zip(return_data.lines, prices)),
            discount=discount,
        )
        if bill is not None and bill.total_returned + totals.total_amount > bill.total_amount:
            allowed = bill.total_amount - bill.total_returned
            raise OverReturn(
                f"Return of {totals.total_amount} exceeds the {allowed} left to return on {bill.bill_no}",
                requested=totals.total_amount, allowed=allowed, bill_no=bill.bill_no
            )
        return_no = SequenceService(self.db).next_number(PURCHASE_RETURN)

        adjuster = StockAdjuster(self.db)
        adjuster.lock_products(quantities.keys())
        consumed = [adjuster.consume(line.product_id, line.qty, reference=return_no) for line in return_data.lines]

        if bill is not None:
            bill.total_returned = bill.total_returned + totals.total_amount
            BillService(self.db)._refresh_balances(bill)

        purchase_return = PurchaseReturn(
            return_no=return_no,
            supplier_id=return_data.supplier_id,
            bill_id=return_data.bill_id,
            grn_id=return_data.grn_id,
            reason=return_data.reason,
            subtotal=totals.subtotal,
            discount=totals.discount,
            tax_total=totals.tax_total,
            total_amount=totals.total_amount,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        for line_no, (line, (rate, tax), batches) in enumerate(zip(return_data.lines, prices, consumed), start=1):
            purchase_return.lines.append(ReturnLine(
                line_no=line_no,
                product_id=line.product_id,
                qty=line.qty,
                rate=rate,
                tax_percent=tax,
                consumed_batches=batches,
            ))
        self.db.add(purchase_return)
        self.db.flush()

        if bill is not None and bill.credit_balance > 0:
            logger.warning(f"Bill {bill.bill_no} now carries a supplier credit of {bill.credit_balance}")
        logger.info(f"Return {purchase_return.return_no} recorded: total {purchase_return.total_amount}")
        return purchase_return

    def get_returns(
        self,
        limit: int = 100,
        offset: int = 0,
        supplier_id: Optional[UUID] = None,
        bill_id: Optional[UUID] = None
    ) -> PurchaseReturnList:
        query = self.db.query(PurchaseReturn)
        if supplier_id:
            query = query.filter(PurchaseReturn.supplier_id == supplier_id)
        if bill_id:
            query = query.filter(PurchaseReturn.bill_id == bill_id)
        total = query.count()
        returns = query.order_by(PurchaseReturn.return_no.desc()).offset(offset).limit(limit).all()
        return PurchaseReturnList(items=returns, total=total, limit=limit, offset=offset)

    def get_return_by_id(self, return_id: UUID) -> PurchaseReturn:
        purchase_return = self.db.get(PurchaseReturn, return_id)
        if not purchase_return:
            raise NotFound("PurchaseReturn", return_id)
        return purchase_return
