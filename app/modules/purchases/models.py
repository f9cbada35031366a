"""
Modelos SQLAlchemy para el ciclo de compras

Cadena de documentos:
- Proveedores (Suppliers)
- Órdenes de compra (PurchaseOrders) → no afectan inventario
- Recepciones de mercancía (GoodsReceipts / GRN) → única entrada de stock
- Facturas de proveedor (PurchaseBills) y sus pagos (BillPayments)
- Devoluciones / notas débito (PurchaseReturns) → salida de stock

Cada documento copia en sus líneas las cantidades y tarifas del momento
(snapshot) y referencia a los demás documentos solo por id.
GRN y devoluciones son inmutables: una corrección es un documento nuevo.
"""

from app.database.database import Base
from sqlalchemy import (
    Column, String, Boolean, Integer, DateTime, ForeignKey, Numeric, Enum, Date, Text, JSON,
    CheckConstraint, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TimestampMixin, ImmutableMixin
import enum


# ===== ENUMS =====

class PurchaseOrderStatus(enum.Enum):
    """Estados de órdenes de compra"""
    DRAFT = "draft"                             # Borrador
    CONFIRMED = "confirmed"                     # Confirmada con el proveedor
    PARTIALLY_RECEIVED = "partially_received"   # Recepción parcial
    COMPLETE = "complete"                       # Recibida por completo
    CANCELLED = "cancelled"                     # Anulada


class BillStatus(enum.Enum):
    """Estados de facturas de proveedor (derivados de los saldos)"""
    OPEN = "open"           # Sin pagos
    PARTIAL = "partial"     # Pago parcial
    PAID = "paid"           # Saldo en cero o a favor


class PaymentType(enum.Enum):
    """Forma de pago de la factura"""
    CASH = "cash"
    BANK = "bank"
    CREDIT = "credit"


class PaymentMethod(enum.Enum):
    """Métodos de pago de un abono"""
    CASH = "cash"
    BANK = "bank"


# ===== MODELOS =====

class Supplier(Base, TimestampMixin):
    """Proveedores. El motor solo los consulta."""
    __tablename__ = "suppliers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False, index=True)
    document = Column(String(50), nullable=True, unique=True)  # NIT o CC
    email = Column(String(100), nullable=True)
    phone = Column(String(50), nullable=True)
    address = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class PurchaseOrder(Base, TimestampMixin):
    """
    Órdenes de compra a proveedores

    Máquina de estados: draft → confirmed → partially_received → complete,
    y cualquier estado no terminal → cancelled. Nunca se eliminan.
    """
    __tablename__ = "purchase_orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    po_number = Column(String(30), nullable=False, unique=True, index=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.id"), nullable=False, index=True)

    status = Column(Enum(PurchaseOrderStatus), nullable=False, default=PurchaseOrderStatus.DRAFT, index=True)
    ordered_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expected_date = Column(Date, nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    last_received_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    # Totales calculados sobre lo ordenado
    subtotal = Column(Numeric(28, 12), nullable=False, default=0)
    tax_total = Column(Numeric(28, 12), nullable=False, default=0)
    total_amount = Column(Numeric(28, 12), nullable=False, default=0)

    idempotency_key = Column(String(100), nullable=True, unique=True)
    request_hash = Column(String(64), nullable=True)  # sha256 del payload original
    version_id = Column(Integer, nullable=False, default=1)

    # Relationships
    supplier = relationship("Supplier")
    lines = relationship(
        "POLine", back_populates="purchase_order",
        cascade="all, delete-orphan", order_by="POLine.line_no"
    )

    __mapper_args__ = {"version_id_col": version_id}


class POLine(Base, TimestampMixin):
    __tablename__ = "purchase_order_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    purchase_order_id = Column(UUID(as_uuid=True), ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False)

    qty_ordered = Column(Integer, nullable=False)
    qty_received = Column(Integer, nullable=False, default=0)
    unit_cost = Column(Numeric(28, 12), nullable=False)
    tax_percent = Column(Numeric(9, 4), nullable=False, default=0)

    purchase_order = relationship("PurchaseOrder", back_populates="lines")
    product = relationship("Product")

    __table_args__ = (
        UniqueConstraint("purchase_order_id", "product_id", name="uq_po_line_product"),
        CheckConstraint("qty_ordered > 0", name="ck_po_line_qty_ordered_positive"),
        CheckConstraint(
            "qty_received >= 0 AND qty_received <= qty_ordered",
            name="ck_po_line_qty_received_bounds"
        ),
    )

    @property
    def qty_remaining(self) -> int:
        return self.qty_ordered - self.qty_received


class GoodsReceipt(Base, ImmutableMixin, TimestampMixin):
    """
    Recepción de mercancía (GRN)

    Único documento que incrementa stock. Puede estar ligada a una orden de
    compra o ser una entrada directa.
    """
    __tablename__ = "goods_receipts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    grn_number = Column(String(30), nullable=False, unique=True, index=True)
    purchase_order_id = Column(UUID(as_uuid=True), ForeignKey("purchase_orders.id"), nullable=True, index=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.id"), nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    notes = Column(Text, nullable=True)
    idempotency_key = Column(String(100), nullable=True, unique=True)
    request_hash = Column(String(64), nullable=True)

    lines = relationship("GRNLine", back_populates="goods_receipt", cascade="all", order_by="GRNLine.line_no")


class GRNLine(Base, ImmutableMixin, TimestampMixin):
    __tablename__ = "goods_receipt_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    goods_receipt_id = Column(UUID(as_uuid=True), ForeignKey("goods_receipts.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False)

    batch_no = Column(String(100), nullable=True)
    expiry = Column(Date, nullable=True)
    received_qty = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(28, 12), nullable=False)

    goods_receipt = relationship("GoodsReceipt", back_populates="lines")

    __table_args__ = (
        CheckConstraint("received_qty > 0", name="ck_grn_line_received_qty_positive"),
    )


class PurchaseBill(Base, TimestampMixin):
    """
    Factura de proveedor

    Saldos: due_amount = total_amount - total_returned - paid_amount.
    Un saldo negativo se expone como credit_balance (a favor de la empresa).
    """
    __tablename__ = "purchase_bills"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    bill_no = Column(String(30), nullable=False, unique=True, index=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.id"), nullable=False, index=True)
    grn_id = Column(UUID(as_uuid=True), ForeignKey("goods_receipts.id"), nullable=True, index=True)

    issued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    status = Column(Enum(BillStatus), nullable=False, default=BillStatus.OPEN, index=True)
    payment_type = Column(Enum(PaymentType), nullable=False, default=PaymentType.CREDIT)
    notes = Column(Text, nullable=True)

    # Totales calculados
    subtotal = Column(Numeric(28, 12), nullable=False, default=0)
    discount = Column(Numeric(28, 12), nullable=False, default=0)
    tax_total = Column(Numeric(28, 12), nullable=False, default=0)
    total_amount = Column(Numeric(28, 12), nullable=False, default=0)
    paid_amount = Column(Numeric(28, 12), nullable=False, default=0)
    total_returned = Column(Numeric(28, 12), nullable=False, default=0)
    due_amount = Column(Numeric(28, 12), nullable=False, default=0)
    credit_balance = Column(Numeric(28, 12), nullable=False, default=0)

    idempotency_key = Column(String(100), nullable=True, unique=True)
    request_hash = Column(String(64), nullable=True)
    version_id = Column(Integer, nullable=False, default=1)

    # Relationships
    supplier = relationship("Supplier")
    lines = relationship(
        "BillLine", back_populates="bill",
        cascade="all, delete-orphan", order_by="BillLine.line_no"
    )
    payments = relationship(
        "BillPayment", back_populates="bill",
        cascade="all", order_by="BillPayment.paid_at"
    )

    __table_args__ = (
        CheckConstraint("paid_amount >= 0", name="ck_bill_paid_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class BillLine(Base, TimestampMixin):
    __tablename__ = "purchase_bill_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    bill_id = Column(UUID(as_uuid=True), ForeignKey("purchase_bills.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False)

    quantity = Column(Integer, nullable=False)
    rate = Column(Numeric(28, 12), nullable=False)
    tax_percent = Column(Numeric(9, 4), nullable=False, default=0)

    bill = relationship("PurchaseBill", back_populates="lines")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_bill_line_quantity_positive"),
    )


class BillPayment(Base, ImmutableMixin, TimestampMixin):
    """Abonos a facturas de proveedor"""
    __tablename__ = "bill_payments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    bill_id = Column(UUID(as_uuid=True), ForeignKey("purchase_bills.id"), nullable=False, index=True)
    amount = Column(Numeric(28, 12), nullable=False)
    method = Column(Enum(PaymentMethod), nullable=False, default=PaymentMethod.CASH)
    reference = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    idempotency_key = Column(String(100), nullable=True, unique=True)
    request_hash = Column(String(64), nullable=True)

    bill = relationship("PurchaseBill", back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_bill_payment_amount_positive"),
    )


class PurchaseReturn(Base, ImmutableMixin, TimestampMixin):
    """
    Devolución a proveedor (nota débito)

    Reduce stock por lotes FIFO y, si está ligada a una factura, reduce su
    saldo. Inmutable: se revierte con una nueva recepción.
    """
    __tablename__ = "purchase_returns"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    return_no = Column(String(30), nullable=False, unique=True, index=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.id"), nullable=False, index=True)
    bill_id = Column(UUID(as_uuid=True), ForeignKey("purchase_bills.id"), nullable=True, index=True)
    grn_id = Column(UUID(as_uuid=True), ForeignKey("goods_receipts.id"), nullable=True, index=True)

    returned_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    reason = Column(Text, nullable=True)

    subtotal = Column(Numeric(28, 12), nullable=False, default=0)
    discount = Column(Numeric(28, 12), nullable=False, default=0)  # Parte del descuento de la factura
    tax_total = Column(Numeric(28, 12), nullable=False, default=0)
    total_amount = Column(Numeric(28, 12), nullable=False, default=0)

    idempotency_key = Column(String(100), nullable=True, unique=True)
    request_hash = Column(String(64), nullable=True)

    lines = relationship("ReturnLine", back_populates="purchase_return", cascade="all", order_by="ReturnLine.line_no")


class ReturnLine(Base, ImmutableMixin, TimestampMixin):
    __tablename__ = "purchase_return_lines"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    purchase_return_id = Column(UUID(as_uuid=True), ForeignKey("purchase_returns.id"), nullable=False, index=True)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    line_no = Column(Integer, nullable=False)

    qty = Column(Integer, nullable=False)
    rate = Column(Numeric(28, 12), nullable=False)
    tax_percent = Column(Numeric(9, 4), nullable=False, default=0)
    consumed_batches = Column(JSON, nullable=True)  # Lotes FIFO consumidos

    purchase_return = relationship("PurchaseReturn", back_populates="lines")

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_return_line_qty_positive"),
    )
