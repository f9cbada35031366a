"""
Esquemas Pydantic para el ciclo de compras

Entrada y salida de:
- Suppliers: proveedores
- PurchaseOrders: órdenes con líneas ordenado/recibido
- GoodsReceipts: recepciones (GRN) con lote y vencimiento opcionales
- PurchaseBills / BillPayments: facturas, saldos y abonos
- PurchaseReturns: devoluciones con lotes consumidos

Cada tipo de documento tiene su propio esquema de línea; los montos salen
redondeados solo al serializar (ver Money).
"""

from pydantic import BaseModel, Field, field_validator
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime

from app.common.schemas import Money
from app.modules.purchases.ledger import RATE_PLACES, PERCENT_PLACES
from app.modules.purchases.models import (
    PurchaseOrderStatus, BillStatus, PaymentType, PaymentMethod
)


# ===== SUPPLIER SCHEMAS =====

class SupplierBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200, description="Nombre del proveedor")
    document: Optional[str] = Field(None, max_length=50, description="NIT o CC del proveedor")
    email: Optional[str] = Field(None, max_length=100, description="Email del proveedor")
    phone: Optional[str] = Field(None, max_length=50, description="Teléfono del proveedor")
    address: Optional[str] = Field(None, description="Dirección del proveedor")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v):
        if v and v.strip():
            if '@' not in v or '.' not in v:
                raise ValueError('Email debe tener formato válido')
        return v


class SupplierCreate(SupplierBase):
    pass


class SupplierOut(SupplierBase):
    id: UUID
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SupplierList(BaseModel):
    items: List[SupplierOut]
    total: int
    limit: int
    offset: int


# ===== PURCHASE ORDER SCHEMAS =====

class POLineCreate(BaseModel):
    product_id: UUID = Field(..., description="ID del producto")
    qty_ordered: int = Field(..., gt=0, description="Cantidad a ordenar")
    unit_cost: Decimal = Field(..., ge=0, decimal_places=RATE_PLACES, description="Costo unitario")
    tax_percent: Decimal = Field(Decimal("0"), ge=0, decimal_places=PERCENT_PLACES, description="Porcentaje de impuesto")


class POLineOut(BaseModel):
    id: UUID
    line_no: int
    product_id: UUID
    qty_ordered: int
    qty_received: int
    qty_remaining: int
    unit_cost: Money
    tax_percent: Decimal

    class Config:
        from_attributes = True


class PurchaseOrderCreate(BaseModel):
    supplier_id: UUID = Field(..., description="ID del proveedor")
    expected_date: Optional[date] = Field(None, description="Fecha esperada de entrega")
    notes: Optional[str] = None
    lines: List[POLineCreate] = Field(..., min_length=1, description="Líneas de la orden")


class PurchaseOrderCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500, description="Motivo de anulación")


class PurchaseOrderOut(BaseModel):
    id: UUID
    po_number: str
    supplier_id: UUID
    status: PurchaseOrderStatus
    ordered_at: datetime
    expected_date: Optional[date] = None
    confirmed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    subtotal: Money
    tax_total: Money
    total_amount: Money
    lines: List[POLineOut]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PurchaseOrderList(BaseModel):
    items: List[PurchaseOrderOut]
    total: int
    limit: int
    offset: int


# ===== GOODS RECEIPT SCHEMAS =====

class GRNLineCreate(BaseModel):
    product_id: UUID = Field(..., description="ID del producto")
    received_qty: int = Field(..., gt=0, description="Cantidad recibida")
    unit_cost: Optional[Decimal] = Field(
        None, ge=0, decimal_places=RATE_PLACES,
        description="Costo unitario; si se omite se toma de la línea de la orden"
    )
    batch_no: Optional[str] = Field(None, max_length=100, description="Número de lote")
    expiry: Optional[date] = Field(None, description="Fecha de vencimiento del lote")


class GoodsReceiptCreate(BaseModel):
    purchase_order_id: Optional[UUID] = Field(None, description="Orden de compra (opcional)")
    supplier_id: Optional[UUID] = Field(None, description="Proveedor; se toma de la orden si se omite")
    notes: Optional[str] = None
    lines: List[GRNLineCreate] = Field(..., min_length=1)


class GRNLineOut(BaseModel):
    id: UUID
    line_no: int
    product_id: UUID
    received_qty: int
    unit_cost: Money
    batch_no: Optional[str] = None
    expiry: Optional[date] = None

    class Config:
        from_attributes = True


class GoodsReceiptOut(BaseModel):
    id: UUID
    grn_number: str
    purchase_order_id: Optional[UUID] = None
    supplier_id: UUID
    received_at: datetime
    notes: Optional[str] = None
    lines: List[GRNLineOut]
    created_at: datetime

    class Config:
        from_attributes = True


class GoodsReceiptList(BaseModel):
    items: List[GoodsReceiptOut]
    total: int
    limit: int
    offset: int


# ===== BILL SCHEMAS =====

class BillLineCreate(BaseModel):
    product_id: UUID = Field(..., description="ID del producto")
    quantity: int = Field(..., gt=0, description="Cantidad facturada")
    rate: Decimal = Field(..., ge=0, decimal_places=RATE_PLACES, description="Precio unitario")
    tax_percent: Decimal = Field(Decimal("0"), ge=0, decimal_places=PERCENT_PLACES, description="Porcentaje de impuesto")


class BillLineOut(BaseModel):
    id: UUID
    line_no: int
    product_id: UUID
    quantity: int
    rate: Money
    tax_percent: Decimal

    class Config:
        from_attributes = True


class PurchaseBillCreate(BaseModel):
    supplier_id: UUID = Field(..., description="ID del proveedor")
    grn_id: Optional[UUID] = Field(None, description="Recepción asociada (opcional)")
    lines: List[BillLineCreate] = Field(..., min_length=1)
    paid_amount: Decimal = Field(..., ge=0, decimal_places=RATE_PLACES, description="Monto pagado al registrar la factura")
    discount: Decimal = Field(Decimal("0"), ge=0, decimal_places=RATE_PLACES, description="Descuento global sobre el subtotal")
    payment_type: PaymentType = Field(PaymentType.CREDIT, description="cash, bank o credit")
    receive_goods: bool = Field(
        False,
        description="Registrar una recepción directa con las líneas de la factura"
    )
    notes: Optional[str] = None


class PurchaseBillUpdate(BaseModel):
    lines: Optional[List[BillLineCreate]] = Field(None, min_length=1)
    discount: Optional[Decimal] = Field(None, ge=0, decimal_places=RATE_PLACES)
    notes: Optional[str] = None


class BillPaymentCreate(BaseModel):
    amount: Decimal = Field(..., decimal_places=RATE_PLACES, description="Monto del abono")
    method: PaymentMethod = Field(PaymentMethod.CASH, description="cash o bank")
    reference: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None


class BillPaymentOut(BaseModel):
    id: UUID
    bill_id: UUID
    amount: Money
    method: PaymentMethod
    reference: Optional[str] = None
    notes: Optional[str] = None
    paid_at: datetime

    class Config:
        from_attributes = True


class PurchaseBillOut(BaseModel):
    id: UUID
    bill_no: str
    supplier_id: UUID
    grn_id: Optional[UUID] = None
    status: BillStatus
    payment_type: PaymentType
    issued_at: datetime
    notes: Optional[str] = None
    subtotal: Money
    discount: Money
    tax_total: Money
    total_amount: Money
    paid_amount: Money
    total_returned: Money
    due_amount: Money
    credit_balance: Money
    lines: List[BillLineOut]
    payments: List[BillPaymentOut] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PurchaseBillList(BaseModel):
    items: List[PurchaseBillOut]
    total: int
    limit: int
    offset: int


# ===== RETURN SCHEMAS =====

class ReturnLineCreate(BaseModel):
    product_id: UUID = Field(..., description="ID del producto")
    qty: int = Field(..., gt=0, description="Cantidad devuelta")
    rate: Optional[Decimal] = Field(
        None, ge=0, decimal_places=RATE_PLACES,
        description="Precio unitario; con factura o recepción se toma de su línea"
    )
    tax_percent: Optional[Decimal] = Field(
        None, ge=0, decimal_places=PERCENT_PLACES,
        description="Porcentaje de impuesto; con factura se toma de su línea"
    )


class PurchaseReturnCreate(BaseModel):
    supplier_id: UUID = Field(..., description="ID del proveedor")
    bill_id: Optional[UUID] = Field(None, description="Factura asociada (opcional)")
    grn_id: Optional[UUID] = Field(None, description="Recepción asociada (opcional)")
    reason: Optional[str] = None
    lines: List[ReturnLineCreate] = Field(..., min_length=1)


class ReturnLineOut(BaseModel):
    id: UUID
    line_no: int
    product_id: UUID
    qty: int
    rate: Money
    tax_percent: Decimal
    consumed_batches: Optional[List[Dict[str, Any]]] = None

    class Config:
        from_attributes = True


class PurchaseReturnOut(BaseModel):
    id: UUID
    return_no: str
    supplier_id: UUID
    bill_id: Optional[UUID] = None
    grn_id: Optional[UUID] = None
    returned_at: datetime
    reason: Optional[str] = None
    subtotal: Money
    discount: Money
    tax_total: Money
    total_amount: Money
    lines: List[ReturnLineOut]
    created_at: datetime

    class Config:
        from_attributes = True


class PurchaseReturnList(BaseModel):
    items: List[PurchaseReturnOut]
    total: int
    limit: int
    offset: int
