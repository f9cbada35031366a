"""
Routers FastAPI para el ciclo de compras

Endpoints:
- Proveedores: alta, listado y consulta
- Órdenes de compra: creación, confirmación, anulación
- Recepciones (GRN): con o sin orden de compra
- Facturas (/purchases): creación, edición de líneas, abonos
- Devoluciones (/purchase-returns)

Las operaciones que crean documentos o registran abonos aceptan la
cabecera Idempotency-Key.
"""

from fastapi import APIRouter, Depends, status, Query, Header
from sqlalchemy.orm import Session
from typing import Annotated, List, Optional
from uuid import UUID

from app.dependencies.dbDependecies import get_db
from app.modules.purchases.orchestrator import PurchaseLifecycle
from app.modules.purchases.service import (
    SupplierService, PurchaseOrderService, GoodsReceiptService, BillService, PurchaseReturnService
)
from app.modules.purchases.models import PurchaseOrderStatus, BillStatus
from app.modules.purchases.schemas import (
    SupplierCreate, SupplierOut, SupplierList,
    PurchaseOrderCreate, PurchaseOrderCancel, PurchaseOrderOut, PurchaseOrderList,
    GoodsReceiptCreate, GoodsReceiptOut, GoodsReceiptList,
    PurchaseBillCreate, PurchaseBillUpdate, PurchaseBillOut, PurchaseBillList,
    BillPaymentCreate, BillPaymentOut,
    PurchaseReturnCreate, PurchaseReturnOut, PurchaseReturnList
)

# Router principal
purchases_router = APIRouter()

# Sub-routers
suppliers_router = APIRouter(prefix="/suppliers", tags=["Suppliers"])
purchase_orders_router = APIRouter(prefix="/purchase-orders", tags=["Purchase Orders"])
grn_router = APIRouter(prefix="/grn", tags=["Goods Receipts"])
bills_router = APIRouter(prefix="/purchases", tags=["Purchase Bills"])
returns_router = APIRouter(prefix="/purchase-returns", tags=["Purchase Returns"])

IdempotencyKey = Annotated[Optional[str], Header(alias="Idempotency-Key", max_length=100)]


# ===== SUPPLIERS ENDPOINTS =====

@suppliers_router.post("", response_model=SupplierOut, status_code=status.HTTP_201_CREATED)
def create_supplier(supplier_data: SupplierCreate, db: Session = Depends(get_db)):
    return SupplierService(db).create_supplier(supplier_data)


@suppliers_router.get("", response_model=SupplierList)
def list_suppliers(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    search: Optional[str] = Query(None, description="Buscar por nombre"),
    db: Session = Depends(get_db)
):
    return SupplierService(db).get_suppliers(limit=limit, offset=offset, search=search)


@suppliers_router.get("/{supplier_id}", response_model=SupplierOut)
def get_supplier(supplier_id: UUID, db: Session = Depends(get_db)):
    return SupplierService(db).get_supplier_by_id(supplier_id)


# ===== PURCHASE ORDERS ENDPOINTS =====

@purchase_orders_router.post("", response_model=PurchaseOrderOut, status_code=status.HTTP_201_CREATED)
def create_purchase_order(
    po_data: PurchaseOrderCreate,
    db: Session = Depends(get_db),
    idempotency_key: IdempotencyKey = None
):
    """
    Crear una nueva orden de compra

    La orden nace en draft con todo lo recibido en cero. No afecta el inventario.
    """
    return PurchaseLifecycle(db).create_po(po_data, idempotency_key)


@purchase_orders_router.get("", response_model=PurchaseOrderList)
def list_purchase_orders(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    status_filter: Optional[PurchaseOrderStatus] = Query(None, alias="status", description="Filtrar por estado"),
    supplier_id: Optional[UUID] = Query(None, description="Filtrar por proveedor"),
    db: Session = Depends(get_db)
):
    return PurchaseOrderService(db).get_purchase_orders(
        limit=limit, offset=offset, status_filter=status_filter, supplier_id=supplier_id
    )


@purchase_orders_router.get("/{po_id}", response_model=PurchaseOrderOut)
def get_purchase_order(po_id: UUID, db: Session = Depends(get_db)):
    return PurchaseOrderService(db).get_purchase_order_by_id(po_id)


@purchase_orders_router.post("/{po_id}/confirm", response_model=PurchaseOrderOut)
def confirm_purchase_order(po_id: UUID, db: Session = Depends(get_db)):
    """Confirmar orden (solo desde draft). 409 si la transición no es válida."""
    return PurchaseLifecycle(db).confirm_po(po_id)


@purchase_orders_router.post("/{po_id}/cancel", response_model=PurchaseOrderOut)
def cancel_purchase_order(
    po_id: UUID,
    cancel_data: Optional[PurchaseOrderCancel] = None,
    db: Session = Depends(get_db)
):
    """
    Anular orden de compra

    Las recepciones ya registradas se mantienen; lo pendiente queda sin efecto.
    """
    reason = cancel_data.reason if cancel_data else None
    return PurchaseLifecycle(db).cancel_po(po_id, reason)


# ===== GOODS RECEIPT ENDPOINTS =====

@grn_router.post("", response_model=GoodsReceiptOut, status_code=status.HTTP_201_CREATED)
def create_goods_receipt(
    grn_data: GoodsReceiptCreate,
    db: Session = Depends(get_db),
    idempotency_key: IdempotencyKey = None
):
    """
    Registrar recepción de mercancía

    Incrementa stock por línea y, si está ligada a una orden, avanza su estado.
    """
    return PurchaseLifecycle(db).receive_grn(grn_data, idempotency_key)


@grn_router.get("", response_model=GoodsReceiptList)
def list_goods_receipts(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    purchase_order_id: Optional[UUID] = Query(None),
    supplier_id: Optional[UUID] = Query(None),
    db: Session = Depends(get_db)
):
    return GoodsReceiptService(db).get_goods_receipts(
        limit=limit, offset=offset, purchase_order_id=purchase_order_id, supplier_id=supplier_id
    )


@grn_router.get("/{grn_id}", response_model=GoodsReceiptOut)
def get_goods_receipt(grn_id: UUID, db: Session = Depends(get_db)):
    return GoodsReceiptService(db).get_goods_receipt_by_id(grn_id)


# ===== BILLS ENDPOINTS =====

@bills_router.post("", response_model=PurchaseBillOut, status_code=status.HTTP_201_CREATED)
def create_bill(
    bill_data: PurchaseBillCreate,
    db: Session = Depends(get_db),
    idempotency_key: IdempotencyKey = None
):
    """
    Crear factura de proveedor

    Con o sin recepción previa. Con receive_goods=true se registra además una
    recepción directa con las mismas líneas.
    """
    return PurchaseLifecycle(db).create_bill(bill_data, idempotency_key)


@bills_router.get("", response_model=PurchaseBillList)
def list_bills(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    supplier_id: Optional[UUID] = Query(None, description="Filtrar por proveedor"),
    status_filter: Optional[BillStatus] = Query(None, alias="status", description="Filtrar por estado"),
    db: Session = Depends(get_db)
):
    return BillService(db).get_bills(
        limit=limit, offset=offset, supplier_id=supplier_id, status_filter=status_filter
    )


@bills_router.get("/{bill_id}", response_model=PurchaseBillOut)
def get_bill(bill_id: UUID, db: Session = Depends(get_db)):
    return BillService(db).get_bill_by_id(bill_id)


@bills_router.patch("/{bill_id}", response_model=PurchaseBillOut)
def update_bill(bill_id: UUID, bill_update: PurchaseBillUpdate, db: Session = Depends(get_db)):
    """Editar líneas o descuento. Solo antes del primer abono y de cualquier devolución."""
    return PurchaseLifecycle(db).update_bill(bill_id, bill_update)


@bills_router.post("/{bill_id}/payments", response_model=PurchaseBillOut, status_code=status.HTTP_201_CREATED)
def record_bill_payment(
    bill_id: UUID,
    payment_data: BillPaymentCreate,
    db: Session = Depends(get_db),
    idempotency_key: IdempotencyKey = None
):
    """Registrar abono. 422 OverPayment si supera el saldo pendiente."""
    return PurchaseLifecycle(db).record_payment(bill_id, payment_data, idempotency_key)


@bills_router.get("/{bill_id}/payments", response_model=List[BillPaymentOut])
def list_bill_payments(bill_id: UUID, db: Session = Depends(get_db)):
    return BillService(db).list_payments(bill_id)


# ===== RETURNS ENDPOINTS =====

@returns_router.post("", response_model=PurchaseReturnOut, status_code=status.HTTP_201_CREATED)
def create_purchase_return(
    return_data: PurchaseReturnCreate,
    db: Session = Depends(get_db),
    idempotency_key: IdempotencyKey = None
):
    """
    Registrar devolución a proveedor

    Descuenta stock (FIFO). Ligada a factura, reduce su saldo; un saldo
    negativo se expone como credit_balance.
    """
    return PurchaseLifecycle(db).create_return(return_data, idempotency_key)


@returns_router.get("", response_model=PurchaseReturnList)
def list_purchase_returns(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    supplier_id: Optional[UUID] = Query(None),
    bill_id: Optional[UUID] = Query(None),
    db: Session = Depends(get_db)
):
    return PurchaseReturnService(db).get_returns(
        limit=limit, offset=offset, supplier_id=supplier_id, bill_id=bill_id
    )


@returns_router.get("/{return_id}", response_model=PurchaseReturnOut)
def get_purchase_return(return_id: UUID, db: Session = Depends(get_db)):
    return PurchaseReturnService(db).get_return_by_id(return_id)


# Include sub-routers
purchases_router.include_router(suppliers_router)
purchases_router.include_router(purchase_orders_router)
purchases_router.include_router(grn_router)
purchases_router.include_router(bills_router)
purchases_router.include_router(returns_router)
