"""
Orquestador del ciclo de compras

Cada operación es una unidad de trabajo: los servicios hacen flush sobre una
misma sesión y aquí se hace un único commit, o rollback de todo.

Reintentos: si la unidad de trabajo pierde una carrera (StaleDataError por
version_id, violación de unicidad concurrente o un error de serialización /
deadlock de la base de datos) se repite desde cero con estado fresco, hasta
settings.CONFLICT_MAX_RETRIES veces; luego se responde Conflict (409).

Idempotencia: las operaciones de creación y los abonos aceptan una clave;
si ya existe un documento con esa clave se devuelve sin reaplicar efectos.
El documento guarda la huella (sha256) del payload original: reenviar la
misma clave con otro contenido es un ValidationError.
"""
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, TypeVar
from uuid import UUID
import hashlib
import json
import logging

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError, OperationalError, DBAPIError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.common.exceptions import Conflict, ValidationError
from app.core.config import settings
from app.modules.accounting.service import PostingService
from app.modules.purchases.models import (
    PurchaseOrder, GoodsReceipt, PurchaseBill, BillPayment, PurchaseReturn
)
from app.modules.purchases.schemas import (
    PurchaseOrderCreate, GoodsReceiptCreate, GRNLineCreate,
    PurchaseBillCreate, PurchaseBillUpdate, BillPaymentCreate, PurchaseReturnCreate
)
from app.modules.purchases.service import (
    PurchaseOrderService, GoodsReceiptService, BillService, PurchaseReturnService
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE: serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = {"40001", "40P01", "55P03"}


def is_retryable(exc: Exception) -> bool:
    """Errores que indican una carrera perdida, no un error del cliente."""
    if isinstance(exc, (StaleDataError, IntegrityError)):
        return True
    if isinstance(exc, OperationalError):
        sqlstate = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if sqlstate in RETRYABLE_SQLSTATES:
            return True
        # SQLite reports lock contention as OperationalError without SQLSTATE
        return "locked" in str(exc.orig).lower()
    return False


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        # 100 y 100.00 son el mismo monto
        return str(value.normalize())
    if isinstance(value, (UUID, date)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def request_fingerprint(payload, **scope) -> str:
    """sha256 del payload en JSON canónico (claves ordenadas, sin espacios)."""
    canonical = json.dumps(
        {"payload": payload.model_dump(), **scope},
        sort_keys=True,
        separators=(",", ":"),
        default=_json_default,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class PurchaseLifecycle:
    """Punto de entrada único para mutar documentos de compra."""

    def __init__(self, db: Session, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = settings.CONFLICT_MAX_RETRIES if max_retries is None else max_retries

    # ===== UNIDAD DE TRABAJO =====

    def _run(
        self,
        operation: str,
        work: Callable[[], T],
        replay: Optional[Callable[[], Optional[T]]] = None
    ) -> T:
        attempt = 0
        while True:
            try:
                if replay is not None:
                    existing = replay()
                    if existing is not None:
                        logger.info(f"{operation}: idempotency key replayed, returning existing document")
                        return existing
                result = work()
                self.db.commit()
                return result
            except HTTPException:
                self.db.rollback()
                raise
            except DBAPIError as e:
                self.db.rollback()
                if not is_retryable(e):
                    logger.exception(f"{operation} failed")
                    raise HTTPException(
                        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                        detail=f"Error en {operation}: {str(e)}"
                    )
                attempt = self._register_conflict(operation, attempt, e)
            except StaleDataError as e:
                self.db.rollback()
                attempt = self._register_conflict(operation, attempt, e)
            except Exception as e:
                self.db.rollback()
                logger.exception(f"{operation} failed")
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail=f"Error en {operation}: {str(e)}"
                )

    def _register_conflict(self, operation: str, attempt: int, exc: Exception) -> int:
        attempt += 1
        if attempt > self.max_retries:
            logger.warning(f"{operation}: giving up after {attempt} attempts ({type(exc).__name__})")
            raise Conflict(
                f"{operation} lost a concurrent update; retry with fresh state",
                operation=operation, attempts=attempt
            )
        logger.info(f"{operation}: concurrent update detected ({type(exc).__name__}), retry {attempt}/{self.max_retries}")
        return attempt

    @staticmethod
    def _check_fingerprint(document, fingerprint: Optional[str]) -> None:
        if document.request_hash and fingerprint and document.request_hash != fingerprint:
            raise ValidationError(
                "Idempotency key already used with a different request",
                field="Idempotency-Key", idempotency_key=document.idempotency_key
            )

    def _by_key(self, model, idempotency_key: Optional[str], fingerprint: Optional[str] = None):
        if not idempotency_key:
            return None

        def replay():
            document = self.db.query(model).filter(model.idempotency_key == idempotency_key).first()
            if document is not None:
                self._check_fingerprint(document, fingerprint)
            return document
        return replay

    # ===== ÓRDENES DE COMPRA =====

    def create_po(self, po_data: PurchaseOrderCreate, idempotency_key: Optional[str] = None) -> PurchaseOrder:
        fingerprint = request_fingerprint(po_data) if idempotency_key else None
        return self._run(
            "create_po",
            lambda: PurchaseOrderService(self.db).create_purchase_order(po_data, idempotency_key, fingerprint),
            self._by_key(PurchaseOrder, idempotency_key, fingerprint),
        )

    def confirm_po(self, po_id: UUID) -> PurchaseOrder:
        def work():
            service = PurchaseOrderService(self.db)
            return service.confirm(service.lock(po_id))
        return self._run("confirm_po", work)

    def cancel_po(self, po_id: UUID, reason: Optional[str] = None) -> PurchaseOrder:
        def work():
            service = PurchaseOrderService(self.db)
            return service.cancel(service.lock(po_id), reason)
        return self._run("cancel_po", work)

    # ===== RECEPCIONES =====

    def receive_grn(self, grn_data: GoodsReceiptCreate, idempotency_key: Optional[str] = None) -> GoodsReceipt:
        fingerprint = request_fingerprint(grn_data) if idempotency_key else None
        return self._run(
            "receive_grn",
            lambda: GoodsReceiptService(self.db).receive(grn_data, idempotency_key, fingerprint),
            self._by_key(GoodsReceipt, idempotency_key, fingerprint),
        )

    # ===== FACTURAS =====

    def create_bill(self, bill_data: PurchaseBillCreate, idempotency_key: Optional[str] = None) -> PurchaseBill:
        if bill_data.receive_goods and bill_data.grn_id:
            raise ValidationError(
                "receive_goods cannot be combined with an existing grn_id",
                field="receive_goods"
            )
        fingerprint = request_fingerprint(bill_data) if idempotency_key else None

        def work():
            grn_id = None
            if bill_data.receive_goods:
                grn = GoodsReceiptService(self.db).receive(GoodsReceiptCreate(
                    supplier_id=bill_data.supplier_id,
                    notes="Recepción directa desde factura",
                    lines=[
                        GRNLineCreate(product_id=line.product_id, received_qty=line.quantity, unit_cost=line.rate)
                        for line in bill_data.lines
                    ],
                ))
                grn_id = grn.id
            bill = BillService(self.db).create_bill(
                bill_data, grn_id=grn_id, idempotency_key=idempotency_key, request_hash=fingerprint
            )
            posting = PostingService(self.db)
            posting.post_bill(bill)
            for payment in bill.payments:
                posting.post_payment(bill, payment)
            return bill

        return self._run("create_bill", work, self._by_key(PurchaseBill, idempotency_key, fingerprint))

    def record_payment(
        self,
        bill_id: UUID,
        payment_data: BillPaymentCreate,
        idempotency_key: Optional[str] = None
    ) -> PurchaseBill:
        fingerprint = request_fingerprint(payment_data, bill_id=bill_id) if idempotency_key else None

        def work():
            service = BillService(self.db)
            bill = service.lock(bill_id)
            payment = service.record_payment(bill, payment_data, idempotency_key, fingerprint)
            PostingService(self.db).post_payment(bill, payment)
            return bill

        replay = None
        if idempotency_key:
            def replay():
                payment = self.db.query(BillPayment).filter(BillPayment.idempotency_key == idempotency_key).first()
                if payment is None:
                    return None
                if payment.bill_id != bill_id:
                    raise ValidationError(
                        "Idempotency key already used for another bill",
                        field="Idempotency-Key", bill_id=payment.bill_id
                    )
                self._check_fingerprint(payment, fingerprint)
                return payment.bill

        return self._run("record_payment", work, replay)

    def update_bill(self, bill_id: UUID, bill_update: PurchaseBillUpdate) -> PurchaseBill:
        def work():
            service = BillService(self.db)
            bill = service.lock(bill_id)
            previous = service.update_lines(bill, bill_update)
            PostingService(self.db).post_bill_adjustment(bill, previous)
            return bill
        return self._run("update_bill", work)

    # ===== DEVOLUCIONES =====

    def create_return(self, return_data: PurchaseReturnCreate, idempotency_key: Optional[str] = None) -> PurchaseReturn:
        fingerprint = request_fingerprint(return_data) if idempotency_key else None

        def work():
            purchase_return = PurchaseReturnService(self.db).create_return(return_data, idempotency_key, fingerprint)
            PostingService(self.db).post_return(purchase_return)
            return purchase_return

        return self._run("create_return", work, self._by_key(PurchaseReturn, idempotency_key, fingerprint))
