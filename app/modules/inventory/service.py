from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.common.exceptions import InsufficientStock, NotFound, ValidationError
from app.modules.products.models import Product, StockBatch, InventoryMovement
from app.modules.purchases.ledger import batch_valuation, to_decimal, weighted_average_cost
from app.modules.inventory.schemas import (
    InventoryMovementList, MovementType, ProductStockSummary, StockBatchOut
)

logger = logging.getLogger(__name__)


class StockAdjuster:
    """
    The only writer of on-hand stock.

    Changes are flushed, never committed: the caller's unit of work decides.
    Product rows are locked before being read so concurrent receipts and
    returns serialize on the row instead of overwriting each other.
    """

    def __init__(self, db: Session):
        self.db = db

    # ===== LOCKING =====

    def lock_product(self, product_id: UUID) -> Product:
        product = self.db.execute(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if product is None:
            raise NotFound("Product", product_id)
        return product

    def lock_products(self, product_ids: Iterable[UUID]) -> Dict[UUID, Product]:
        """Lock several products in ascending id order."""
        ordered = sorted(set(product_ids), key=str)
        products = {}
        for product_id in ordered:
            products[product_id] = self.lock_product(product_id)
        return products

    # ===== WRITES =====

    def receive(
        self,
        product_id: UUID,
        quantity: int,
        unit_cost,
        reference: str,
        batch_no: Optional[str] = None,
        expiry: Optional[date] = None,
        supplier_id: Optional[UUID] = None,
        grn_id: Optional[UUID] = None,
    ) -> StockBatch:
        """Entrada de mercancía: suma stock, crea lote y recalcula costo promedio."""
        if quantity is None or quantity <= 0:
            raise ValidationError("quantity must be greater than zero", field="quantity", product_id=product_id)
        unit_cost = to_decimal(unit_cost, "unit_cost")
        if unit_cost < 0:
            raise ValidationError("unit_cost cannot be negative", field="unit_cost", product_id=product_id)

        product = self.lock_product(product_id)

        product.cost_price = weighted_average_cost(product.stock, product.cost_price, quantity, unit_cost)
        product.stock = product.stock + quantity

        batch = StockBatch(
            product_id=product.id,
            grn_id=grn_id,
            supplier_id=supplier_id,
            batch_no=batch_no or reference,
            quantity=quantity,
            received_qty=quantity,
            unit_cost=unit_cost,
            expiry=expiry,
        )
        self.db.add(batch)
        self.db.add(InventoryMovement(
            product_id=product.id,
            quantity=quantity,
            movement_type=MovementType.IN.value,
            reference=reference,
            notes=f"Entrada lote {batch.batch_no}",
            stock_after=product.stock,
        ))
        self.db.flush()

        logger.debug(f"Stock IN {product.sku}: +{quantity} -> {product.stock} ({reference})")
        return batch

    def consume(self, product_id: UUID, quantity: int, reference: str) -> List[dict]:
        """
        Salida de mercancía por lotes FIFO.

        Returns:
            Lista de lotes consumidos: batch_id, batch_no, quantity, unit_cost
        """
        if quantity is None or quantity <= 0:
            raise ValidationError("quantity must be greater than zero", field="quantity", product_id=product_id)

        product = self.lock_product(product_id)
        if product.stock < quantity:
            raise InsufficientStock(
                f"Insufficient stock for {product.sku}: requested {quantity}, available {product.stock}",
                product_id=product.id,
                requested=quantity,
                available=product.stock,
            )

        batches = self.db.execute(
            select(StockBatch)
            .where(StockBatch.product_id == product.id, StockBatch.quantity > 0)
            .order_by(StockBatch.received_at, StockBatch.created_at)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()

        consumed = []
        remaining = quantity
        for batch in batches:
            if remaining == 0:
                break
            take = min(batch.quantity, remaining)
            batch.quantity -= take
            remaining -= take
            consumed.append({
                "batch_id": str(batch.id),
                "batch_no": batch.batch_no,
                "quantity": take,
                "unit_cost": str(batch.unit_cost),
            })
        if remaining:
            # Stock recorded before batches were tracked
            logger.warning(f"{product.sku}: {remaining} units consumed outside of any batch ({reference})")

        product.stock = product.stock - quantity
        self.db.add(InventoryMovement(
            product_id=product.id,
            quantity=-quantity,
            movement_type=MovementType.OUT.value,
            reference=reference,
            notes="Salida FIFO",
            stock_after=product.stock,
        ))
        self.db.flush()

        logger.debug(f"Stock OUT {product.sku}: -{quantity} -> {product.stock} ({reference})")
        return consumed

    # ===== READS =====

    def get_stock(self, product_id: UUID) -> int:
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFound("Product", product_id)
        return product.stock

    def get_valuation(self, product_id: UUID) -> Decimal:
        batches = self.db.execute(
            select(StockBatch.quantity, StockBatch.unit_cost)
            .where(StockBatch.product_id == product_id, StockBatch.quantity > 0)
        ).all()
        return batch_valuation((qty, Decimal(cost)) for qty, cost in batches)

    def get_product_stock_summary(self, product_id: UUID) -> ProductStockSummary:
        """Stock, costo promedio, valoración y lotes vivos de un producto."""
        product = self.db.get(Product, product_id)
        if product is None:
            raise NotFound("Product", product_id)

        live_batches = [b for b in product.batches if b.quantity > 0]
        return ProductStockSummary(
            product_id=product.id,
            product_name=product.name,
            product_sku=product.sku,
            stock=product.stock,
            cost_price=product.cost_price,
            valuation=self.get_valuation(product.id),
            batches=[StockBatchOut.model_validate(b) for b in live_batches],
        )

    def list_movements(
        self,
        product_id: Optional[UUID] = None,
        movement_type: Optional[MovementType] = None,
        reference: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> InventoryMovementList:
        query = self.db.query(InventoryMovement)
        if product_id:
            query = query.filter(InventoryMovement.product_id == product_id)
        if movement_type:
            query = query.filter(InventoryMovement.movement_type == movement_type.value)
        if reference:
            query = query.filter(InventoryMovement.reference == reference)

        total = query.count()
        movements = query.order_by(InventoryMovement.created_at.desc()).offset(offset).limit(limit).all()
        return InventoryMovementList(items=movements, total=total, limit=limit, offset=offset)
