from fastapi import APIRouter, Depends, Query
from typing import Optional
from uuid import UUID
from sqlalchemy.orm import Session

from app.dependencies.dbDependecies import get_db
from app.modules.inventory.service import StockAdjuster
from app.modules.inventory.schemas import InventoryMovementList, ProductStockSummary, MovementType

stock_router = APIRouter(prefix="/stock", tags=["Stock Management"])
movements_router = APIRouter(prefix="/movements", tags=["Inventory Movements"])


@stock_router.get("/product/{product_id}", response_model=ProductStockSummary)
def get_product_stock(product_id: UUID, db: Session = Depends(get_db)):
    """Stock on hand, weighted-average cost and live FIFO batches for a product."""
    return StockAdjuster(db).get_product_stock_summary(product_id)


@stock_router.get("/movements", response_model=InventoryMovementList)
def get_stock_movements(
    product_id: Optional[UUID] = Query(None),
    movement_type: Optional[MovementType] = Query(None),
    reference: Optional[str] = Query(None, description="Document number (GRN-..., PR-...)"),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    return StockAdjuster(db).list_movements(
        product_id=product_id, movement_type=movement_type, reference=reference,
        limit=limit, offset=offset
    )


@movements_router.get("/product/{product_id}", response_model=InventoryMovementList)
def get_product_movements(
    product_id: UUID,
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """Movement history for a single product."""
    return StockAdjuster(db).list_movements(product_id=product_id, limit=limit, offset=offset)
