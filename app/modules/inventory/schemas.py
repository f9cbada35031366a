from pydantic import BaseModel
from typing import Optional, List
from uuid import UUID
from datetime import datetime, date
from enum import Enum

from app.common.schemas import Money


class MovementType(str, Enum):
    IN = "IN"
    OUT = "OUT"


class StockBatchOut(BaseModel):
    id: UUID
    batch_no: str
    quantity: int
    received_qty: int
    unit_cost: Money
    expiry: Optional[date] = None
    received_at: datetime
    grn_id: Optional[UUID] = None
    supplier_id: Optional[UUID] = None

    class Config:
        from_attributes = True


class ProductStockSummary(BaseModel):
    product_id: UUID
    product_name: str
    product_sku: str
    stock: int
    cost_price: Money
    valuation: Money
    batches: List[StockBatchOut] = []


class InventoryMovementOut(BaseModel):
    id: UUID
    product_id: UUID
    quantity: int
    movement_type: MovementType
    reference: Optional[str] = None
    notes: Optional[str] = None
    stock_after: int
    created_at: datetime

    class Config:
        from_attributes = True


class InventoryMovementList(BaseModel):
    items: List[InventoryMovementOut]
    total: int
    limit: int
    offset: int
