from pydantic import BaseModel, Field
from uuid import UUID
from typing import Optional, List
from datetime import datetime
from decimal import Decimal

from app.common.schemas import Money
from app.modules.purchases.ledger import RATE_PLACES


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    sku: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=255)
    cost_price: Decimal = Field(Decimal("0"), ge=0, decimal_places=RATE_PLACES, description="Costo inicial")
    opening_stock: int = Field(0, ge=0, description="Stock inicial")


class ProductOut(BaseModel):
    id: UUID
    name: str
    sku: str
    description: Optional[str] = None
    is_active: bool
    stock: int
    cost_price: Money
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ProductList(BaseModel):
    items: List[ProductOut]
    total: int
    limit: int
    offset: int
