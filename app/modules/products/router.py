from fastapi import APIRouter, status, Depends, Query
from uuid import UUID
from typing import Optional
from sqlalchemy.orm import Session
from app.dependencies.dbDependecies import get_db
from app.modules.products import service
from app.modules.products.schemas import ProductCreate, ProductOut, ProductList

product_router = APIRouter(prefix="/products", tags=["Products"])


@product_router.post("", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(data: ProductCreate, db: Session = Depends(get_db)):
    """Create a catalog product with optional opening stock."""
    return service.create_product(db, data)


@product_router.get("", response_model=ProductList)
def list_products(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    name: Optional[str] = Query(None, description="Filter by name"),
    db: Session = Depends(get_db)
):
    return service.get_products(db, limit=limit, offset=offset, name=name)


@product_router.get("/{product_id}", response_model=ProductOut)
def get_product(product_id: UUID, db: Session = Depends(get_db)):
    return service.get_product_by_id(db, product_id)
