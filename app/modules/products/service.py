"""
Catálogo de productos

Read-only from the purchase engine's point of view: the engine only looks
products up. Creation exists so a catalog can be seeded; opening stock is
received as a regular FIFO batch.
"""
from typing import Iterable, Dict
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
import logging

from app.common.exceptions import NotFound, ValidationError
from app.modules.products.models import Product
from app.modules.inventory.service import StockAdjuster
from app.modules.products.schemas import ProductCreate, ProductList

logger = logging.getLogger(__name__)


def create_product(db: Session, data: ProductCreate) -> Product:
    """Crea un producto con stock inicial opcional"""
    existing = db.query(Product).filter(Product.sku == data.sku).first()
    if existing:
        raise ValidationError(f"A product with SKU '{data.sku}' already exists", field="sku")

    product = Product(
        name=data.name,
        sku=data.sku,
        description=data.description,
        cost_price=data.cost_price,
        stock=0,
    )
    try:
        db.add(product)
        db.flush()
        if data.opening_stock:
            StockAdjuster(db).receive(product.id, data.opening_stock, data.cost_price, reference="OPENING")
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValidationError(f"A product with SKU '{data.sku}' already exists", field="sku")
    db.refresh(product)
    logger.info(f"Product {product.sku} created with opening stock {product.stock}")
    return product


def get_products(db: Session, limit: int = 100, offset: int = 0, name: str = None) -> ProductList:
    query = db.query(Product)
    if name:
        query = query.filter(Product.name.ilike(f"%{name}%"))
    total = query.count()
    products = query.order_by(Product.sku).offset(offset).limit(limit).all()
    return ProductList(items=products, total=total, limit=limit, offset=offset)


def get_product_by_id(db: Session, product_id: UUID) -> Product:
    product = db.query(Product).filter(Product.id == product_id).first()
    if not product:
        raise NotFound("Product", product_id)
    return product


def require_products(db: Session, product_ids: Iterable[UUID]) -> Dict[UUID, Product]:
    """Verifica que todos los productos existan y estén activos"""
    wanted = set(product_ids)
    found = {
        p.id: p for p in db.execute(select(Product).where(Product.id.in_(wanted))).scalars()
    }
    for product_id in wanted:
        product = found.get(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        if not product.is_active:
            raise ValidationError(f"Product {product.sku} is inactive", field="product_id", product_id=product_id)
    return found
