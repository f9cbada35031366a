from app.database.database import Base
from sqlalchemy import Column, Integer, String, Boolean, Date, DateTime, ForeignKey, Numeric, CheckConstraint
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4
from app.common.mixins import TimestampMixin


class Product(Base, TimestampMixin):
    __tablename__ = "products"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(100), nullable=False)
    sku = Column(String(50), nullable=False, unique=True, index=True)
    description = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # On-hand stock; only the StockAdjuster writes it after creation
    stock = Column(Integer, nullable=False, default=0)
    cost_price = Column(Numeric(28, 12), nullable=False, default=0)  # Costo promedio ponderado

    version_id = Column(Integer, nullable=False, default=1)

    # Relationships
    batches = relationship("StockBatch", back_populates="product", order_by="StockBatch.received_at")
    movements = relationship("InventoryMovement", back_populates="product")

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
    )
    __mapper_args__ = {"version_id_col": version_id}


class StockBatch(Base, TimestampMixin):
    """Lote FIFO creado por cada línea de GRN"""
    __tablename__ = "stock_batches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)
    grn_id = Column(UUID(as_uuid=True), ForeignKey("goods_receipts.id"), nullable=True, index=True)
    supplier_id = Column(UUID(as_uuid=True), ForeignKey("suppliers.id"), nullable=True)

    batch_no = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)  # Cantidad remanente
    received_qty = Column(Integer, nullable=False)
    unit_cost = Column(Numeric(28, 12), nullable=False, default=0)
    expiry = Column(Date, nullable=True)
    # Python-side default keeps sub-second ordering for FIFO consumption
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    product = relationship("Product", back_populates="batches")

    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_stock_batch_quantity_non_negative"),
    )


class InventoryMovement(Base, TimestampMixin):
    __tablename__ = "inventory_movements"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    product_id = Column(UUID(as_uuid=True), ForeignKey("products.id"), nullable=False, index=True)

    quantity = Column(Integer, nullable=False)  # Can be positive or negative
    movement_type = Column(String(20), nullable=False)  # IN, OUT
    reference = Column(String(100), nullable=True)  # GRN / return number
    notes = Column(String(255), nullable=True)
    stock_after = Column(Integer, nullable=False)

    # Relationships
    product = relationship("Product", back_populates="movements")
