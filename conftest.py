"""
Shared pytest fixtures.

Every test gets a fresh in-memory SQLite database; the FastAPI dependency
get_db is overridden to use it.
"""
import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database.database import Base, get_db
from app.main import app
from app.modules.products.schemas import ProductCreate
from app.modules.products.service import create_product
from app.modules.purchases.schemas import SupplierCreate
from app.modules.purchases.service import SupplierService


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def supplier(db):
    return SupplierService(db).create_supplier(SupplierCreate(name="Distribuidora Andina", document="900123456"))


@pytest.fixture
def other_supplier(db):
    return SupplierService(db).create_supplier(SupplierCreate(name="Importadora del Sur", document="800555111"))


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(stock: int = 0, cost_price: str = "0", name: str = None):
        counter["n"] += 1
        n = counter["n"]
        return create_product(db, ProductCreate(
            name=name or f"Producto {n}",
            sku=f"SKU-{n:04d}",
            cost_price=Decimal(cost_price),
            opening_stock=stock,
        ))

    return _make
