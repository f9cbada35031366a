"""
Tests para el catálogo de productos
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import NotFound, ValidationError
from app.modules.products.schemas import ProductCreate
from app.modules.products.service import create_product, get_products, require_products


class TestProducts:
    """Alta y búsqueda de productos"""

    def test_duplicate_sku(self, db, make_product):
        product = make_product()
        with pytest.raises(ValidationError) as exc:
            create_product(db, ProductCreate(name="Copia", sku=product.sku))
        assert exc.value.context["field"] == "sku"

    def test_opening_stock_sets_cost(self, make_product):
        product = make_product(stock=5, cost_price="12.5")
        assert product.stock == 5
        assert product.cost_price == Decimal("12.5")

    def test_search_by_name(self, db, make_product):
        make_product(name="Tornillo 1/4")
        make_product(name="Tuerca")
        result = get_products(db, name="torn")
        assert result.total == 1
        assert result.items[0].name == "Tornillo 1/4"

    def test_require_products_unknown(self, db, make_product):
        product = make_product()
        with pytest.raises(NotFound):
            require_products(db, [product.id, uuid4()])

    def test_require_products_inactive(self, db, make_product):
        product = make_product()
        product.is_active = False
        db.commit()
        with pytest.raises(ValidationError):
            require_products(db, [product.id])
