"""
Tests para el módulo de inventario (StockAdjuster)

Entradas con costo promedio ponderado, salidas FIFO por lote,
movimientos y valoración.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from app.common.exceptions import InsufficientStock, NotFound, ValidationError
from app.modules.inventory.schemas import MovementType
from app.modules.inventory.service import StockAdjuster
from app.modules.products.models import StockBatch


# ===== TESTS DE ENTRADAS =====

class TestReceive:
    """Entradas de mercancía"""

    def test_opening_stock_creates_batch_and_movement(self, db, make_product):
        product = make_product(stock=4, cost_price="2.5")
        batches = db.query(StockBatch).filter(StockBatch.product_id == product.id).all()

        assert len(batches) == 1
        assert batches[0].batch_no == "OPENING"
        assert batches[0].quantity == 4
        movements = StockAdjuster(db).list_movements(product_id=product.id)
        assert movements.total == 1
        assert movements.items[0].movement_type == MovementType.IN
        assert movements.items[0].stock_after == 4

    def test_weighted_average_cost(self, db, make_product):
        product = make_product(stock=10, cost_price="5")
        adjuster = StockAdjuster(db)
        batch = adjuster.receive(product.id, 10, Decimal("7"), reference="GRN-TEST")

        assert batch.batch_no == "GRN-TEST"
        assert product.stock == 20
        assert product.cost_price == Decimal("6")

    def test_explicit_batch_and_expiry(self, db, make_product):
        product = make_product()
        batch = StockAdjuster(db).receive(
            product.id, 3, Decimal("1"), reference="GRN-X", batch_no="L-2024-01"
        )
        assert batch.batch_no == "L-2024-01"
        assert batch.received_qty == 3

    def test_rejects_non_positive_quantity(self, db, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            StockAdjuster(db).receive(product.id, 0, Decimal("1"), reference="X")

    def test_rejects_negative_cost(self, db, make_product):
        product = make_product()
        with pytest.raises(ValidationError):
            StockAdjuster(db).receive(product.id, 1, Decimal("-1"), reference="X")

    def test_unknown_product(self, db):
        with pytest.raises(NotFound):
            StockAdjuster(db).receive(uuid4(), 1, Decimal("1"), reference="X")


# ===== TESTS DE SALIDAS =====

class TestConsume:
    """Salidas FIFO"""

    def test_consumes_oldest_batch_first(self, db, make_product):
        product = make_product(stock=10, cost_price="5")
        adjuster = StockAdjuster(db)
        adjuster.receive(product.id, 10, Decimal("7"), reference="GRN-2")

        consumed = adjuster.consume(product.id, 15, reference="PR-TEST")

        assert [c["batch_no"] for c in consumed] == ["OPENING", "GRN-2"]
        assert [c["quantity"] for c in consumed] == [10, 5]
        assert Decimal(consumed[1]["unit_cost"]) == Decimal("7")
        assert product.stock == 5
        assert adjuster.get_valuation(product.id) == Decimal("35")

    def test_insufficient_stock_changes_nothing(self, db, make_product):
        product = make_product(stock=5)
        adjuster = StockAdjuster(db)

        with pytest.raises(InsufficientStock) as exc:
            adjuster.consume(product.id, 6, reference="PR-TEST")
        assert exc.value.context["requested"] == 6
        assert exc.value.context["available"] == 5
        assert adjuster.get_stock(product.id) == 5
        assert adjuster.list_movements(product_id=product.id, movement_type=MovementType.OUT).total == 0

    def test_out_movement_is_recorded(self, db, make_product):
        product = make_product(stock=5)
        adjuster = StockAdjuster(db)
        adjuster.consume(product.id, 2, reference="PR-000009")

        movements = adjuster.list_movements(reference="PR-000009")
        assert movements.total == 1
        assert movements.items[0].quantity == -2
        assert movements.items[0].stock_after == 3


# ===== TESTS DE CONSULTAS =====

class TestStockQueries:
    """Resumen de stock por producto"""

    def test_summary_lists_live_batches(self, db, make_product):
        product = make_product(stock=2, cost_price="3")
        adjuster = StockAdjuster(db)
        adjuster.receive(product.id, 2, Decimal("5"), reference="GRN-2")
        adjuster.consume(product.id, 2, reference="PR-1")

        summary = adjuster.get_product_stock_summary(product.id)
        assert summary.stock == 2
        assert summary.valuation == Decimal("10")
        assert [b.batch_no for b in summary.batches] == ["GRN-2"]

    def test_stock_endpoint(self, client, make_product, db):
        product = make_product(stock=4, cost_price="1.5")
        response = client.get(f"/stock/product/{product.id}")
        assert response.status_code == 200
        assert response.json()["stock"] == 4
        assert response.json()["valuation"] == "6.00"

    def test_movements_endpoint(self, client, make_product):
        product = make_product(stock=4)
        response = client.get(f"/movements/product/{product.id}")
        assert response.status_code == 200
        assert response.json()["total"] == 1
        assert response.json()["items"][0]["movement_type"] == "IN"
