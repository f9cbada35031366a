"""
Tests HTTP para el módulo de compras

Recorren los endpoints de punta a punta y verifican los códigos de estado y
el cuerpo de error {"detail": {"error": <tipo>, ...}}.
"""

import pytest
from uuid import uuid4


# ===== FIXTURES =====

@pytest.fixture
def api_supplier(client):
    response = client.post("/suppliers", json={"name": "Ferretería Central", "document": "901000111"})
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def api_product(client):
    def _create(sku, stock=0, cost="0"):
        response = client.post("/products", json={
            "name": f"Producto {sku}",
            "sku": sku,
            "cost_price": cost,
            "opening_stock": stock,
        })
        assert response.status_code == 201
        return response.json()
    return _create


def error_of(response):
    return response.json()["detail"]


# ===== TESTS DE PROVEEDORES Y PRODUCTOS =====

class TestCatalogEndpoints:
    """Alta y consulta de proveedores y productos"""

    def test_duplicate_supplier_document(self, client, api_supplier):
        response = client.post("/suppliers", json={"name": "Otro", "document": "901000111"})
        assert response.status_code == 422
        assert error_of(response)["error"] == "validation_error"

    def test_list_suppliers(self, client, api_supplier):
        response = client.get("/suppliers", params={"search": "Ferre"})
        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_product_money_is_presented_rounded(self, client, api_product):
        product = api_product("P-1", stock=3, cost="2.345")
        assert product["stock"] == 3
        assert product["cost_price"] == "2.35"

    def test_unknown_bill_is_not_found(self, client):
        response = client.get(f"/purchases/{uuid4()}")
        assert response.status_code == 404
        assert error_of(response)["error"] == "not_found"

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# ===== TESTS DE ÓRDENES Y RECEPCIONES =====

class TestPurchaseOrderEndpoints:
    """Ciclo orden → confirmación → recepciones"""

    def _create_po(self, client, supplier, product, qty=10, cost="5"):
        response = client.post("/purchase-orders", json={
            "supplier_id": supplier["id"],
            "lines": [{"product_id": product["id"], "qty_ordered": qty, "unit_cost": cost}],
        })
        assert response.status_code == 201
        return response.json()

    def test_create_and_confirm(self, client, api_supplier, api_product):
        po = self._create_po(client, api_supplier, api_product("P-1"))
        assert po["status"] == "draft"
        assert po["total_amount"] == "50.00"
        assert po["lines"][0]["qty_remaining"] == 10

        response = client.post(f"/purchase-orders/{po['id']}/confirm")
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

        response = client.post(f"/purchase-orders/{po['id']}/confirm")
        assert response.status_code == 409
        assert error_of(response)["error"] == "invalid_transition"

    def test_empty_lines_is_validation_error(self, client, api_supplier):
        response = client.post("/purchase-orders", json={"supplier_id": api_supplier["id"], "lines": []})
        assert response.status_code == 422
        assert error_of(response)["error"] == "validation_error"

    def test_partial_receipt_and_over_receipt(self, client, api_supplier, api_product):
        product = api_product("P-1")
        po = self._create_po(client, api_supplier, product)
        client.post(f"/purchase-orders/{po['id']}/confirm")

        response = client.post("/grn", json={
            "purchase_order_id": po["id"],
            "lines": [{"product_id": product["id"], "received_qty": 6}],
        })
        assert response.status_code == 201
        assert response.json()["lines"][0]["unit_cost"] == "5.00"

        po = client.get(f"/purchase-orders/{po['id']}").json()
        assert po["status"] == "partially_received"
        assert po["lines"][0]["qty_remaining"] == 4

        response = client.post("/grn", json={
            "purchase_order_id": po["id"],
            "lines": [{"product_id": product["id"], "received_qty": 5}],
        })
        assert response.status_code == 422
        detail = error_of(response)
        assert detail["error"] == "over_receipt"
        assert detail["requested"] == 5
        assert detail["remaining"] == 4

        stock = client.get(f"/stock/product/{product['id']}").json()
        assert stock["stock"] == 6
        assert stock["valuation"] == "30.00"

    def test_complete_po_rejects_receipts(self, client, api_supplier, api_product):
        product = api_product("P-1")
        po = self._create_po(client, api_supplier, product, qty=2)
        client.post("/grn", json={
            "purchase_order_id": po["id"],
            "lines": [{"product_id": product["id"], "received_qty": 2}],
        })

        response = client.post("/grn", json={
            "purchase_order_id": po["id"],
            "lines": [{"product_id": product["id"], "received_qty": 1}],
        })
        assert response.status_code == 422
        assert error_of(response)["error"] == "already_complete"

    def test_cancel_with_reason(self, client, api_supplier, api_product):
        po = self._create_po(client, api_supplier, api_product("P-1"))
        response = client.post(f"/purchase-orders/{po['id']}/cancel", json={"reason": "Precio cambió"})
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert "Precio cambió" in response.json()["notes"]

    def test_idempotent_receipt(self, client, api_supplier, api_product):
        product = api_product("P-1")
        po = self._create_po(client, api_supplier, product)
        body = {"purchase_order_id": po["id"], "lines": [{"product_id": product["id"], "received_qty": 3}]}
        headers = {"Idempotency-Key": "grn-req-1"}

        first = client.post("/grn", json=body, headers=headers)
        second = client.post("/grn", json=body, headers=headers)
        assert first.status_code == second.status_code == 201
        assert first.json()["id"] == second.json()["id"]
        assert client.get(f"/products/{product['id']}").json()["stock"] == 3


# ===== TESTS DE FACTURAS Y DEVOLUCIONES =====

class TestBillEndpoints:
    """Facturas, abonos y devoluciones por HTTP"""

    def _create_bill(self, client, supplier, product, qty=10, rate="100", paid="0", **extra):
        body = {
            "supplier_id": supplier["id"],
            "lines": [{"product_id": product["id"], "quantity": qty, "rate": rate}],
            "paid_amount": paid,
        }
        body.update(extra)
        response = client.post("/purchases", json=body)
        assert response.status_code == 201
        return response.json()

    def test_paid_amount_is_required(self, client, api_supplier, api_product):
        product = api_product("P-1")
        response = client.post("/purchases", json={
            "supplier_id": api_supplier["id"],
            "lines": [{"product_id": product["id"], "quantity": 1, "rate": "10"}],
        })
        assert response.status_code == 422
        assert error_of(response)["error"] == "validation_error"

    def test_payment_flow(self, client, api_supplier, api_product):
        bill = self._create_bill(client, api_supplier, api_product("P-1"))
        assert bill["status"] == "open"
        assert bill["due_amount"] == "1000.00"

        response = client.post(f"/purchases/{bill['id']}/payments", json={"amount": "400"})
        assert response.status_code == 201
        assert response.json()["paid_amount"] == "400.00"
        assert response.json()["due_amount"] == "600.00"
        assert response.json()["status"] == "partial"

        response = client.post(f"/purchases/{bill['id']}/payments", json={"amount": "700"})
        assert response.status_code == 422
        detail = error_of(response)
        assert detail["error"] == "over_payment"
        assert detail["requested"] == 700
        assert detail["allowed"] == 600

        payments = client.get(f"/purchases/{bill['id']}/payments").json()
        assert len(payments) == 1
        assert payments[0]["amount"] == "400.00"

    def test_payment_idempotency(self, client, api_supplier, api_product):
        bill = self._create_bill(client, api_supplier, api_product("P-1"))
        headers = {"Idempotency-Key": "pay-req-1"}
        client.post(f"/purchases/{bill['id']}/payments", json={"amount": "100"}, headers=headers)
        response = client.post(f"/purchases/{bill['id']}/payments", json={"amount": "100"}, headers=headers)

        assert response.status_code == 201
        assert response.json()["paid_amount"] == "100.00"

    def test_edit_after_payment_is_conflict(self, client, api_supplier, api_product):
        bill = self._create_bill(client, api_supplier, api_product("P-1"), paid="10")
        response = client.patch(f"/purchases/{bill['id']}", json={"discount": "5"})
        assert response.status_code == 409
        assert error_of(response)["error"] == "invalid_transition"

    def test_return_creates_supplier_credit(self, client, api_supplier, api_product):
        product = api_product("P-1", stock=10, cost="100")
        bill = self._create_bill(client, api_supplier, product, paid="1000")

        response = client.post("/purchase-returns", json={
            "supplier_id": api_supplier["id"],
            "bill_id": bill["id"],
            "reason": "Mercancía averiada",
            "lines": [{"product_id": product["id"], "qty": 2, "rate": "100"}],
        })
        assert response.status_code == 201
        assert response.json()["total_amount"] == "200.00"
        assert response.json()["lines"][0]["consumed_batches"][0]["batch_no"] == "OPENING"

        bill = client.get(f"/purchases/{bill['id']}").json()
        assert bill["due_amount"] == "-200.00"
        assert bill["credit_balance"] == "200.00"
        assert bill["paid_amount"] == "1000.00"

    def test_return_without_stock(self, client, api_supplier, api_product):
        product = api_product("P-1", stock=5)
        response = client.post("/purchase-returns", json={
            "supplier_id": api_supplier["id"],
            "lines": [{"product_id": product["id"], "qty": 6, "rate": "1"}],
        })
        assert response.status_code == 422
        detail = error_of(response)
        assert detail["error"] == "insufficient_stock"
        assert detail["available"] == 5
        assert client.get(f"/products/{product['id']}").json()["stock"] == 5

    def test_bill_is_posted_to_journal(self, client, api_supplier, api_product):
        bill = self._create_bill(client, api_supplier, api_product("P-1"), qty=2, rate="50", paid="0")
        response = client.get("/accounting/journal-entries", params={"ref_type": "purchase_bill", "ref_id": bill["id"]})
        assert response.status_code == 200
        entries = response.json()["items"]
        assert len(entries) == 1
        lines = entries[0]["lines"]
        assert sum(float(line["debit"]) for line in lines) == sum(float(line["credit"]) for line in lines) == 100.0
