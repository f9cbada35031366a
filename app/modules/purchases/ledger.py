"""
Aritmética de documentos de compra

Funciones puras para líneas, impuestos, totales y saldos de cualquier
documento con ítems (órdenes, facturas, devoluciones).

Policy: amounts are exact Decimals end to end. Intermediate sums are never
quantized; only `present()` rounds, and only output schemas call it.
Inputs are limited to RATE_PLACES / PERCENT_PLACES decimals, so every line
amount fits the STORAGE_PLACES scale of the money columns exactly. The only
values that need a quotient (a return's share of the bill discount and the
weighted average cost) are brought to that scale with `to_storage()`.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Optional, Tuple

from app.common.exceptions import ValidationError
from app.core.config import settings

ZERO = Decimal("0")
HUNDRED = Decimal("100")

# qty × rate (6) × pct (4) / 100 -> 12 decimales, igual a Numeric(28, 12)
RATE_PLACES = 6
PERCENT_PLACES = 4
STORAGE_PLACES = RATE_PLACES + PERCENT_PLACES + 2


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal
    discount: Decimal
    tax_total: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class Settlement:
    due_amount: Decimal
    credit_balance: Decimal


def to_decimal(value: Any, field: str) -> Decimal:
    """Missing numbers are an input error, never a silent zero."""
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    if isinstance(value, float):
        # str() keeps the literal the caller typed (0.1 -> "0.1")
        value = str(value)
    try:
        result = Decimal(value)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError(f"{field} is not a number", field=field, value=str(value))
    if not result.is_finite():
        raise ValidationError(f"{field} is not a finite number", field=field, value=str(value))
    return result


def line_subtotal(quantity: Any, rate: Any) -> Decimal:
    return to_decimal(quantity, "quantity") * to_decimal(rate, "rate")


def line_tax(quantity: Any, rate: Any, tax_percent: Any) -> Decimal:
    return line_subtotal(quantity, rate) * to_decimal(tax_percent, "tax_percent") / HUNDRED


def compute_totals(lines: Iterable[Tuple[Any, Any, Any]], discount: Any = ZERO) -> DocumentTotals:
    """
    Totales de un documento.

    Args:
        lines: tuplas (quantity, rate, tax_percent)
        discount: descuento global sobre el subtotal (no sobre impuestos)

    Returns:
        DocumentTotals con total_amount = subtotal - discount + tax_total
    """
    subtotal = ZERO
    tax_total = ZERO
    for quantity, rate, tax_percent in lines:
        subtotal += line_subtotal(quantity, rate)
        tax_total += line_tax(quantity, rate, tax_percent)

    discount = to_decimal(discount, "discount")
    if discount < ZERO:
        raise ValidationError("discount cannot be negative", field="discount", value=discount)
    if discount > subtotal:
        raise ValidationError(
            f"discount ({discount}) exceeds subtotal ({subtotal})",
            field="discount", requested=discount, allowed=subtotal,
        )

    return DocumentTotals(
        subtotal=subtotal,
        discount=discount,
        tax_total=tax_total,
        total_amount=subtotal - discount + tax_total,
    )


def settle(total_amount: Decimal, paid_amount: Decimal, total_returned: Decimal = ZERO) -> Settlement:
    """
    due = total - returned - paid. A negative due is reported as a credit
    balance owed by the supplier; it is never clamped to zero.
    """
    due_amount = total_amount - total_returned - paid_amount
    credit_balance = -due_amount if due_amount < ZERO else ZERO
    return Settlement(due_amount=due_amount, credit_balance=credit_balance)


def to_storage(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(Decimal(1).scaleb(-STORAGE_PLACES), rounding=ROUND_HALF_UP)


def discount_share(
    bill_subtotal: Decimal,
    bill_discount: Decimal,
    returned_subtotal: Decimal,
    returned_discount: Decimal,
    return_subtotal: Decimal,
) -> Decimal:
    """
    Parte del descuento de la factura que le toca a una devolución.

    Se calcula sobre el acumulado devuelto (returned_subtotal + return_subtotal)
    y se resta lo ya asignado, así devolver la factura completa reintegra
    exactamente su descuento.
    """
    if not bill_discount or not bill_subtotal:
        return ZERO
    cumulative = (returned_subtotal + return_subtotal) * bill_discount / bill_subtotal
    return to_storage(cumulative) - returned_discount


def weighted_average_cost(
    existing_qty: int,
    existing_cost: Optional[Decimal],
    added_qty: int,
    added_cost: Decimal,
) -> Decimal:
    """Costo promedio ponderado tras una entrada de mercancía."""
    existing_cost = existing_cost if existing_cost is not None else ZERO
    total_qty = existing_qty + added_qty
    if total_qty <= 0:
        return added_cost
    return to_storage((existing_qty * existing_cost + added_qty * added_cost) / total_qty)


def batch_valuation(batches: Iterable[Tuple[int, Decimal]]) -> Decimal:
    """Valoración de inventario = Σ(quantity × unit_cost) por lote."""
    return sum((Decimal(qty) * cost for qty, cost in batches), ZERO)


def present(amount: Optional[Decimal], places: Optional[int] = None) -> Optional[Decimal]:
    """Redondeo de presentación (ROUND_HALF_UP)."""
    if amount is None:
        return None
    places = settings.CURRENCY_DECIMALS if places is None else places
    return Decimal(amount).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)
