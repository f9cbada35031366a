"""
Módulo de Compras - ciclo de vida y conciliación

Cadena de documentos: PurchaseOrder → GoodsReceipt (GRN) → PurchaseBill → PurchaseReturn

ENTIDADES PRINCIPALES:
- Suppliers: Proveedores (solo lectura para el motor)
- PurchaseOrders: Órdenes con cantidades ordenadas / recibidas
- GoodsReceipts: Recepciones inmutables, única entrada de stock
- PurchaseBills: Facturas con subtotal, descuento, impuestos y saldos
- BillPayments: Abonos, nunca por encima del saldo
- PurchaseReturns: Devoluciones inmutables, salida de stock FIFO

INTEGRACIÓN CON INVENTARIO:
- GRN → incrementa stock + lote + movimiento IN + costo promedio
- Devolución → descuenta stock por lotes FIFO + movimiento OUT
- Órdenes y facturas no tocan el stock

INTEGRACIÓN CONTABLE:
- Factura, abono y devolución generan un comprobante balanceado

ESTADOS DE ÓRDENES:
- draft: Borrador
- confirmed: Confirmada con el proveedor
- partially_received: Recepción parcial
- complete: Recibida por completo (terminal)
- cancelled: Anulada (terminal)

ESTADOS DE FACTURAS (derivados):
- open: Sin abonos
- partial: Con abonos o devoluciones y saldo pendiente
- paid: Saldo cero o a favor (credit_balance)

FLUJO TÍPICO:
1. Crear PurchaseOrder (draft) → confirmar
2. Registrar GRN contra la orden → stock + avance de estado
3. Crear PurchaseBill desde el GRN → registrar abonos
4. Crear PurchaseReturn si hay devoluciones → stock y saldo
"""

from .models import (
    Supplier, PurchaseOrder, POLine, GoodsReceipt, GRNLine,
    PurchaseBill, BillLine, BillPayment, PurchaseReturn, ReturnLine,
    PurchaseOrderStatus, BillStatus, PaymentType, PaymentMethod
)

__all__ = [
    "Supplier", "PurchaseOrder", "POLine", "GoodsReceipt", "GRNLine",
    "PurchaseBill", "BillLine", "BillPayment", "PurchaseReturn", "ReturnLine",
    "PurchaseOrderStatus", "BillStatus", "PaymentType", "PaymentMethod",
]
