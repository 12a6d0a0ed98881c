from datetime import date
from typing import Optional

from .credit_schedule import create_credit
from .errors import NotFound, TerminalStateViolation, ValidationError
from .logs import json_log
from .money import ZERO, q2
from .stock_reservation import reserve_stock, restock_sale
from .validation import TERMINAL_SALE_STATUS

SALE_COLUMNS = """
    v.id, v.cliente_id, c.nombre AS cliente_nombre, v.fecha, v.total, v.descuento,
    v.medio_pago, v.tipo_venta, v.estado, v.calificacion, v.created_at, v.updated_at
"""


def assert_status_transition(current: str, new: str):
    """
    `devuelta` is terminal: once returned, the only accepted target is `devuelta` itself.
    Every other state may move to any state.
    """
    if current == TERMINAL_SALE_STATUS and new != TERMINAL_SALE_STATUS:
        raise TerminalStateViolation(f"sale is {TERMINAL_SALE_STATUS}; cannot change status to {new}")


def price_lines(lines: list[dict], discount) -> tuple[list[dict], object]:
    """Compute line subtotals and the sale total (sum of subtotals minus discount)."""
    if not lines:
        raise ValidationError("sale requires at least one line")
    priced = []
    gross = ZERO
    for line in lines:
        qty = int(line.get("cantidad") or 0)
        if qty <= 0:
            raise ValidationError(f"quantity must be > 0 (product {line.get('producto_id')})")
        unit_price = q2(line.get("precio_unitario"))
        if unit_price < ZERO:
            raise ValidationError(f"unit price must be >= 0 (product {line.get('producto_id')})")
        subtotal = q2(unit_price * qty)
        gross += subtotal
        priced.append(
            {
                "producto_id": line.get("producto_id"),
                "cantidad": qty,
                "precio_unitario": unit_price,
                "subtotal": subtotal,
                "imei": (line.get("imei") or "").strip() or None,
            }
        )
    discount = q2(discount or 0)
    if discount < ZERO:
        raise ValidationError("discount must be >= 0")
    if discount > gross:
        raise ValidationError(f"discount {discount} exceeds sale subtotal {q2(gross)}")
    return priced, q2(gross - discount)


def create_sale(cur, data: dict, today: date) -> dict:
    """
    Create a sale, its lines, the stock decrement and (for credit sales) the credit schedule.

    Runs entirely on the caller's cursor; any exception leaves the caller's transaction
    to roll back, so a failed sale writes nothing.
    """
    sale_type = data.get("tipo_venta") or "contado"
    terms = data.get("credito")
    if sale_type == "credito" and not terms:
        raise ValidationError("credit terms are required for credito sales")
    if sale_type != "credito" and terms:
        raise ValidationError("credit terms are only accepted for credito sales")

    lines, total = price_lines(data.get("lineas") or [], data.get("descuento"))

    cur.execute("SELECT id FROM clientes WHERE id = %s", (data.get("cliente_id"),))
    if not cur.fetchone():
        raise NotFound(f"customer not found: {data.get('cliente_id')}")

    cur.execute(
        """
        INSERT INTO ventas (cliente_id, fecha, total, descuento, medio_pago, tipo_venta, estado)
        VALUES (%s, %s, %s, %s, %s, %s, 'pendiente')
        RETURNING id
        """,
        (
            data.get("cliente_id"),
            data.get("fecha") or today,
            total,
            q2(data.get("descuento") or 0),
            data.get("medio_pago"),
            sale_type,
        ),
    )
    venta_id = cur.fetchone()["id"]

    reserve_stock(cur, lines, venta_id=venta_id)

    for line in lines:
        cur.execute(
            """
            INSERT INTO venta_detalles (venta_id, producto_id, cantidad, precio_unitario, subtotal, imei)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (venta_id, line["producto_id"], line["cantidad"], line["precio_unitario"], line["subtotal"], line["imei"]),
        )

    credit = None
    if sale_type == "credito":
        credit = create_credit(cur, venta_id, total, terms, today)

    json_log(
        "info",
        "ledger.sale.created",
        venta_id=venta_id,
        tipo_venta=sale_type,
        total=total,
        lineas=len(lines),
        credito_id=(credit or {}).get("id"),
    )
    return load_sale(cur, venta_id)


def _lock_sale(cur, venta_id: int) -> dict:
    cur.execute(
        "SELECT id, estado, medio_pago, calificacion FROM ventas WHERE id = %s FOR UPDATE",
        (venta_id,),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound(f"sale not found: {venta_id}")
    return row


def update_sale(
    cur,
    venta_id: int,
    estado: Optional[str] = None,
    medio_pago: Optional[str] = None,
    calificacion: Optional[str] = None,
    restock_on_return: bool = False,
) -> dict:
    """
    Apply the given fields to a sale. Moving a sale into `devuelta` is the return:
    with `restock_on_return` set, its units go back on the shelf in the same transaction.
    """
    current = _lock_sale(cur, venta_id)
    if estado is not None:
        assert_status_transition(current["estado"], estado)

    sets = []
    params: list = []
    if estado is not None:
        sets.append("estado = %s")
        params.append(estado)
    if medio_pago is not None:
        sets.append("medio_pago = %s")
        params.append(medio_pago)
    if calificacion is not None:
        sets.append("calificacion = %s")
        params.append(calificacion)
    if not sets:
        raise ValidationError("nothing to update: provide estado, medio_pago or calificacion")

    sets.append("updated_at = now()")
    params.append(venta_id)
    cur.execute(f"UPDATE ventas SET {', '.join(sets)} WHERE id = %s", params)
    if restock_on_return and estado == TERMINAL_SALE_STATUS and current["estado"] != TERMINAL_SALE_STATUS:
        restock_sale(cur, venta_id)
    return load_sale(cur, venta_id)


def delete_sale(cur, venta_id: int, restock_on_return: bool = False) -> dict:
    """
    Return (if not already returned) and then delete a sale with its credit.

    Stock is only put back when `restock_on_return` is set and this call performs
    the return; a sale returned earlier was restocked (or not) at that point.
    Inventory movements survive with `venta_id = NULL`.
    """
    current = _lock_sale(cur, venta_id)
    was_returned = False
    if current["estado"] != TERMINAL_SALE_STATUS:
        cur.execute(
            "UPDATE ventas SET estado = %s, updated_at = now() WHERE id = %s",
            (TERMINAL_SALE_STATUS, venta_id),
        )
        was_returned = True

    restocked = bool(restock_on_return and was_returned)
    if restocked:
        restock_sale(cur, venta_id)

    # Serialize with in-flight payments on the same credit before removing it.
    cur.execute("SELECT id FROM creditos WHERE venta_id = %s FOR UPDATE", (venta_id,))
    credit_ids = [r["id"] for r in cur.fetchall()]
    if credit_ids:
        cur.execute("DELETE FROM cuotas_credito WHERE credito_id = ANY(%s)", (credit_ids,))
        cur.execute("DELETE FROM pagos_credito WHERE credito_id = ANY(%s)", (credit_ids,))
        cur.execute("DELETE FROM creditos WHERE id = ANY(%s)", (credit_ids,))

    cur.execute("UPDATE movimientos_inventario SET venta_id = NULL WHERE venta_id = %s", (venta_id,))
    cur.execute("DELETE FROM venta_detalles WHERE venta_id = %s", (venta_id,))
    cur.execute("DELETE FROM ventas WHERE id = %s", (venta_id,))

    json_log(
        "info",
        "ledger.sale.deleted",
        venta_id=venta_id,
        was_returned=was_returned,
        creditos=credit_ids,
        restocked=restocked,
    )
    return {"deleted": True, "was_returned": was_returned}


def _load_lines(cur, venta_ids: list) -> dict:
    if not venta_ids:
        return {}
    cur.execute(
        """
        SELECT d.id, d.venta_id, d.producto_id, p.nombre AS producto_nombre,
               d.cantidad, d.precio_unitario, d.subtotal, d.imei
        FROM venta_detalles d
        LEFT JOIN productos p ON p.id = d.producto_id
        WHERE d.venta_id = ANY(%s)
        ORDER BY d.venta_id, d.id
        """,
        (venta_ids,),
    )
    out: dict = {}
    for r in cur.fetchall():
        out.setdefault(r["venta_id"], []).append(r)
    return out


def _load_credit_summaries(cur, venta_ids: list) -> dict:
    if not venta_ids:
        return {}
    cur.execute(
        """
        SELECT id, venta_id, tipo_credito, numero_cuotas, cuota_inicial, valor_cuota,
               monto_original, monto_pagado, monto_pendiente, estado
        FROM creditos
        WHERE venta_id = ANY(%s)
        """,
        (venta_ids,),
    )
    return {r["venta_id"]: r for r in cur.fetchall()}


def load_sale(cur, venta_id: int) -> dict:
    cur.execute(
        f"""
        SELECT {SALE_COLUMNS}
        FROM ventas v
        LEFT JOIN clientes c ON c.id = v.cliente_id
        WHERE v.id = %s
        """,
        (venta_id,),
    )
    sale = cur.fetchone()
    if not sale:
        raise NotFound(f"sale not found: {venta_id}")
    lines = _load_lines(cur, [venta_id])
    credits = _load_credit_summaries(cur, [venta_id])
    return {**sale, "detalles": lines.get(venta_id, []), "credito": credits.get(venta_id)}


def list_sales(cur, limit: int = 200) -> list[dict]:
    cur.execute(
        f"""
        SELECT {SALE_COLUMNS}
        FROM ventas v
        LEFT JOIN clientes c ON c.id = v.cliente_id
        ORDER BY v.created_at DESC, v.id DESC
        LIMIT %s
        """,
        (limit,),
    )
    sales = cur.fetchall()
    ids = [s["id"] for s in sales]
    lines = _load_lines(cur, ids)
    credits = _load_credit_summaries(cur, ids)
    return [{**s, "detalles": lines.get(s["id"], []), "credito": credits.get(s["id"])} for s in sales]
