from typing import Iterable, Optional

from .errors import InsufficientStock, ProductNotFound, ValidationError


def aggregate_demand(lines: Iterable[dict]) -> dict:
    """
    Sum requested quantities per product, keeping first-seen order.
    Two lines for the same product compete for the same stock.
    """
    demand: dict = {}
    for line in lines:
        product_id = line.get("producto_id")
        if product_id is None:
            raise ValidationError("each line requires producto_id")
        qty = int(line.get("cantidad") or 0)
        if qty <= 0:
            raise ValidationError(f"quantity must be > 0 (product {product_id})")
        demand[product_id] = demand.get(product_id, 0) + qty
    return demand


def _lock_products(cur, product_ids: list) -> dict:
    # Lock in ascending id order so two sales touching the same products cannot deadlock.
    cur.execute(
        """
        SELECT id, nombre, cantidad
        FROM productos
        WHERE id = ANY(%s)
        ORDER BY id
        FOR UPDATE
        """,
        (sorted(product_ids),),
    )
    return {r["id"]: r for r in cur.fetchall()}


def reserve_stock(cur, lines: Iterable[dict], venta_id: Optional[int] = None) -> dict:
    """
    Validate and decrement stock for every product in `lines`.

    NULL `cantidad` means unlimited stock: never checked, never written.
    Raises ProductNotFound / InsufficientStock before anything is written.
    Returns {product_id: {"disponible", "solicitado", "restante"}} (restante is None when unlimited).
    """
    demand = aggregate_demand(lines)
    if not demand:
        raise ValidationError("sale requires at least one line")

    products = _lock_products(cur, list(demand.keys()))
    for product_id in demand:
        if product_id not in products:
            raise ProductNotFound(f"product not found: {product_id}")

    plan: dict = {}
    for product_id, requested in demand.items():
        available = products[product_id].get("cantidad")
        if available is None:
            plan[product_id] = {"disponible": None, "solicitado": requested, "restante": None}
            continue
        available = int(available)
        if requested > available:
            raise InsufficientStock(
                f"insufficient stock for product {product_id}: requested {requested}, available {available}"
            )
        plan[product_id] = {
            "disponible": available,
            "solicitado": requested,
            "restante": max(available - requested, 0),
        }

    for product_id, p in plan.items():
        if p["restante"] is not None:
            cur.execute(
                "UPDATE productos SET cantidad = %s WHERE id = %s",
                (p["restante"], product_id),
            )
        cur.execute(
            """
            INSERT INTO movimientos_inventario (producto_id, venta_id, tipo, cantidad)
            VALUES (%s, %s, 'salida', %s)
            """,
            (product_id, venta_id, p["solicitado"]),
        )
    return plan


def restock_sale(cur, venta_id: int) -> dict:
    """
    Put a sale's units back on finite-stock products. Only used when returns restock.
    Returns {product_id: quantity_returned}.
    """
    cur.execute(
        """
        SELECT producto_id, SUM(cantidad) AS cantidad
        FROM venta_detalles
        WHERE venta_id = %s
        GROUP BY producto_id
        """,
        (venta_id,),
    )
    sold = {r["producto_id"]: int(r["cantidad"] or 0) for r in cur.fetchall()}
    if not sold:
        return {}

    products = _lock_products(cur, list(sold.keys()))
    returned: dict = {}
    for product_id in sorted(sold):
        p = products.get(product_id)
        # Deleted products and unlimited products have nothing to restock.
        if not p or p.get("cantidad") is None:
            continue
        cur.execute(
            "UPDATE productos SET cantidad = cantidad + %s WHERE id = %s",
            (sold[product_id], product_id),
        )
        cur.execute(
            """
            INSERT INTO movimientos_inventario (producto_id, venta_id, tipo, cantidad)
            VALUES (%s, %s, 'devolucion', %s)
            """,
            (product_id, venta_id, sold[product_id]),
        )
        returned[product_id] = sold[product_id]
    return returned
