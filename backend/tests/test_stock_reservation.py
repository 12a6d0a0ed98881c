import pytest

from backend.app.errors import InsufficientStock, ProductNotFound, ValidationError
from backend.app.stock_reservation import aggregate_demand, reserve_stock, restock_sale


class _FakeCursor:
    def __init__(self, products=None, sold=None):
        # products: {id: cantidad or None}; sold: {producto_id: qty} in venta_detalles
        self.products = dict(products or {})
        self.sold = dict(sold or {})
        self.executed: list[tuple[str, tuple]] = []
        self.rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, tuple(params or ())))
        if text.startswith("select id, nombre, cantidad from productos"):
            ids = params[0]
            self.rows = [
                {"id": pid, "nombre": f"product {pid}", "cantidad": self.products[pid]}
                for pid in ids
                if pid in self.products
            ]
            return
        if "from venta_detalles" in text:
            self.rows = [{"producto_id": pid, "cantidad": qty} for pid, qty in self.sold.items()]
            return
        if text.startswith("update productos") or text.startswith("insert into movimientos_inventario"):
            self.rows = []
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchall(self):
        return list(self.rows)

    def writes(self):
        return [(sql, params) for sql, params in self.executed if not sql.startswith("select")]


def test_aggregate_demand_sums_repeated_products():
    demand = aggregate_demand(
        [
            {"producto_id": 5, "cantidad": 3},
            {"producto_id": 2, "cantidad": 1},
            {"producto_id": 5, "cantidad": 4},
        ]
    )
    assert demand == {5: 7, 2: 1}
    assert list(demand) == [5, 2]


@pytest.mark.parametrize("line", [{"cantidad": 1}, {"producto_id": 1, "cantidad": 0}, {"producto_id": 1}])
def test_aggregate_demand_rejects_bad_lines(line):
    with pytest.raises(ValidationError):
        aggregate_demand([line])


def test_repeated_lines_compete_for_the_same_stock():
    cur = _FakeCursor(products={1: 5})
    lines = [{"producto_id": 1, "cantidad": 3}, {"producto_id": 1, "cantidad": 4}]

    with pytest.raises(InsufficientStock) as exc_info:
        reserve_stock(cur, lines, venta_id=10)

    assert exc_info.value.status_code == 409
    assert "requested 7" in str(exc_info.value.detail)
    assert cur.writes() == []


def test_reserve_decrements_finite_stock_and_records_movements():
    cur = _FakeCursor(products={1: 5, 2: 10})
    plan = reserve_stock(
        cur,
        [{"producto_id": 2, "cantidad": 4}, {"producto_id": 1, "cantidad": 5}],
        venta_id=10,
    )

    assert plan[1] == {"disponible": 5, "solicitado": 5, "restante": 0}
    assert plan[2] == {"disponible": 10, "solicitado": 4, "restante": 6}
    updates = [params for sql, params in cur.executed if sql.startswith("update productos")]
    assert sorted(updates) == [(0, 1), (6, 2)]
    movements = [params for sql, params in cur.executed if sql.startswith("insert into movimientos_inventario")]
    assert sorted(movements) == [(1, 10, 5), (2, 10, 4)]


def test_products_are_locked_in_ascending_id_order():
    cur = _FakeCursor(products={2: 1, 5: 1, 9: 1})
    reserve_stock(
        cur,
        [{"producto_id": 9, "cantidad": 1}, {"producto_id": 2, "cantidad": 1}, {"producto_id": 5, "cantidad": 1}],
    )
    lock_sql, lock_params = cur.executed[0]
    assert lock_sql.endswith("for update")
    assert lock_params == ([2, 5, 9],)


def test_unlimited_stock_is_never_checked_or_written():
    cur = _FakeCursor(products={1: None})
    plan = reserve_stock(cur, [{"producto_id": 1, "cantidad": 10_000}], venta_id=3)

    assert plan[1] == {"disponible": None, "solicitado": 10_000, "restante": None}
    assert not any(sql.startswith("update productos") for sql, _ in cur.executed)
    assert [sql for sql, _ in cur.writes()] == [
        "insert into movimientos_inventario (producto_id, venta_id, tipo, cantidad) values (%s, %s, 'salida', %s)"
    ]


def test_unknown_product_fails_before_writing():
    cur = _FakeCursor(products={1: 50})
    with pytest.raises(ProductNotFound) as exc_info:
        reserve_stock(cur, [{"producto_id": 1, "cantidad": 1}, {"producto_id": 99, "cantidad": 1}])
    assert exc_info.value.status_code == 404
    assert cur.writes() == []


def test_one_short_product_blocks_the_whole_reservation():
    cur = _FakeCursor(products={1: 50, 2: 0})
    with pytest.raises(InsufficientStock):
        reserve_stock(cur, [{"producto_id": 1, "cantidad": 1}, {"producto_id": 2, "cantidad": 1}])
    assert cur.writes() == []


def test_empty_sale_is_rejected():
    with pytest.raises(ValidationError):
        reserve_stock(_FakeCursor(), [])


def test_restock_sale_returns_finite_units_only():
    cur = _FakeCursor(products={1: 2, 2: None}, sold={1: 3, 2: 1, 7: 1})
    returned = restock_sale(cur, venta_id=10)

    assert returned == {1: 3}
    updates = [params for sql, params in cur.executed if sql.startswith("update productos")]
    assert updates == [(3, 1)]
    movements = [(sql, params) for sql, params in cur.executed if sql.startswith("insert into movimientos_inventario")]
    assert len(movements) == 1
    assert "'devolucion'" in movements[0][0]
    assert movements[0][1] == (1, 10, 3)
