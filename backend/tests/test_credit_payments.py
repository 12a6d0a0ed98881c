from datetime import date
from decimal import Decimal

import pytest

from backend.app.credit_payments import allocate_payment, record_credit_payment
from backend.app.errors import (
    CreditCancelled,
    NoInstallmentsConfigured,
    NotFound,
    PaymentExceedsBalance,
    ValidationError,
)

PAY_DAY = date(2025, 1, 10)


def _installments(*values, paid=None, first_id=100):
    paid = list(paid or [0] * len(values))
    return [
        {
            "id": first_id + n,
            "credito_id": 1,
            "numero": n,
            "fecha_vencimiento": date(2025, n + 1, 1),
            "valor": Decimal(str(v)),
            "valor_pagado": Decimal(str(paid[n - 1])),
            "estado": "pendiente",
            "fecha_pago": None,
        }
        for n, v in enumerate(values, start=1)
    ]


class _FakeCursor:
    def __init__(self, credit=None, installments=None):
        self.credit = credit
        self.installments = list(installments or [])
        self.executed: list[tuple[str, tuple]] = []
        self.rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        self.executed.append((text, tuple(params or ())))
        if text.startswith("select") and "from creditos" in text:
            self.rows = [self.credit] if self.credit else []
            return
        if text.startswith("select") and "from cuotas_credito" in text:
            self.rows = [dict(i) for i in self.installments]
            return
        if text.startswith("insert into pagos_credito"):
            self.rows = [{"id": 501}]
            return
        if text.startswith("update cuotas_credito") or text.startswith("update creditos"):
            self.rows = []
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchall(self):
        return list(self.rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def statements(self, prefix: str):
        return [(sql, params) for sql, params in self.executed if sql.startswith(prefix)]


def _credit(**overrides):
    row = {
        "id": 1,
        "venta_id": 10,
        "tipo_credito": "mensual",
        "numero_cuotas": 3,
        "cuota_inicial": Decimal("0"),
        "valor_cuota": Decimal("50000"),
        "saldo_financiado": Decimal("150000"),
        "monto_original": Decimal("150000"),
        "monto_pagado": Decimal("0"),
        "monto_pendiente": Decimal("150000"),
        "estado": "activo",
        "fecha_inicio": date(2025, 1, 1),
        "fecha_primera_cuota": date(2025, 2, 1),
    }
    row.update(overrides)
    return row


def test_payment_settles_first_installment_and_partially_pays_second():
    out = allocate_payment(_installments(50000, 50000, 50000), Decimal("70000"), PAY_DAY)

    cuotas = out["cuotas"]
    assert [c["valor_pagado"] for c in cuotas] == [Decimal("50000"), Decimal("20000"), Decimal("0")]
    assert [c["estado"] for c in cuotas] == ["pagada", "pendiente", "pendiente"]
    assert cuotas[0]["fecha_pago"] == PAY_DAY
    assert cuotas[1]["fecha_pago"] is None
    assert out["cambios"] == {1: Decimal("50000"), 2: Decimal("20000")}
    assert out["aplicado"] == Decimal("70000")
    assert out["sobrante"] == 0


def test_partial_payment_stops_at_first_uncovered_installment():
    out = allocate_payment(_installments(100, 100, 100), Decimal("30"), PAY_DAY)
    assert [c["valor_pagado"] for c in out["cuotas"]] == [Decimal("30"), Decimal("0"), Decimal("0")]
    assert out["cambios"] == {1: Decimal("30")}


def test_payment_completes_partially_paid_installment_first():
    out = allocate_payment(_installments(100, 100, paid=[60, 0]), Decimal("40"), PAY_DAY)
    assert [c["estado"] for c in out["cuotas"]] == ["pagada", "pendiente"]
    assert out["cambios"] == {1: Decimal("40")}


def test_settled_installments_are_skipped():
    out = allocate_payment(_installments(100, 100, 100, paid=[100, 0, 0]), Decimal("150"), PAY_DAY)
    assert [c["valor_pagado"] for c in out["cuotas"]] == [Decimal("100"), Decimal("100"), Decimal("50")]
    assert 1 not in out["cambios"]


def test_second_pass_sweeps_sub_cent_residue():
    # Installment 1 shows one cent left, which the first pass treats as settled.
    out = allocate_payment(_installments("100.00", "50.00", paid=["99.99", "0"]), Decimal("50.02"), PAY_DAY)

    assert out["cambios"] == {1: Decimal("0.01"), 2: Decimal("50.00")}
    assert [c["valor_pagado"] for c in out["cuotas"]] == [Decimal("100.00"), Decimal("50.00")]
    assert out["aplicado"] == Decimal("50.01")
    assert out["sobrante"] == Decimal("0.01")


def test_allocation_conserves_money_and_never_reduces_paid_amounts():
    before = _installments("33333.34", "33333.34", "33333.33", paid=["1000", "0", "0"])
    for amount in ("0.01", "32333.34", "40000", "99000.01"):
        out = allocate_payment(before, Decimal(amount), PAY_DAY)
        paid_before = sum(i["valor_pagado"] for i in before)
        paid_after = sum(i["valor_pagado"] for i in out["cuotas"])
        assert paid_after - paid_before == out["aplicado"]
        assert out["aplicado"] + out["sobrante"] == Decimal(amount)
        for old, new in zip(before, out["cuotas"]):
            assert new["valor_pagado"] >= old["valor_pagado"]
            assert new["valor_pagado"] <= new["valor"]


def test_allocation_does_not_mutate_input_rows():
    rows = _installments(10, 10)
    allocate_payment(rows, Decimal("15"), PAY_DAY)
    assert [r["valor_pagado"] for r in rows] == [Decimal("0"), Decimal("0")]


def test_record_payment_persists_installments_payment_and_aggregates():
    cur = _FakeCursor(credit=_credit(), installments=_installments(50000, 50000, 50000))

    out = record_credit_payment(cur, 1, Decimal("70000"), None, today=PAY_DAY)

    assert out["monto_pagado"] == Decimal("70000.00")
    assert out["monto_pendiente"] == Decimal("80000.00")
    assert out["estado"] == "activo"
    assert out["pago"] == {
        "id": 501,
        "monto": Decimal("70000.00"),
        "monto_aplicado": Decimal("70000.00"),
        "fecha_pago": PAY_DAY,
    }

    updates = cur.statements("update cuotas_credito")
    assert [params[3] for _, params in updates] == [101, 102]
    assert updates[0][1][:3] == (Decimal("50000.00"), "pagada", PAY_DAY)
    assert updates[1][1][:3] == (Decimal("20000.00"), "pendiente", None)

    (_, pay_params), = cur.statements("insert into pagos_credito")
    assert pay_params == (1, Decimal("70000.00"), Decimal("70000.00"), PAY_DAY)

    (_, credit_params), = cur.statements("update creditos")
    assert credit_params == (Decimal("70000.00"), Decimal("80000.00"), "activo", 1)

    # Credit row and installments are locked before anything is written.
    assert "for update" in cur.executed[0][0]
    assert "for update" in cur.executed[1][0]


def test_full_payoff_marks_credit_paid():
    cur = _FakeCursor(
        credit=_credit(cuota_inicial=Decimal("10000"), monto_original=Decimal("160000")),
        installments=_installments(50000, 50000, 50000, paid=[50000, 0, 0]),
    )
    out = record_credit_payment(cur, 1, Decimal("100000"), date(2025, 2, 3), today=PAY_DAY)
    assert out["estado"] == "pagado"
    assert out["monto_pendiente"] == 0
    assert out["monto_pagado"] == Decimal("160000.00")
    assert out["pago"]["fecha_pago"] == date(2025, 2, 3)


def test_payment_on_overdue_credit_keeps_mora_until_caught_up():
    cur = _FakeCursor(credit=_credit(estado="mora"), installments=_installments(50000, 50000, 50000))
    out = record_credit_payment(cur, 1, Decimal("20000"), None, today=date(2025, 3, 5))
    assert out["estado"] == "mora"

    cur = _FakeCursor(credit=_credit(estado="mora"), installments=_installments(50000, 50000, 50000))
    out = record_credit_payment(cur, 1, Decimal("100000"), None, today=date(2025, 3, 5))
    assert out["estado"] == "activo"


def test_payment_exceeding_outstanding_is_rejected_without_writes():
    cur = _FakeCursor(credit=_credit(), installments=_installments(50000, 50000, 50000))
    with pytest.raises(PaymentExceedsBalance) as exc_info:
        record_credit_payment(cur, 1, Decimal("150000.02"), None, today=PAY_DAY)
    assert exc_info.value.status_code == 409
    assert cur.statements("update") == []
    assert cur.statements("insert") == []


def test_payment_within_one_cent_tolerance_is_accepted():
    cur = _FakeCursor(credit=_credit(), installments=_installments(50000, 50000, 50000))
    out = record_credit_payment(cur, 1, Decimal("150000.01"), None, today=PAY_DAY)
    assert out["estado"] == "pagado"
    assert out["pago"]["monto_aplicado"] == Decimal("150000.00")


def test_payment_on_settled_credit_is_rejected():
    cur = _FakeCursor(
        credit=_credit(estado="pagado", monto_original=Decimal("10")),
        installments=_installments(10, paid=[10]),
    )
    with pytest.raises(PaymentExceedsBalance):
        record_credit_payment(cur, 1, Decimal("1"), None, today=PAY_DAY)


def test_payment_on_cancelled_credit_is_rejected():
    cur = _FakeCursor(credit=_credit(estado="cancelado"), installments=_installments(50000, 50000, 50000))
    with pytest.raises(CreditCancelled):
        record_credit_payment(cur, 1, Decimal("100"), None, today=PAY_DAY)
    assert cur.statements("update") == []


def test_credit_without_installments_is_an_integrity_error():
    cur = _FakeCursor(credit=_credit(), installments=[])
    with pytest.raises(NoInstallmentsConfigured) as exc_info:
        record_credit_payment(cur, 1, Decimal("100"), None, today=PAY_DAY)
    assert exc_info.value.status_code == 500


def test_missing_credit_is_not_found():
    cur = _FakeCursor(credit=None)
    with pytest.raises(NotFound):
        record_credit_payment(cur, 404, Decimal("100"), None, today=PAY_DAY)


@pytest.mark.parametrize("amount", ["0", "-5", "0.004"])
def test_non_positive_amount_is_rejected_before_locking(amount):
    cur = _FakeCursor(credit=_credit(), installments=_installments(100))
    with pytest.raises(ValidationError):
        record_credit_payment(cur, 1, Decimal(amount), None, today=PAY_DAY)
    assert cur.executed == []


class _LedgerCursor(_FakeCursor):
    """Keeps what the payment path writes so consecutive payments see it."""

    def __init__(self, credit, installments):
        super().__init__(credit=credit, installments=installments)
        self.payments: list[dict] = []

    def execute(self, sql, params=None):
        super().execute(sql, params)
        text = self.executed[-1][0]
        if text.startswith("update cuotas_credito"):
            valor_pagado, estado, fecha_pago, inst_id = params
            for inst in self.installments:
                if inst["id"] == inst_id:
                    inst.update(valor_pagado=valor_pagado, estado=estado, fecha_pago=fecha_pago)
        elif text.startswith("update creditos"):
            monto_pagado, monto_pendiente, estado, _ = params
            self.credit = dict(self.credit, monto_pagado=monto_pagado, monto_pendiente=monto_pendiente, estado=estado)
        elif text.startswith("insert into pagos_credito"):
            _, monto, monto_aplicado, _ = params
            pago = {"id": 501 + len(self.payments), "monto": monto, "monto_aplicado": monto_aplicado}
            self.payments.append(pago)
            self.rows = [{"id": pago["id"]}]


def test_consecutive_payments_keep_the_ledger_consistent():
    down = Decimal("10000")
    cur = _LedgerCursor(
        credit=_credit(
            cuota_inicial=down,
            monto_original=Decimal("110000"),
            monto_pagado=down,
            monto_pendiente=Decimal("100000"),
        ),
        installments=_installments("33333.34", "33333.33", "33333.33"),
    )

    pending = cur.credit["monto_pendiente"]
    for amount in ("0.01", "33333.33", "20000", "40000.01", "6666.65"):
        paid_before = [i["valor_pagado"] for i in cur.installments]
        out = record_credit_payment(cur, 1, Decimal(amount), None, today=PAY_DAY)

        assert out["monto_pendiente"] == cur.credit["monto_pendiente"]
        assert cur.credit["monto_pendiente"] <= pending
        pending = cur.credit["monto_pendiente"]
        applied = sum((p["monto_aplicado"] for p in cur.payments), Decimal("0"))
        assert applied == cur.credit["monto_pagado"] - down
        for old, inst in zip(paid_before, cur.installments):
            assert inst["valor_pagado"] >= old

    assert len(cur.payments) == 5
    assert cur.credit["monto_pendiente"] == 0
    assert cur.credit["estado"] == "pagado"
    assert [i["estado"] for i in cur.installments] == ["pagada"] * 3
