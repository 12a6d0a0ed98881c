import calendar
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from .errors import InvalidCreditTerms, ValidationError
from .money import ZERO, q2

CADENCE_DAYS = {
    "diario": 1,
    "semanal": 7,
    "quincenal": 15,
}
# Legacy rows may carry cadences outside the closed set; they fall back to 30-day steps.
FALLBACK_CADENCE_DAYS = 30


def _add_months(ref: date, months: int) -> date:
    month_index = ref.month - 1 + months
    year = ref.year + month_index // 12
    month = month_index % 12 + 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(ref.day, last))


def due_date_for(reference: date, cadence: str, k: int) -> date:
    """Due date of installment `k` (1-indexed): `reference` advanced by k-1 cadence steps."""
    steps = k - 1
    if cadence == "mensual":
        # Always count from the reference date so a 31st keeps landing on month-ends.
        return _add_months(reference, steps)
    days = CADENCE_DAYS.get(cadence, FALLBACK_CADENCE_DAYS)
    return reference + timedelta(days=days * steps)


def build_schedule(count: int, balance, cadence: str, first_due_date: date) -> list[dict]:
    """
    Split `balance` into `count` installments.

    Installments 1..N-1 carry round2(B / N); the last one carries whatever is left,
    so the values always add up to exactly B.
    """
    count = int(count or 0)
    balance = q2(balance)
    if count < 1:
        raise InvalidCreditTerms("installment count must be >= 1")
    if balance <= ZERO:
        raise InvalidCreditTerms("financed balance must be > 0")

    nominal = q2(balance / Decimal(count))
    schedule: list[dict] = []
    assigned = ZERO
    for k in range(1, count + 1):
        if k < count:
            value = nominal
        else:
            value = q2(balance - assigned)
        if value <= ZERO:
            raise InvalidCreditTerms(
                f"{count} installments is too many for a financed balance of {balance}"
            )
        assigned = q2(assigned + value)
        schedule.append(
            {
                "numero": k,
                "fecha_vencimiento": due_date_for(first_due_date, cadence, k),
                "valor": value,
                "valor_pagado": ZERO,
                "estado": "pendiente",
            }
        )
    return schedule


def first_due_date_for(start_date: date, cadence: str) -> date:
    return due_date_for(start_date, cadence, 2)


def create_credit(cur, venta_id: int, total, terms: dict, today: date) -> dict:
    """
    Persist the credit and installment rows for a financed sale.

    `terms` keys: tipo_credito, numero_cuotas, cuota_inicial, fecha_inicio?, fecha_primera_cuota?
    """
    total = q2(total)
    down_payment = q2(terms.get("cuota_inicial") or 0)
    cadence = terms.get("tipo_credito")
    if not cadence:
        raise ValidationError("tipo_credito is required for credit sales")
    if down_payment < ZERO:
        raise InvalidCreditTerms("down payment must be >= 0")
    if down_payment > total:
        raise InvalidCreditTerms(f"down payment {down_payment} exceeds sale total {total}")
    financed = q2(total - down_payment)
    if financed <= ZERO:
        raise InvalidCreditTerms("financed balance must be > 0; record the sale as contado instead")

    start_date: date = terms.get("fecha_inicio") or today
    first_due: Optional[date] = terms.get("fecha_primera_cuota") or first_due_date_for(start_date, cadence)
    if first_due < start_date:
        raise InvalidCreditTerms("first due date cannot be before the credit start date")

    schedule = build_schedule(terms.get("numero_cuotas"), financed, cadence, first_due)
    scheduled_total = sum((i["valor"] for i in schedule), ZERO)
    if q2(down_payment + scheduled_total) != total:
        # build_schedule guarantees this; a mismatch means the arithmetic above changed.
        raise InvalidCreditTerms("schedule does not add up to the sale total")

    cur.execute(
        """
        INSERT INTO creditos
          (venta_id, tipo_credito, numero_cuotas, cuota_inicial, valor_cuota, saldo_financiado,
           monto_original, monto_pagado, monto_pendiente, estado, fecha_inicio, fecha_primera_cuota)
        VALUES
          (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'activo', %s, %s)
        RETURNING id
        """,
        (
            venta_id,
            cadence,
            len(schedule),
            down_payment,
            schedule[0]["valor"],
            financed,
            total,
            down_payment,
            financed,
            start_date,
            first_due,
        ),
    )
    credito_id = cur.fetchone()["id"]

    for inst in schedule:
        cur.execute(
            """
            INSERT INTO cuotas_credito (credito_id, numero, fecha_vencimiento, valor, valor_pagado, estado)
            VALUES (%s, %s, %s, %s, 0, 'pendiente')
            """,
            (credito_id, inst["numero"], inst["fecha_vencimiento"], inst["valor"]),
        )

    return {
        "id": credito_id,
        "venta_id": venta_id,
        "tipo_credito": cadence,
        "numero_cuotas": len(schedule),
        "cuota_inicial": down_payment,
        "valor_cuota": schedule[0]["valor"],
        "saldo_financiado": financed,
        "monto_original": total,
        "monto_pagado": down_payment,
        "monto_pendiente": financed,
        "estado": "activo",
        "fecha_inicio": start_date,
        "fecha_primera_cuota": first_due,
        "cuotas": schedule,
    }
