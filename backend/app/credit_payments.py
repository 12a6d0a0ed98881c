from datetime import date
from typing import Iterable, Optional

from .credit_status import derive_credit_state, installment_outstanding, lock_credit, persist_credit_state
from .errors import CreditCancelled, NoInstallmentsConfigured, PaymentExceedsBalance, ValidationError
from .logs import json_log
from .money import EPS, ZERO, q2


def _settled_status(inst: dict) -> str:
    return "pagada" if q2(inst["valor"]) - q2(inst["valor_pagado"]) <= EPS else "pendiente"


def _apply(inst: dict, amount, payment_date: date, applied: dict):
    inst["valor_pagado"] = q2(q2(inst["valor_pagado"]) + amount)
    inst["estado"] = _settled_status(inst)
    if inst["estado"] == "pagada":
        inst["fecha_pago"] = payment_date
    applied[inst["numero"]] = q2(applied.get(inst["numero"], ZERO) + amount)


def allocate_payment(installments: Iterable[dict], amount, payment_date: date) -> dict:
    """
    Spread `amount` over installments, oldest first.

    Pass 1 walks installments in sequence order, settling each one it can cover in
    full; the first installment it cannot cover absorbs whatever is left and the
    pass stops there. Pass 2 only runs when money is still left after pass 1 and
    sweeps any installment that still shows a balance (sub-cent residues that
    pass 1 skips). Every addition is rounded to cents immediately.

    The input rows are not mutated. Returns:
      cuotas    all installments after allocation (copies, sequence order)
      cambios   numero -> amount applied to that installment
      aplicado  total applied
      sobrante  amount that found no installment
    """
    rows = [dict(i) for i in sorted(installments, key=lambda i: int(i["numero"]))]
    for inst in rows:
        inst["valor"] = q2(inst.get("valor"))
        inst["valor_pagado"] = q2(inst.get("valor_pagado"))
    remaining = q2(amount)
    applied: dict = {}

    for inst in rows:
        if remaining <= ZERO:
            break
        outstanding = installment_outstanding(inst)
        if outstanding <= EPS:
            continue
        if remaining + inst["valor_pagado"] < inst["valor"] - EPS:
            _apply(inst, remaining, payment_date, applied)
            remaining = ZERO
            break
        portion = min(remaining, outstanding)
        _apply(inst, portion, payment_date, applied)
        remaining = q2(remaining - portion)

    if remaining > EPS:
        for inst in rows:
            outstanding = installment_outstanding(inst)
            if outstanding <= ZERO:
                continue
            if remaining >= outstanding:
                _apply(inst, outstanding, payment_date, applied)
                remaining = q2(remaining - outstanding)
            else:
                _apply(inst, remaining, payment_date, applied)
                remaining = ZERO
            if remaining <= ZERO:
                break

    total_applied = sum(applied.values(), ZERO)
    return {
        "cuotas": rows,
        "cambios": applied,
        "aplicado": q2(total_applied),
        "sobrante": remaining,
    }


def record_credit_payment(cur, credito_id: int, amount, payment_date: Optional[date], today: date) -> dict:
    """
    Apply one payment to a credit inside the caller's transaction.

    Locks the credit and all of its installments, allocates, stores the touched
    installments, appends the payment to `pagos_credito` and re-derives the credit
    aggregates. Returns the credit with its installments and the allocation summary.
    """
    amount = q2(amount)
    if amount <= ZERO:
        raise ValidationError("payment amount must be > 0")
    payment_date = payment_date or today

    credit, installments = lock_credit(cur, credito_id)
    if not installments:
        raise NoInstallmentsConfigured(f"credit {credito_id} has no installments")
    if credit.get("estado") == "cancelado":
        raise CreditCancelled(f"credit {credito_id} is cancelled and cannot take payments")

    before = derive_credit_state(
        installments, credit["cuota_inicial"], credit["monto_original"], today, current_status=credit.get("estado")
    )
    if before["monto_pendiente"] <= EPS:
        raise PaymentExceedsBalance(f"credit {credito_id} has no outstanding balance")
    if amount > before["monto_pendiente"] + EPS:
        raise PaymentExceedsBalance(
            f"payment {amount} exceeds credit outstanding balance {before['monto_pendiente']}"
        )

    allocation = allocate_payment(installments, amount, payment_date)
    by_numero = {int(i["numero"]): i for i in allocation["cuotas"]}
    for numero in sorted(allocation["cambios"]):
        inst = by_numero[int(numero)]
        cur.execute(
            """
            UPDATE cuotas_credito
            SET valor_pagado = %s,
                estado = %s,
                fecha_pago = %s
            WHERE id = %s
            """,
            (inst["valor_pagado"], inst["estado"], inst.get("fecha_pago"), inst["id"]),
        )

    cur.execute(
        """
        INSERT INTO pagos_credito (credito_id, monto, monto_aplicado, fecha_pago)
        VALUES (%s, %s, %s, %s)
        RETURNING id
        """,
        (credito_id, amount, allocation["aplicado"], payment_date),
    )
    pago_id = cur.fetchone()["id"]

    state = derive_credit_state(
        allocation["cuotas"], credit["cuota_inicial"], credit["monto_original"], today, current_status=credit.get("estado")
    )
    persist_credit_state(cur, credito_id, state)

    json_log(
        "info",
        "ledger.credit.payment",
        credito_id=credito_id,
        pago_id=pago_id,
        monto=amount,
        aplicado=allocation["aplicado"],
        estado=state["estado"],
        monto_pendiente=state["monto_pendiente"],
    )
    return {
        **credit,
        "monto_pagado": state["monto_pagado"],
        "monto_pendiente": state["monto_pendiente"],
        "estado": state["estado"],
        "cuotas": allocation["cuotas"],
        "pago": {
            "id": pago_id,
            "monto": amount,
            "monto_aplicado": allocation["aplicado"],
            "fecha_pago": payment_date,
        },
    }
