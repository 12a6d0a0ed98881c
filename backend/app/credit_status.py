from datetime import date, datetime, timezone
from typing import Iterable, Optional

from .errors import NoInstallmentsConfigured, NotFound, ValidationError
from .money import EPS, ZERO, q2


def _as_date(v) -> Optional[date]:
    if v is None:
        return None
    if isinstance(v, datetime):
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc)
        return v.date()
    if isinstance(v, date):
        return v
    return date.fromisoformat(str(v)[:10])


def installment_outstanding(inst: dict):
    return max(q2(q2(inst.get("valor")) - q2(inst.get("valor_pagado"))), ZERO)


def is_overdue(inst: dict, today: date) -> bool:
    due = _as_date(inst.get("fecha_vencimiento"))
    if due is None:
        return False
    return installment_outstanding(inst) > EPS and due < today


def effective_installment_status(inst: dict, today: date) -> str:
    # `vencida` is a read-side label; stored rows only ever hold pendiente/pagada.
    if installment_outstanding(inst) <= EPS:
        return "pagada"
    if is_overdue(inst, today):
        return "vencida"
    return "pendiente"


def next_installment(installments: Iterable[dict]) -> Optional[dict]:
    for inst in sorted(installments, key=lambda i: int(i["numero"])):
        if installment_outstanding(inst) > EPS:
            return inst
    return None


def derive_credit_state(
    installments: Iterable[dict],
    down_payment,
    original_amount,
    today: date,
    current_status: Optional[str] = None,
) -> dict:
    """
    Aggregate paid/pending amounts and lifecycle state from the installment rows.

    Paid amounts are capped at each installment's value, so transient overpayment
    never shows up as extra money collected. `cancelado` is sticky: only an explicit
    cancellation sets it and nothing derived here clears it.
    """
    installments = list(installments)
    paid_from_installments = ZERO
    for inst in installments:
        paid_from_installments += min(q2(inst.get("valor_pagado")), q2(inst.get("valor")))
    total_paid = q2(paid_from_installments + q2(down_payment))
    outstanding = max(q2(q2(original_amount) - total_paid), ZERO)
    has_overdue = any(is_overdue(i, today) for i in installments)

    if current_status == "cancelado":
        status = "cancelado"
    elif outstanding <= EPS:
        status = "pagado"
    elif has_overdue:
        status = "mora"
    else:
        status = "activo"

    return {
        "monto_pagado": total_paid,
        "monto_pendiente": outstanding,
        "tiene_vencidas": has_overdue,
        "estado": status,
    }


def lock_credit(cur, credito_id: int) -> tuple[dict, list[dict]]:
    cur.execute(
        """
        SELECT id, venta_id, tipo_credito, numero_cuotas, cuota_inicial, valor_cuota, saldo_financiado,
               monto_original, monto_pagado, monto_pendiente, estado, fecha_inicio, fecha_primera_cuota
        FROM creditos
        WHERE id = %s
        FOR UPDATE
        """,
        (credito_id,),
    )
    credit = cur.fetchone()
    if not credit:
        raise NotFound(f"credit not found: {credito_id}")
    cur.execute(
        """
        SELECT id, credito_id, numero, fecha_vencimiento, valor, valor_pagado, estado, fecha_pago
        FROM cuotas_credito
        WHERE credito_id = %s
        ORDER BY numero ASC
        FOR UPDATE
        """,
        (credito_id,),
    )
    installments = cur.fetchall() or []
    return credit, installments


def persist_credit_state(cur, credito_id: int, state: dict):
    cur.execute(
        """
        UPDATE creditos
        SET monto_pagado = %s,
            monto_pendiente = %s,
            estado = %s,
            updated_at = now()
        WHERE id = %s
        """,
        (state["monto_pagado"], state["monto_pendiente"], state["estado"], credito_id),
    )


def refresh_credit(cur, credito_id: int, today: date) -> dict:
    """Lock, re-derive and store a credit's aggregates. Returns the derived state."""
    credit, installments = lock_credit(cur, credito_id)
    if not installments:
        raise NoInstallmentsConfigured(f"credit {credito_id} has no installments")
    state = derive_credit_state(
        installments,
        credit["cuota_inicial"],
        credit["monto_original"],
        today,
        current_status=credit.get("estado"),
    )
    persist_credit_state(cur, credito_id, state)
    return state


def cancel_credit(cur, credito_id: int) -> dict:
    credit, _installments = lock_credit(cur, credito_id)
    status = credit.get("estado")
    if status == "cancelado":
        return credit
    if status == "pagado":
        raise ValidationError(f"credit {credito_id} is already paid and cannot be cancelled")
    cur.execute(
        "UPDATE creditos SET estado = 'cancelado', updated_at = now() WHERE id = %s",
        (credito_id,),
    )
    return {**credit, "estado": "cancelado"}
