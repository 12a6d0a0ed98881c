from datetime import date
from typing import Optional

from .credit_status import derive_credit_state, effective_installment_status, installment_outstanding, next_installment
from .errors import NotFound
from .money import ZERO, q2

CREDIT_COLUMNS = """
    cr.id, cr.venta_id, cr.tipo_credito, cr.numero_cuotas, cr.cuota_inicial, cr.valor_cuota,
    cr.saldo_financiado, cr.monto_original, cr.monto_pagado, cr.monto_pendiente, cr.estado,
    cr.fecha_inicio, cr.fecha_primera_cuota, cr.created_at,
    v.total AS total_venta, v.cliente_id, c.nombre AS cliente_nombre
"""


def _load_installments(cur, credit_ids: list) -> dict:
    if not credit_ids:
        return {}
    cur.execute(
        """
        SELECT id, credito_id, numero, fecha_vencimiento, valor, valor_pagado, estado, fecha_pago
        FROM cuotas_credito
        WHERE credito_id = ANY(%s)
        ORDER BY credito_id, numero
        """,
        (credit_ids,),
    )
    out: dict = {}
    for r in cur.fetchall():
        out.setdefault(r["credito_id"], []).append(r)
    return out


def serialize_credit(credit: dict, installments: list[dict], today: date) -> dict:
    """
    Read view of a credit: amounts and state re-derived from the installments
    (the stored aggregates can lag behind the calendar until the next refresh).
    """
    state = derive_credit_state(
        installments, credit["cuota_inicial"], credit["monto_original"], today, current_status=credit.get("estado")
    )
    cuotas = [
        {
            **inst,
            "saldo": installment_outstanding(inst),
            "estado": effective_installment_status(inst, today),
        }
        for inst in installments
    ]
    upcoming = next_installment(cuotas)
    return {
        **credit,
        "monto_pagado": state["monto_pagado"],
        "monto_pendiente": state["monto_pendiente"],
        "estado": state["estado"],
        "tiene_vencidas": state["tiene_vencidas"],
        "cuotas": cuotas,
        "proxima_cuota": upcoming,
    }


def credit_stats(credits: list[dict]) -> dict:
    return {
        "total_creditos": len(credits),
        "monto_otorgado": q2(sum((q2(c["monto_original"]) for c in credits), ZERO)),
        "monto_cobrado": q2(sum((q2(c["monto_pagado"]) for c in credits), ZERO)),
        "monto_pendiente": q2(sum((q2(c["monto_pendiente"]) for c in credits), ZERO)),
        "creditos_vencidos": sum(1 for c in credits if c.get("tiene_vencidas") and c.get("estado") != "cancelado"),
    }


def list_credits(cur, today: date, estado: Optional[str] = None) -> dict:
    cur.execute(
        f"""
        SELECT {CREDIT_COLUMNS}
        FROM creditos cr
        JOIN ventas v ON v.id = cr.venta_id
        LEFT JOIN clientes c ON c.id = v.cliente_id
        ORDER BY cr.created_at DESC, cr.id DESC
        """
    )
    rows = cur.fetchall()
    installments = _load_installments(cur, [r["id"] for r in rows])
    credits = [serialize_credit(r, installments.get(r["id"], []), today) for r in rows]
    if estado:
        credits = [c for c in credits if c["estado"] == estado]
    return {"stats": credit_stats(credits), "credits": credits}


def load_credit(cur, credito_id: int, today: date) -> dict:
    cur.execute(
        f"""
        SELECT {CREDIT_COLUMNS}
        FROM creditos cr
        JOIN ventas v ON v.id = cr.venta_id
        LEFT JOIN clientes c ON c.id = v.cliente_id
        WHERE cr.id = %s
        """,
        (credito_id,),
    )
    row = cur.fetchone()
    if not row:
        raise NotFound(f"credit not found: {credito_id}")
    installments = _load_installments(cur, [credito_id])
    return serialize_credit(row, installments.get(credito_id, []), today)


def list_credit_payments(cur, credito_id: int) -> list[dict]:
    cur.execute("SELECT id FROM creditos WHERE id = %s", (credito_id,))
    if not cur.fetchone():
        raise NotFound(f"credit not found: {credito_id}")
    cur.execute(
        """
        SELECT id, credito_id, monto, monto_aplicado, fecha_pago, created_at
        FROM pagos_credito
        WHERE credito_id = %s
        ORDER BY created_at DESC, id DESC
        """,
        (credito_id,),
    )
    return cur.fetchall()
