#!/usr/bin/env python3
"""
Credit ledger integrity checks (v1).

Goal: catch "money doesn't add up" issues early by verifying key invariants:
- cuota_inicial + sum(installment values) == monto_original
- sum(applied payments) == monto_pagado - cuota_inicial
- no installment carries valor_pagado > valor
- stored monto_pagado / monto_pendiente / estado match the re-derived state
- finite-stock products never go negative

This is read-only and safe to run against production DBs.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from datetime import date


# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.clock import system_clock  # noqa: E402
from backend.app.credit_status import derive_credit_state  # noqa: E402
from backend.app.db import get_tenant_conn  # noqa: E402
from backend.app.money import EPS, ZERO, q2  # noqa: E402


@dataclass
class Finding:
    kind: str
    id: str
    message: str


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--tenant", default=os.environ.get("TENANT") or "", help="Tenant schema (or env TENANT)")
    p.add_argument("--limit", type=int, default=500, help="Credits per check (default: 500)")
    return p.parse_args()


def check_credit(credit: dict, installments: list[dict], applied_total, today: date) -> list[Finding]:
    findings: list[Finding] = []
    cid = str(credit["id"])
    down = q2(credit["cuota_inicial"])
    original = q2(credit["monto_original"])

    scheduled = q2(sum((q2(i["valor"]) for i in installments), ZERO))
    if q2(down + scheduled) != original:
        findings.append(
            Finding(
                kind="schedule_sum_mismatch",
                id=cid,
                message=f"cuota_inicial {down} + cuotas {scheduled} != monto_original {original}",
            )
        )

    for i in installments:
        if q2(i["valor_pagado"]) > q2(i["valor"]):
            findings.append(
                Finding(
                    kind="installment_overpaid",
                    id=cid,
                    message=f"cuota {i['numero']}: valor_pagado {q2(i['valor_pagado'])} > valor {q2(i['valor'])}",
                )
            )

    state = derive_credit_state(installments, down, original, today, current_status=credit.get("estado"))
    paid_from_installments = q2(state["monto_pagado"] - down)
    if abs(q2(applied_total) - paid_from_installments) > EPS:
        findings.append(
            Finding(
                kind="payment_conservation",
                id=cid,
                message=f"applied payments {q2(applied_total)} != paid on installments {paid_from_installments}",
            )
        )

    stored_paid = q2(credit["monto_pagado"])
    stored_pending = q2(credit["monto_pendiente"])
    if stored_paid != state["monto_pagado"] or stored_pending != state["monto_pendiente"]:
        findings.append(
            Finding(
                kind="stale_aggregates",
                id=cid,
                message=(
                    f"stored pagado={stored_paid} pendiente={stored_pending} "
                    f"derived pagado={state['monto_pagado']} pendiente={state['monto_pendiente']}"
                ),
            )
        )
    if credit.get("estado") != state["estado"]:
        findings.append(
            Finding(kind="stale_status", id=cid, message=f"stored {credit.get('estado')} derived {state['estado']}")
        )
    return findings


def check_credits(tenant: str, limit: int, today: date) -> list[Finding]:
    findings: list[Finding] = []
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT cr.id, cr.cuota_inicial, cr.monto_original, cr.monto_pagado, cr.monto_pendiente, cr.estado,
                       COALESCE((SELECT SUM(p.monto_aplicado) FROM pagos_credito p WHERE p.credito_id = cr.id), 0)
                         AS applied_total
                FROM creditos cr
                ORDER BY cr.id DESC
                LIMIT %s
                """,
                (limit,),
            )
            credits = cur.fetchall()
            if not credits:
                return findings
            cur.execute(
                """
                SELECT credito_id, numero, fecha_vencimiento, valor, valor_pagado
                FROM cuotas_credito
                WHERE credito_id = ANY(%s)
                ORDER BY credito_id, numero
                """,
                ([c["id"] for c in credits],),
            )
            by_credit: dict = {}
            for r in cur.fetchall():
                by_credit.setdefault(r["credito_id"], []).append(r)
            for c in credits:
                rows = by_credit.get(c["id"], [])
                if not rows:
                    findings.append(Finding(kind="no_installments", id=str(c["id"]), message="credit has no installments"))
                    continue
                findings.extend(check_credit(c, rows, c["applied_total"], today))
    return findings


def check_stock(tenant: str) -> list[Finding]:
    findings: list[Finding] = []
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT id, nombre, cantidad FROM productos WHERE cantidad < 0 ORDER BY id")
            for r in cur.fetchall():
                findings.append(
                    Finding(kind="negative_stock", id=str(r["id"]), message=f"{r['nombre']}: cantidad {r['cantidad']}")
                )
    return findings


def main() -> int:
    args = _parse_args()
    tenant = (args.tenant or "").strip()
    if not tenant:
        print("credit_integrity_check: --tenant is required", file=sys.stderr)
        return 2
    today = system_clock.today()
    findings = check_credits(tenant, args.limit, today) + check_stock(tenant)
    for f in findings:
        print(f"[{f.kind}] {f.id}: {f.message}")
    print(f"{len(findings)} finding(s)")
    return 1 if findings else 0


if __name__ == "__main__":
    raise SystemExit(main())
