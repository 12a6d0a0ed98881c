#!/usr/bin/env python3
"""
Credit status refresh (v1).

`mora` depends on the calendar, not only on payments: a credit with no new payment
becomes overdue the day after an installment falls due. This job re-derives and stores
aggregates and state for every non-cancelled credit of one tenant.

Run daily per tenant:
  python -m backend.workers.credit_status_refresh --tenant tenant_demo
"""

import argparse
import os
import sys
from datetime import date
from typing import Optional

import psycopg
from psycopg.rows import dict_row

from backend.app.clock import system_clock
from backend.app.credit_status import refresh_credit
from backend.app.db import set_tenant_context
from backend.app.errors import LedgerError

DB_URL_DEFAULT = os.getenv("APP_DATABASE_URL") or os.getenv("DATABASE_URL") or "postgresql://localhost/retail_ledger"


def run_credit_status_refresh(db_url: str, tenant: str, today: Optional[date] = None, limit: int = 5000) -> dict:
    today = today or system_clock.today()
    summary = {"checked": 0, "changed": 0, "failed": 0, "by_status": {}}
    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            set_tenant_context(conn, tenant)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, estado
                    FROM creditos
                    WHERE estado <> 'cancelado'
                    ORDER BY id
                    LIMIT %s
                    """,
                    (limit,),
                )
                credits = cur.fetchall() or []

        # One short transaction per credit keeps row locks brief while the API is serving payments.
        for c in credits:
            summary["checked"] += 1
            try:
                with conn.transaction():
                    set_tenant_context(conn, tenant)
                    with conn.cursor() as cur:
                        state = refresh_credit(cur, c["id"], today)
            except LedgerError as ex:
                summary["failed"] += 1
                print(f"credit {c['id']}: {ex.detail}", file=sys.stderr)
                continue
            if state["estado"] != c["estado"]:
                summary["changed"] += 1
            summary["by_status"][state["estado"]] = summary["by_status"].get(state["estado"], 0) + 1
    return summary


def main() -> int:
    p = argparse.ArgumentParser()
    p.add_argument("--db", default=DB_URL_DEFAULT)
    p.add_argument("--tenant", default=os.environ.get("TENANT") or "", help="Tenant schema (or env TENANT)")
    p.add_argument("--limit", type=int, default=5000)
    args = p.parse_args()
    if not args.tenant:
        print("credit_status_refresh: --tenant is required", file=sys.stderr)
        return 2
    summary = run_credit_status_refresh(args.db, args.tenant, limit=args.limit)
    print(
        f"checked={summary['checked']} changed={summary['changed']} failed={summary['failed']} "
        f"by_status={summary['by_status']}"
    )
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
