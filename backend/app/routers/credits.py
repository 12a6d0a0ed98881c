from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import date
from decimal import Decimal
from ..clock import Clock, get_clock
from ..credit_payments import record_credit_payment
from ..credit_queries import list_credit_payments, list_credits, load_credit
from ..credit_status import cancel_credit
from ..db import get_tenant_conn
from ..deps import get_tenant
from ..logs import json_log

router = APIRouter(prefix="/creditos", tags=["creditos"])

CreditStatusFilter = Literal["activo", "pagado", "cancelado", "mora"]


class CreditPaymentIn(BaseModel):
    monto: Decimal = Field(gt=0)
    fecha_pago: Optional[date] = None


@router.get("")
def list_creditos(
    estado: Optional[CreditStatusFilter] = None,
    tenant: str = Depends(get_tenant),
    clock: Clock = Depends(get_clock),
):
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            return list_credits(cur, clock.today(), estado=estado)


@router.get("/{credito_id}")
def get_credito(credito_id: int, tenant: str = Depends(get_tenant), clock: Clock = Depends(get_clock)):
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            return load_credit(cur, credito_id, clock.today())


@router.get("/{credito_id}/pagos")
def list_pagos_credito(credito_id: int, tenant: str = Depends(get_tenant)):
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            return {"pagos": list_credit_payments(cur, credito_id)}


@router.post("/{credito_id}/pagos")
def create_pago_credito(
    credito_id: int,
    data: CreditPaymentIn,
    tenant: str = Depends(get_tenant),
    clock: Clock = Depends(get_clock),
):
    today = clock.today()
    with get_tenant_conn(tenant) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                result = record_credit_payment(cur, credito_id, data.monto, data.fecha_pago, today)
                return {**load_credit(cur, credito_id, today), "pago": result["pago"]}


@router.post("/{credito_id}/cancelar")
def cancel_credito(credito_id: int, tenant: str = Depends(get_tenant), clock: Clock = Depends(get_clock)):
    with get_tenant_conn(tenant) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cancel_credit(cur, credito_id)
                json_log("info", "ledger.credit.cancelled", tenant=tenant, credito_id=credito_id)
                return load_credit(cur, credito_id, clock.today())
