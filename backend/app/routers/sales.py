from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date
from decimal import Decimal
from ..clock import Clock, get_clock
from ..config import settings
from ..db import get_tenant_conn
from ..deps import get_tenant
from ..sales_lifecycle import create_sale, delete_sale, list_sales, load_sale, update_sale
from ..validation import CreditCadence, PaymentMethod, Rating, SaleStatus, SaleType, sales_metadata

router = APIRouter(prefix="/ventas", tags=["ventas"])


class SaleLineIn(BaseModel):
    producto_id: int
    cantidad: int = Field(gt=0)
    precio_unitario: Decimal = Field(ge=0)
    imei: Optional[str] = None  # serial/IMEI for phones and other tracked units


class CreditTermsIn(BaseModel):
    tipo_credito: CreditCadence
    numero_cuotas: int = Field(ge=1, le=360)
    cuota_inicial: Decimal = Field(default=Decimal("0"), ge=0)
    fecha_inicio: Optional[date] = None
    fecha_primera_cuota: Optional[date] = None


class SaleIn(BaseModel):
    cliente_id: int
    medio_pago: PaymentMethod
    tipo_venta: SaleType = "contado"
    lineas: List[SaleLineIn]
    descuento: Decimal = Field(default=Decimal("0"), ge=0)
    fecha: Optional[date] = None
    credito: Optional[CreditTermsIn] = None


class SaleUpdateIn(BaseModel):
    estado: Optional[SaleStatus] = None
    medio_pago: Optional[PaymentMethod] = None
    calificacion: Optional[Rating] = None


@router.get("/metadata")
def get_sales_metadata():
    return sales_metadata()


@router.get("")
def list_ventas(limit: int = 200, tenant: str = Depends(get_tenant)):
    if limit <= 0 or limit > 2000:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 2000")
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            return {"ventas": list_sales(cur, limit)}


@router.get("/{venta_id}")
def get_venta(venta_id: int, tenant: str = Depends(get_tenant)):
    with get_tenant_conn(tenant) as conn:
        with conn.cursor() as cur:
            return load_sale(cur, venta_id)


@router.post("")
def create_venta(data: SaleIn, tenant: str = Depends(get_tenant), clock: Clock = Depends(get_clock)):
    if not data.lineas:
        raise HTTPException(status_code=400, detail="lineas is required")
    payload = data.model_dump()
    with get_tenant_conn(tenant) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return create_sale(cur, payload, clock.today())


@router.put("/{venta_id}")
def update_venta(venta_id: int, data: SaleUpdateIn, tenant: str = Depends(get_tenant)):
    with get_tenant_conn(tenant) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return update_sale(
                    cur,
                    venta_id,
                    estado=data.estado,
                    medio_pago=data.medio_pago,
                    calificacion=data.calificacion,
                    restock_on_return=settings.restock_on_return,
                )


@router.delete("/{venta_id}")
def delete_venta(venta_id: int, tenant: str = Depends(get_tenant)):
    with get_tenant_conn(tenant) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return delete_sale(cur, venta_id, restock_on_return=settings.restock_on_return)
