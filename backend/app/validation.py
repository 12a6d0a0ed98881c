from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_title_str(v):
    if v is None:
        return v
    return str(v).strip().capitalize()


# Canonical codes mirror the CHECK constraints in `backend/db/tenant_schema.sql`.
SALE_TYPES = ("contado", "credito")
SALE_STATUSES = ("pendiente", "confirmada", "enviada", "entregada", "cancelada", "devuelta")
CREDIT_CADENCES = ("diario", "semanal", "quincenal", "mensual")
CREDIT_STATUSES = ("activo", "pagado", "cancelado", "mora")
INSTALLMENT_STATUSES = ("pendiente", "pagada", "vencida")
RATINGS = ("Pendiente", "Positivo", "Negativo", "Hurto")
KNOWN_PAYMENT_METHODS = (
    "efectivo",
    "transferencia",
    "tarjeta_credito",
    "tarjeta_debito",
    "consignacion",
    "bancolombia",
    "nequi",
    "daviplata",
    "codigo_qr",
    "contraentrega",
)

TERMINAL_SALE_STATUS = "devuelta"

SaleType = Annotated[Literal["contado", "credito"], BeforeValidator(_to_lower_str)]
SaleStatus = Annotated[
    Literal["pendiente", "confirmada", "enviada", "entregada", "cancelada", "devuelta"],
    BeforeValidator(_to_lower_str),
]
CreditCadence = Annotated[Literal["diario", "semanal", "quincenal", "mensual"], BeforeValidator(_to_lower_str)]
Rating = Annotated[Literal["Pendiente", "Positivo", "Negativo", "Hurto"], BeforeValidator(_to_title_str)]

# Payment methods are free-form per tenant (wallets, banks); the known list is only a suggestion.
# Keep a tight, safe character set so methods are stable identifiers.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]


def sales_metadata() -> dict:
    return {
        "tipos_venta": list(SALE_TYPES),
        "medios_pago": list(KNOWN_PAYMENT_METHODS),
        "estados": list(SALE_STATUSES),
        "tipos_credito": list(CREDIT_CADENCES),
        "estados_credito": list(CREDIT_STATUSES),
        "estados_cuota_credito": list(INSTALLMENT_STATUSES),
        "calificaciones_credito": list(RATINGS),
    }
