from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from .errors import ValidationError

MONEY_Q = Decimal("0.01")
# Balances at or below one cent are treated as settled.
EPS = Decimal("0.01")
ZERO = Decimal("0")


def d(v) -> Decimal:
    if isinstance(v, Decimal):
        return v
    try:
        return Decimal(str(v if v is not None else 0))
    except InvalidOperation:
        raise ValidationError(f"invalid amount: {v!r}")


def q2(v) -> Decimal:
    return d(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)
