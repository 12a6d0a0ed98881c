from fastapi import HTTPException


class LedgerError(HTTPException):
    """
    Base for every failure the ledger raises on purpose.

    Subclasses fix the HTTP status so handlers can let them propagate unchanged;
    the surrounding transaction is rolled back by the connection context.
    """

    status_code = 400
    retryable = False

    def __init__(self, detail: str):
        super().__init__(status_code=type(self).status_code, detail=detail)


class ValidationError(LedgerError):
    status_code = 400


class InvalidTenant(ValidationError):
    pass


class InvalidCreditTerms(LedgerError):
    status_code = 400


class NotFound(LedgerError):
    status_code = 404


class ProductNotFound(NotFound):
    pass


class InsufficientStock(LedgerError):
    status_code = 409


class TerminalStateViolation(LedgerError):
    status_code = 409


class PaymentExceedsBalance(LedgerError):
    status_code = 409


class CreditCancelled(LedgerError):
    status_code = 409


class ConcurrencyConflict(LedgerError):
    status_code = 409
    retryable = True


class NoInstallmentsConfigured(LedgerError):
    # Data-integrity failure: a credit row without its schedule.
    status_code = 500


class InfrastructureError(LedgerError):
    status_code = 503
