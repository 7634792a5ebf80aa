"""
Domain errors for the POS backend.

Every error raised by the stores, the cart and the checkout workflow derives
from POSError so the HTTP layer can map them in one place.
"""


class POSError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(POSError):
    """Input rejected before anything was persisted."""


class InsufficientStockError(POSError):
    status_code = 409

    def __init__(self, name: str):
        super().__init__(f"Insufficient stock for {name}")
        self.name = name


class DefaultEntityProtectedError(POSError):
    status_code = 409


class NotFoundError(POSError):
    status_code = 404


class AccessDeniedError(POSError):
    status_code = 403


class PersistenceError(POSError):
    """Wraps a backend failure. The original exception is chained as __cause__."""

    status_code = 503
