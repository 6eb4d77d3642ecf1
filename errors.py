"""
Error types raised by the storage and order modules.

Each error carries the HTTP status the API layer answers with.
"""
from pymongo.errors import (
    AutoReconnect,
    DuplicateKeyError,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
)


class SoftShopError(Exception):
    status_code = 500

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message


class ValidationError(SoftShopError):
    status_code = 400


class AuthenticationError(SoftShopError):
    status_code = 401


class ForbiddenError(SoftShopError):
    status_code = 403


class NotFoundError(SoftShopError):
    status_code = 404


class ConflictError(SoftShopError):
    status_code = 409


class EmptyCartError(ValidationError):
    def __init__(self, message: str = "Cart is empty"):
        super().__init__(message)


class NotRatableError(ConflictError):
    def __init__(self, message: str = "Order cannot be rated"):
        super().__init__(message)


class NotCancellableError(ConflictError):
    def __init__(self, message: str = "Order cannot be cancelled"):
        super().__init__(message)


class TransientStoreError(SoftShopError):
    """The data store is unreachable or timed out. Safe to retry."""

    status_code = 503
    retry_after = 5


TRANSIENT_STORE_ERRORS = (AutoReconnect, ServerSelectionTimeoutError, NetworkTimeout)


def classify_store_error(exc: PyMongoError) -> SoftShopError:
    if isinstance(exc, TRANSIENT_STORE_ERRORS):
        return TransientStoreError("Data store unavailable, please retry")
    if isinstance(exc, DuplicateKeyError):
        return ConflictError("Duplicate record")
    return SoftShopError("Data store error")
