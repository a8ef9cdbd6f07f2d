class BodegaError(Exception):
    """Base error for the inventory sync core."""


class LocalStoreError(BodegaError):
    """Durable store could not be read or written. Not retried."""


class RemoteUnavailableError(BodegaError):
    """Remote inventory service unreachable or answered with a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(RemoteUnavailableError):
    """Remote answered, but the body is not the JSON we expect."""


class CacheInstallError(BodegaError):
    """At least one manifest asset could not be fetched; nothing was promoted."""

    def __init__(self, message: str, failed: list[str] | None = None):
        super().__init__(message)
        self.failed = failed or []


class InvalidTransactionError(BodegaError):
    pass


class InsufficientStockError(InvalidTransactionError):
    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(f"Insufficient stock for {product_id}: requested {requested}, have {available}")
        self.product_id = product_id
        self.requested = requested
        self.available = available
