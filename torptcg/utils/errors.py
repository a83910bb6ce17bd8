from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base error for storefront operations. ``status`` is the HTTP status handlers answer with."""

    status = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        payload.update(self.details)
        return payload


class ValidationError(StoreError):
    status = 400


class NotFoundError(StoreError):
    status = 404


class ConflictError(StoreError):
    status = 409


class InsufficientStockError(ConflictError):
    pass


class ConfigurationError(StoreError):
    status = 500


class PaymentError(StoreError):
    status = 502


class BinStoreError(StoreError):
    """Raised when the document store rejects or fails a request."""

    status = 502

    def __init__(self, message: str, *, bin_id: str = "", upstream_status: Optional[int] = None):
        super().__init__(message)
        self.bin_id = bin_id
        self.upstream_status = upstream_status

    @property
    def is_not_found(self) -> bool:
        return self.upstream_status == 404

    @property
    def is_unauthorized(self) -> bool:
        return self.upstream_status in (401, 403)
