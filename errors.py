"""
Error taxonomy for the storefront API.

Every error carries the HTTP status and machine-readable code it maps to at the
handler boundary. Extra keyword arguments end up in the JSON error body.
"""
from typing import Any, Dict, Optional


class ShopError(Exception):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"detail": self.message, "code": self.code}
        body.update(self.details)
        return body


class InvalidRequest(ShopError):
    status_code = 400
    code = "invalid_request"
    default_message = "Invalid request"


class Unauthenticated(ShopError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Not authenticated"


class InvalidCredential(Unauthenticated):
    code = "invalid_credential"
    default_message = "Invalid token"


class IdentityNotFound(Unauthenticated):
    code = "identity_not_found"
    default_message = "User not found"


class Forbidden(ShopError):
    status_code = 403
    code = "forbidden"
    default_message = "Not allowed"


class NotFound(ShopError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class VariantNotFound(NotFound):
    code = "variant_not_found"

    def __init__(self, variant_id: int):
        super().__init__(f"Variant {variant_id} not found", variant_id=variant_id)


class Conflict(ShopError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class InsufficientStock(Conflict):
    code = "insufficient_stock"

    def __init__(self, variant_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for variant {variant_id}",
            variant_id=variant_id,
            requested=requested,
            available=available,
        )


class StoreUnavailable(ShopError):
    code = "store_unavailable"
    default_message = "Store unavailable"
