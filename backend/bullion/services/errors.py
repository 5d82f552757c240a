"""Checkout error taxonomy.

Each error carries the HTTP status it maps to; the handlers registered in
``bullion.main`` render them as ``{"success": false, "error": ...}``.
"""
from __future__ import annotations

from fastapi import status


class CheckoutError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "checkout_error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class Unauthenticated(CheckoutError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "unauthenticated"


class InvalidInput(CheckoutError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_input"


class EmptyCart(InvalidInput):
    code = "empty_cart"


class NotFound(CheckoutError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class UpstreamUnavailable(CheckoutError):
    """Supplier, payment or identity provider failed or timed out."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "upstream_unavailable"


class SupplierConfigurationError(UpstreamUnavailable):
    """A required named payment method or shipping instruction is missing upstream."""

    code = "supplier_configuration"


class InvalidSignature(CheckoutError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_signature"
