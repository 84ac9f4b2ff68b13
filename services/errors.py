"""
Error taxonomy for the bundle checkout pipeline and its integrations.

Every pipeline failure carries a stable ``reason`` string so callers, logs and
tests can tell failures apart without matching on message text.
"""
from __future__ import annotations

from typing import Any, Optional


class CheckoutError(Exception):
    """Base class for fatal checkout failures."""

    reason: str = "checkout_failed"

    def __init__(self, message: str, *, reason: Optional[str] = None) -> None:
        super().__init__(message)
        if reason:
            self.reason = reason


class ConfigurationError(CheckoutError):
    """Catalog unset or sentinel-valued where a real identifier is required."""

    reason = "configuration"


class CatalogLoadError(ConfigurationError):
    """Catalog document missing or malformed."""

    reason = "catalog_load"


class DependencyTimeoutError(CheckoutError):
    """External bundle service never became ready inside the wait bound."""

    reason = "dependency_timeout"

    def __init__(self, dependency: str, timeout_ms: int) -> None:
        super().__init__(f"{dependency} not available after {timeout_ms}ms.")
        self.dependency = dependency
        self.timeout_ms = timeout_ms


class NoValidSelectionsError(CheckoutError):
    """Input had lines, but none resolved against the catalog."""

    reason = "no_valid_selections"


class TokenAcquisitionError(CheckoutError):
    reason = "token_acquisition"


class CartSubmissionError(CheckoutError):
    """Cart endpoint answered with a non-2xx status, or never answered (``status_code`` None)."""

    reason = "cart_submission"

    def __init__(self, status_code: Optional[int] = None, detail: Any = None) -> None:
        if status_code is None:
            message = "Cart add failed."
        else:
            message = f"Cart add failed (HTTP {status_code})."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class CheckoutBusyError(CheckoutError):
    reason = "busy"


class CheckoutCancelledError(CheckoutError):
    reason = "cancelled"


class ValidationWarning(UserWarning):
    """Non-fatal bundle validation failure; recorded, never raised."""


# --- Integration errors ---

class RechargeServiceError(Exception):
    """Recharge bundle endpoint returned an error or an unusable payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ShopifyAdminError(Exception):
    def __init__(self, status_code: int, path: str) -> None:
        super().__init__(f"Shopify API error {status_code} on {path}")
        self.status_code = status_code
        self.path = path


class CatalogBuildError(Exception):
    pass


class PrefillDecodeError(ValueError):
    pass
