"""Error taxonomy for the PICASO generation and checkout flows.

Every failure that crosses the pipeline boundary is one of the exceptions
defined here.  Provider-specific exceptions (httpx, boto3, payment API error
bodies) are converted by the adapter that observed them and chained with
``raise ... from exc`` so the original stays available for logging without
leaking into caller decisions.

Hierarchy
---------
::

    PicasoError
    ├── ValidationError            bad input, rejected before any network call
    ├── QuotaExceeded              carries reset_at; no network call made
    ├── GenerationFailure          carries a GenerationErrorCategory
    │   ├── ContentPolicyViolation
    │   ├── RateLimited
    │   ├── TransientNetwork
    │   └── UpstreamError
    ├── PersistenceFailure         non-recoverable store error, aborts the run
    ├── StoreError                 raised by ObjectStore implementations
    │   ├── StoreUnavailable       recoverable
    │   ├── StoreQuotaExceeded     non-recoverable
    │   └── StoreUnauthorized      non-recoverable
    ├── TransferError              recoverable fetch/decode failure
    ├── KeyValueStoreError         backing store unreadable or unwritable
    └── CheckoutFailure            carries a CheckoutErrorCategory
"""

from __future__ import annotations

from enum import Enum


class PicasoError(Exception):
    """Base class for all PICASO errors."""


class ValidationError(PicasoError):
    """User-friendly validation error.

    The message is intended to be displayed directly to the user.
    """


class QuotaExceeded(PicasoError):
    """The profile has used every generation in the current window."""

    def __init__(self, reset_at: int, message: str | None = None) -> None:
        self.reset_at = reset_at
        super().__init__(message or "Generation limit reached. Please try again later.")


# ---------------------------------------------------------------------------
# Generation failures.
# ---------------------------------------------------------------------------


class GenerationErrorCategory(str, Enum):
    """Structured category reported by the generation client."""

    CONTENT_POLICY = "content_policy"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    UPSTREAM = "upstream"


class GenerationFailure(PicasoError):
    """The image generation service did not produce an image."""

    category: GenerationErrorCategory = GenerationErrorCategory.UPSTREAM
    retryable: bool = False
    user_message: str = "Failed to generate image. Please try again."

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(self.user_message)


class ContentPolicyViolation(GenerationFailure):
    category = GenerationErrorCategory.CONTENT_POLICY
    retryable = False
    user_message = "This prompt violates content policy. Please try a different prompt."


class RateLimited(GenerationFailure):
    category = GenerationErrorCategory.RATE_LIMITED
    retryable = True
    user_message = "Service busy. Please try again in a moment."


class TransientNetwork(GenerationFailure):
    category = GenerationErrorCategory.TRANSIENT_NETWORK
    retryable = True
    user_message = "Failed to generate image. Please check your connection and try again."


class UpstreamError(GenerationFailure):
    category = GenerationErrorCategory.UPSTREAM
    retryable = False
    user_message = "Failed to generate image. Please try again."


# ---------------------------------------------------------------------------
# Persistence failures.
# ---------------------------------------------------------------------------


class StoreError(PicasoError):
    """Durable object store write failed."""

    recoverable: bool = True


class StoreUnavailable(StoreError):
    recoverable = True


class StoreQuotaExceeded(StoreError):
    recoverable = False


class StoreUnauthorized(StoreError):
    recoverable = False


class TransferError(PicasoError):
    """Fetching or decoding the source image failed (recoverable)."""


class PersistenceFailure(PicasoError):
    """A non-recoverable error aborted the persistence chain."""

    def __init__(self, strategy: str, reason: str) -> None:
        self.strategy = strategy
        self.reason = reason
        super().__init__(f"Could not save your artwork ({strategy}): {reason}")


class KeyValueStoreError(PicasoError):
    """The profile key-value store could not be read or written."""


# ---------------------------------------------------------------------------
# Checkout failures.
# ---------------------------------------------------------------------------


class CheckoutErrorCategory(str, Enum):
    """Structured category reported by the payment session client."""

    CARD = "card"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    PROVIDER_OUTAGE = "provider_outage"
    CONNECTIVITY = "connectivity"
    MISCONFIGURATION = "misconfiguration"


CHECKOUT_MESSAGES: dict[CheckoutErrorCategory, str] = {
    CheckoutErrorCategory.CARD: "Payment failed. Please try again.",
    CheckoutErrorCategory.RATE_LIMITED: "Too many requests. Please try again shortly.",
    CheckoutErrorCategory.INVALID_REQUEST: "Invalid request. Please check your data.",
    CheckoutErrorCategory.PROVIDER_OUTAGE: "Payment service unavailable. Please try again.",
    CheckoutErrorCategory.CONNECTIVITY: "Network error. Please try again.",
    CheckoutErrorCategory.MISCONFIGURATION: "Payment system error. Please contact support.",
}


class CheckoutFailure(PicasoError):
    """Creating a payment session failed."""

    def __init__(self, category: CheckoutErrorCategory, detail: str | None = None) -> None:
        self.category = category
        self.detail = detail
        self.user_message = CHECKOUT_MESSAGES[category]
        super().__init__(self.user_message)

    @property
    def operator_alert(self) -> bool:
        """True when the failure points at a deployment defect."""
        return self.category is CheckoutErrorCategory.MISCONFIGURATION
