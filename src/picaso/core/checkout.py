"""Checkout: turn an artwork into a hosted payment session.

The checkout side of PICASO is deliberately thin.  It has three parts:

- :class:`CheckoutRequestBuilder` builds the provider-neutral
  :class:`~picaso.core.models.CheckoutSessionRequest` for one print.
- :class:`PaymentSessionClient` creates a Stripe Checkout Session for that
  request through the ``stripe`` SDK and categorises failures.
- :class:`CheckoutService` glues the artwork snapshot to both, clears the
  snapshot once an order completes and estimates the delivery date.

Error Categories
----------------
The SDK raises one exception class per provider error type; those classes,
the provider's ``error.type`` and the HTTP status are mapped to a
:class:`~picaso.core.errors.CheckoutErrorCategory` by
:func:`interpret_checkout_error`.  A ``MISCONFIGURATION`` (rejected API key)
is a deployment defect, so it is logged at CRITICAL for operators in
addition to the generic message the user sees.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any

import stripe

from picaso.core.errors import (
    CheckoutErrorCategory,
    CheckoutFailure,
    ValidationError,
)
from picaso.core.models import Artwork, CheckoutSession, CheckoutSessionRequest, LineItem
from picaso.core.storage import ArtworkSession

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_LIMIT = 500
DELIVERY_BUSINESS_DAYS = 7

# Checked in order; IdempotencyError and InvalidRequestError share a category.
_STRIPE_ERRORS: tuple[tuple[type[stripe.StripeError], CheckoutErrorCategory], ...] = (
    (stripe.CardError, CheckoutErrorCategory.CARD),
    (stripe.RateLimitError, CheckoutErrorCategory.RATE_LIMITED),
    (stripe.IdempotencyError, CheckoutErrorCategory.INVALID_REQUEST),
    (stripe.InvalidRequestError, CheckoutErrorCategory.INVALID_REQUEST),
    (stripe.AuthenticationError, CheckoutErrorCategory.MISCONFIGURATION),
    (stripe.PermissionError, CheckoutErrorCategory.MISCONFIGURATION),
    (stripe.APIConnectionError, CheckoutErrorCategory.CONNECTIVITY),
    (stripe.APIError, CheckoutErrorCategory.PROVIDER_OUTAGE),
)

_PROVIDER_TYPES: dict[str, CheckoutErrorCategory] = {
    "card_error": CheckoutErrorCategory.CARD,
    "rate_limit_error": CheckoutErrorCategory.RATE_LIMITED,
    "invalid_request_error": CheckoutErrorCategory.INVALID_REQUEST,
    "idempotency_error": CheckoutErrorCategory.INVALID_REQUEST,
    "api_error": CheckoutErrorCategory.PROVIDER_OUTAGE,
    "api_connection_error": CheckoutErrorCategory.CONNECTIVITY,
    "authentication_error": CheckoutErrorCategory.MISCONFIGURATION,
    "permission_error": CheckoutErrorCategory.MISCONFIGURATION,
}


class ProductConfig:
    """Fixed metadata of the print product."""

    def __init__(
        self,
        *,
        name: str = "Custom AI Art Print (12x12)",
        description: str = (
            "High-quality AI-generated artwork printed on premium matte canvas "
            "with Ayous wood frame"
        ),
        unit_amount: int = 9900,
        currency: str = "usd",
        size: str = "12x12",
        material: str = "Ayous wood frame",
        finish: str = "Matte Canvas",
        shipping_countries: list[str] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.unit_amount = unit_amount
        self.currency = currency
        self.size = size
        self.material = material
        self.finish = finish
        self.shipping_countries = shipping_countries or ["US", "CA"]

    @classmethod
    def from_config(cls, cfg) -> "ProductConfig":
        return cls(
            name=cfg.product_name,
            description=cfg.product_description,
            unit_amount=cfg.product_price_cents,
            currency=cfg.product_currency,
            size=cfg.product_size,
            material=cfg.product_material,
            finish=cfg.product_finish,
            shipping_countries=list(cfg.shipping_countries),
        )


class CheckoutRequestBuilder:
    """Builds payment session requests for artwork prints.

    Args:
        product: Fixed product metadata.
        prompt_limit: Maximum prompt length placed in session metadata.
            Provider metadata values are size-limited.
    """

    def __init__(
        self,
        product: ProductConfig | None = None,
        *,
        prompt_limit: int = DEFAULT_PROMPT_LIMIT,
    ) -> None:
        self.product = product or ProductConfig()
        self.prompt_limit = prompt_limit

    def build(self, artwork: Artwork, *, success_url: str, cancel_url: str) -> CheckoutSessionRequest:
        """Build the session request for one print of ``artwork``.

        Raises:
            ValidationError: If the artwork has no prompt or a non-http image URL.
        """
        if not artwork.prompt.strip():
            raise ValidationError("Image URL and prompt are required for checkout")
        if not artwork.image_url.startswith(("http://", "https://")):
            raise ValidationError("Invalid imageUrl format")

        product = self.product
        return CheckoutSessionRequest(
            line_item=LineItem(
                name=product.name,
                description=product.description,
                unit_amount=product.unit_amount,
                currency=product.currency,
                images=[artwork.image_url],
            ),
            success_url=success_url,
            cancel_url=cancel_url,
            shipping_countries=list(product.shipping_countries),
            metadata={
                "prompt": artwork.prompt[: self.prompt_limit],
                "imageUrl": artwork.image_url,
                "product": "ai-art-print",
                "size": product.size,
                "material": product.material,
                "finish": product.finish,
                "is_permanent": "true" if artwork.is_permanent else "false",
                "generated_at": datetime.now(timezone.utc).isoformat(),
            },
        )




def _category_for(provider_type: str | None, status_code: int | None) -> CheckoutErrorCategory:
    if provider_type in _PROVIDER_TYPES:
        return _PROVIDER_TYPES[provider_type]
    if status_code in (401, 403):
        return CheckoutErrorCategory.MISCONFIGURATION
    if status_code == 402:
        return CheckoutErrorCategory.CARD
    if status_code == 429:
        return CheckoutErrorCategory.RATE_LIMITED
    if status_code is not None and 400 <= status_code < 500:
        return CheckoutErrorCategory.INVALID_REQUEST
    return CheckoutErrorCategory.PROVIDER_OUTAGE


def interpret_checkout_error(
    *,
    exception: Exception | None = None,
    provider_type: str | None = None,
    status_code: int | None = None,
    detail: str | None = None,
) -> CheckoutFailure:
    """Map a payment provider failure onto a CheckoutFailure.

    The SDK exception class wins, then the structured ``provider_type``,
    then the HTTP status.  Any other exception is a connectivity problem.

    Args:
        exception: Exception raised while calling the provider.
        provider_type: ``error.type`` from the provider's error body.
        status_code: HTTP status of the provider response.
        detail: Free-text detail for logs.

    Returns:
        The categorised failure.  Misconfiguration is also logged as an
        operator alert.
    """
    category: CheckoutErrorCategory | None = None
    if isinstance(exception, stripe.StripeError):
        for error_type, mapped in _STRIPE_ERRORS:
            if isinstance(exception, error_type):
                category = mapped
                break
        error_body = getattr(exception, "error", None)
        provider_type = provider_type or getattr(error_body, "type", None)
        status_code = status_code or exception.http_status
        detail = detail or exception.user_message
    elif exception is not None:
        category = CheckoutErrorCategory.CONNECTIVITY

    if category is None:
        category = _category_for(provider_type, status_code)

    failure = CheckoutFailure(category, detail or (str(exception) if exception else None))
    if failure.operator_alert:
        logger.critical(
            f"OPERATOR ALERT: payment provider rejected our credentials - check API keys "
            f"({detail or provider_type or status_code})"
        )
    else:
        logger.error(f"Checkout session creation failed ({category.value}): {failure.detail}")
    return failure


def session_params(request: CheckoutSessionRequest) -> dict[str, Any]:
    """Build the Checkout Session create parameters for ``request``."""
    item = request.line_item
    return {
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [
            {
                "quantity": item.quantity,
                "price_data": {
                    "currency": item.currency,
                    "unit_amount": item.unit_amount,
                    "product_data": {
                        "name": item.name,
                        "description": item.description,
                        "images": list(item.images),
                    },
                },
            }
        ],
        "success_url": request.success_url,
        "cancel_url": request.cancel_url,
        "billing_address_collection": "auto",
        "shipping_address_collection": {
            "allowed_countries": list(request.shipping_countries),
        },
        "metadata": dict(request.metadata),
    }


class PaymentSessionClient:
    """Creates hosted checkout sessions with the Stripe SDK.

    Args:
        client: A ``stripe.StripeClient``, or ``None`` when no secret key
            is configured.
    """

    def __init__(self, client: Any | None) -> None:
        self._client = client

    @classmethod
    def from_settings(
        cls,
        *,
        secret_key: str,
        api_base: str | None = None,
    ) -> "PaymentSessionClient":
        """Create a client with a fresh ``stripe.StripeClient``.

        An empty ``secret_key`` yields a client that refuses every session
        with ``MISCONFIGURATION``.
        """
        if not secret_key:
            return cls(None)
        base_addresses = {"api": api_base} if api_base else {}
        return cls(
            stripe.StripeClient(
                secret_key, base_addresses=base_addresses, max_network_retries=0
            )
        )

    async def create_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        """Create a session and return its id and redirect URL.

        Raises:
            CheckoutFailure: Categorised provider or transport failure.
        """
        if self._client is None:
            raise interpret_checkout_error(
                provider_type="authentication_error", detail="payment secret key is not set"
            )

        try:
            session = await asyncio.to_thread(
                self._client.checkout.sessions.create, params=session_params(request)
            )
        except stripe.StripeError as e:
            raise interpret_checkout_error(exception=e) from e

        session_id = getattr(session, "id", None)
        redirect_url = getattr(session, "url", None)
        if not session_id or not redirect_url:
            raise interpret_checkout_error(
                status_code=200, detail="session response missing id or url"
            )

        logger.info(f"Checkout session created: {session_id}")
        return CheckoutSession(session_id=session_id, redirect_url=redirect_url)


def estimate_delivery_date(today: date, business_days: int = DELIVERY_BUSINESS_DAYS) -> date:
    """Return the date ``business_days`` working days after ``today``.

    Saturdays and Sundays are skipped; ``today`` itself never counts.
    """
    current = today
    counted = 0
    while counted < business_days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            counted += 1
    return current


def format_delivery_date(day: date) -> str:
    """Format a delivery date as e.g. ``"Tuesday, March 12, 2024"``."""
    return f"{day:%A, %B} {day.day}, {day.year}"


class CheckoutService:
    """Runs checkout for the artwork held in a profile's session.

    Args:
        builder: Session request builder.
        client: Payment session client.
        base_url: Site URL the provider redirects back to.
    """

    def __init__(
        self,
        builder: CheckoutRequestBuilder,
        client: PaymentSessionClient,
        *,
        base_url: str,
    ) -> None:
        self._builder = builder
        self._client = client
        self.base_url = base_url.rstrip("/")

    @property
    def success_url(self) -> str:
        # {CHECKOUT_SESSION_ID} is substituted by the provider.
        return f"{self.base_url}/success.html?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def cancel_url(self) -> str:
        return f"{self.base_url}/review.html"

    async def start_checkout(
        self,
        session: ArtworkSession,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutSession:
        """Create a payment session for the current artwork snapshot.

        The redirect URLs default to the success and review pages under
        ``base_url``.

        Raises:
            ValidationError: No artwork snapshot, or the snapshot is unusable.
            CheckoutFailure: The payment provider call failed.
        """
        artwork = session.load()
        if artwork is None:
            raise ValidationError("No artwork to check out. Please generate one first.")

        request = self._builder.build(
            artwork,
            success_url=success_url or self.success_url,
            cancel_url=cancel_url or self.cancel_url,
        )
        return await self._client.create_session(request)

    def complete_checkout(
        self, session: ArtworkSession, session_id: str, today: date | None = None
    ) -> date:
        """Clear the artwork snapshot after a successful order.

        Returns:
            The estimated delivery date of the print.
        """
        logger.info(f"Processing successful checkout: {session_id}")
        session.clear()
        return estimate_delivery_date(today or date.today())

    def cancel(self) -> None:
        # The user is back on the review page with the snapshot intact.
        logger.info("Checkout was cancelled by user")
