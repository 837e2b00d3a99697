"""Tests for picaso.core.checkout — payment session creation.

Tests cover:
- CheckoutRequestBuilder line item, metadata and input checks.
- Error categorisation from SDK exceptions, provider type and HTTP status.
- The Checkout Session parameters sent by PaymentSessionClient.
- CheckoutService snapshot handling and the delivery estimate.
"""

from __future__ import annotations

import logging
from datetime import date
from types import SimpleNamespace

import pytest
import stripe

from picaso.core.checkout import (
    CheckoutRequestBuilder,
    CheckoutService,
    PaymentSessionClient,
    ProductConfig,
    estimate_delivery_date,
    format_delivery_date,
    interpret_checkout_error,
    session_params,
)
from picaso.core.errors import CheckoutErrorCategory, CheckoutFailure, ValidationError
from picaso.core.storage import ArtworkSession

SUCCESS = "https://picaso.example/success.html?session_id={CHECKOUT_SESSION_ID}"
CANCEL = "https://picaso.example/review.html"

class TestCheckoutRequestBuilder:
    """Test the session request built for one print."""

    def test_line_item(self, sample_artwork):
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        item = request.line_item
        assert item.name == "Custom AI Art Print (12x12)"
        assert item.unit_amount == 9900
        assert item.currency == "usd"
        assert item.quantity == 1
        assert item.images == [sample_artwork.image_url]

    def test_shipping_and_redirects(self, sample_artwork):
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        assert request.shipping_countries == ["US", "CA"]
        assert request.success_url == SUCCESS
        assert request.cancel_url == CANCEL

    def test_metadata(self, sample_artwork):
        metadata = (
            CheckoutRequestBuilder()
            .build(sample_artwork, success_url=SUCCESS, cancel_url=CANCEL)
            .metadata
        )
        assert metadata["prompt"] == "a red fox in snow"
        assert metadata["imageUrl"] == sample_artwork.image_url
        assert metadata["product"] == "ai-art-print"
        assert metadata["size"] == "12x12"
        assert metadata["material"] == "Ayous wood frame"
        assert metadata["finish"] == "Matte Canvas"
        assert metadata["is_permanent"] == "true"
        assert "generated_at" in metadata

    def test_prompt_truncated(self, sample_artwork):
        artwork = sample_artwork.model_copy(update={"prompt": "word " * 300})
        metadata = (
            CheckoutRequestBuilder()
            .build(artwork, success_url=SUCCESS, cancel_url=CANCEL)
            .metadata
        )
        assert len(metadata["prompt"]) == 500

    def test_temporary_artwork_flagged(self, sample_artwork):
        artwork = sample_artwork.model_copy(update={"is_permanent": False})
        metadata = (
            CheckoutRequestBuilder()
            .build(artwork, success_url=SUCCESS, cancel_url=CANCEL)
            .metadata
        )
        assert metadata["is_permanent"] == "false"

    @pytest.mark.parametrize(
        "update",
        [
            {"prompt": "   "},
            {"image_url": "data:image/png;base64,AAAA"},
            {"image_url": "ftp://files.example/x.png"},
        ],
    )
    def test_rejects_unusable_artwork(self, sample_artwork, update):
        artwork = sample_artwork.model_copy(update=update)
        with pytest.raises(ValidationError):
            CheckoutRequestBuilder().build(artwork, success_url=SUCCESS, cancel_url=CANCEL)

    def test_product_from_config(self, test_config):
        product = ProductConfig.from_config(test_config)
        assert product.name == test_config.product_name
        assert product.unit_amount == test_config.product_price_cents
        assert product.shipping_countries == ["US", "CA"]


class TestInterpretCheckoutError:
    """Test provider failure categorisation."""

    @pytest.mark.parametrize(
        "exception, expected",
        [
            (
                stripe.CardError("Card declined", None, "card_declined", http_status=402),
                CheckoutErrorCategory.CARD,
            ),
            (
                stripe.RateLimitError("Too many requests", http_status=429),
                CheckoutErrorCategory.RATE_LIMITED,
            ),
            (
                stripe.InvalidRequestError("No such price", "line_items"),
                CheckoutErrorCategory.INVALID_REQUEST,
            ),
            (
                stripe.IdempotencyError("Key reused"),
                CheckoutErrorCategory.INVALID_REQUEST,
            ),
            (
                stripe.AuthenticationError("Invalid API key", http_status=401),
                CheckoutErrorCategory.MISCONFIGURATION,
            ),
            (
                stripe.PermissionError("Forbidden", http_status=403),
                CheckoutErrorCategory.MISCONFIGURATION,
            ),
            (
                stripe.APIConnectionError("Connection refused"),
                CheckoutErrorCategory.CONNECTIVITY,
            ),
            (
                stripe.APIError("Internal error", http_status=500),
                CheckoutErrorCategory.PROVIDER_OUTAGE,
            ),
        ],
    )
    def test_sdk_exceptions(self, exception, expected):
        assert interpret_checkout_error(exception=exception).category is expected

    def test_generic_sdk_error_uses_status(self):
        failure = interpret_checkout_error(exception=stripe.StripeError("odd", http_status=402))
        assert failure.category is CheckoutErrorCategory.CARD

    def test_sdk_message_kept_as_detail(self):
        failure = interpret_checkout_error(
            exception=stripe.CardError("Your card was declined.", None, "card_declined")
        )
        assert failure.detail == "Your card was declined."
        assert str(failure) == "Payment failed. Please try again."

    @pytest.mark.parametrize(
        "provider_type, status_code, expected",
        [
            ("card_error", 402, CheckoutErrorCategory.CARD),
            (None, 402, CheckoutErrorCategory.CARD),
            ("rate_limit_error", 429, CheckoutErrorCategory.RATE_LIMITED),
            (None, 429, CheckoutErrorCategory.RATE_LIMITED),
            ("invalid_request_error", 400, CheckoutErrorCategory.INVALID_REQUEST),
            (None, 404, CheckoutErrorCategory.INVALID_REQUEST),
            ("api_error", 500, CheckoutErrorCategory.PROVIDER_OUTAGE),
            (None, 503, CheckoutErrorCategory.PROVIDER_OUTAGE),
            ("authentication_error", 401, CheckoutErrorCategory.MISCONFIGURATION),
            (None, 401, CheckoutErrorCategory.MISCONFIGURATION),
        ],
    )
    def test_categories(self, provider_type, status_code, expected):
        failure = interpret_checkout_error(provider_type=provider_type, status_code=status_code)
        assert failure.category is expected

    def test_other_exception_is_connectivity(self):
        failure = interpret_checkout_error(exception=OSError("network unreachable"))
        assert failure.category is CheckoutErrorCategory.CONNECTIVITY
        assert str(failure) == "Network error. Please try again."

    def test_misconfiguration_alerts_operator(self, caplog):
        with caplog.at_level(logging.CRITICAL, logger="picaso.core.checkout"):
            failure = interpret_checkout_error(provider_type="authentication_error")

        assert failure.operator_alert is True
        assert str(failure) == "Payment system error. Please contact support."
        assert any(record.levelno == logging.CRITICAL for record in caplog.records)

    def test_card_error_no_alert(self, caplog):
        with caplog.at_level(logging.CRITICAL, logger="picaso.core.checkout"):
            interpret_checkout_error(provider_type="card_error")
        assert not any(record.levelno == logging.CRITICAL for record in caplog.records)


class TestSessionParams:
    """Test the Checkout Session create parameters."""

    def test_shape(self, sample_artwork):
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        params = session_params(request)

        assert params["mode"] == "payment"
        assert params["payment_method_types"] == ["card"]
        item = params["line_items"][0]
        assert item["quantity"] == 1
        assert item["price_data"]["unit_amount"] == 9900
        assert item["price_data"]["currency"] == "usd"
        assert item["price_data"]["product_data"]["images"] == [sample_artwork.image_url]
        assert params["shipping_address_collection"] == {"allowed_countries": ["US", "CA"]}
        assert params["billing_address_collection"] == "auto"
        assert params["success_url"] == SUCCESS
        assert params["cancel_url"] == CANCEL
        assert params["metadata"] == request.metadata


class TestPaymentSessionClient:
    """Test session creation and error handling."""

    @pytest.mark.asyncio
    async def test_creates_session(self, stripe_client, sample_artwork):
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        session = await PaymentSessionClient(stripe_client).create_session(request)

        assert session.session_id == "cs_test_123"
        assert session.redirect_url == "https://checkout.example/pay/cs_test_123"
        assert stripe_client.calls == [session_params(request)]

    @pytest.mark.asyncio
    async def test_provider_error(self, stripe_client, sample_artwork):
        stripe_client.error = stripe.CardError(
            "Your card was declined.", None, "card_declined", http_status=402
        )
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        with pytest.raises(CheckoutFailure) as exc_info:
            await PaymentSessionClient(stripe_client).create_session(request)
        assert exc_info.value.category is CheckoutErrorCategory.CARD
        assert exc_info.value.detail == "Your card was declined."

    @pytest.mark.asyncio
    async def test_connection_failure(self, stripe_client, sample_artwork):
        stripe_client.error = stripe.APIConnectionError("Connection refused")
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        with pytest.raises(CheckoutFailure) as exc_info:
            await PaymentSessionClient(stripe_client).create_session(request)
        assert exc_info.value.category is CheckoutErrorCategory.CONNECTIVITY

    @pytest.mark.asyncio
    async def test_missing_secret_key(self, sample_artwork):
        client = PaymentSessionClient.from_settings(secret_key="")
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        with pytest.raises(CheckoutFailure) as exc_info:
            await client.create_session(request)
        assert exc_info.value.category is CheckoutErrorCategory.MISCONFIGURATION

    @pytest.mark.asyncio
    async def test_incomplete_session_response(self, stripe_client, sample_artwork):
        stripe_client.session = SimpleNamespace(id="cs_1", url=None)
        request = CheckoutRequestBuilder().build(
            sample_artwork, success_url=SUCCESS, cancel_url=CANCEL
        )
        with pytest.raises(CheckoutFailure) as exc_info:
            await PaymentSessionClient(stripe_client).create_session(request)
        assert exc_info.value.category is CheckoutErrorCategory.PROVIDER_OUTAGE


class TestEstimateDeliveryDate:
    """Seven business days out, skipping weekends."""

    def test_friday_start(self):
        # Friday 2024-03-01 -> Mon 4 .. Fri 8 (5), Mon 11, Tue 12 (7).
        assert estimate_delivery_date(date(2024, 3, 1)) == date(2024, 3, 12)

    def test_monday_start(self):
        assert estimate_delivery_date(date(2024, 3, 4)) == date(2024, 3, 13)

    def test_saturday_start(self):
        assert estimate_delivery_date(date(2024, 3, 2)) == date(2024, 3, 12)

    def test_custom_business_days(self):
        assert estimate_delivery_date(date(2024, 3, 1), business_days=1) == date(2024, 3, 4)

    def test_never_lands_on_weekend(self):
        for offset in range(14):
            start = date(2024, 3, 1 + offset)
            assert estimate_delivery_date(start).weekday() < 5

    def test_format(self):
        assert format_delivery_date(date(2024, 3, 12)) == "Tuesday, March 12, 2024"


class TestCheckoutService:
    """Test the glue between the snapshot and the payment client."""

    @pytest.fixture
    def service(self, stripe_client) -> CheckoutService:
        return CheckoutService(
            CheckoutRequestBuilder(),
            PaymentSessionClient(stripe_client),
            base_url="https://picaso.example/",
        )

    @pytest.mark.asyncio
    async def test_no_snapshot(self, service, stripe_client, memory_store):
        with pytest.raises(ValidationError):
            await service.start_checkout(ArtworkSession(memory_store))
        assert stripe_client.calls == []

    @pytest.mark.asyncio
    async def test_default_redirects(self, service, stripe_client, memory_store, sample_artwork):
        session = ArtworkSession(memory_store)
        session.save(sample_artwork)

        result = await service.start_checkout(session)

        assert result.session_id == "cs_test_123"
        assert stripe_client.calls[0]["success_url"] == SUCCESS
        assert stripe_client.calls[0]["cancel_url"] == CANCEL

    @pytest.mark.asyncio
    async def test_redirect_overrides(self, service, stripe_client, memory_store, sample_artwork):
        session = ArtworkSession(memory_store)
        session.save(sample_artwork)

        await service.start_checkout(
            session, success_url="https://other.example/ok", cancel_url="https://other.example/no"
        )
        assert stripe_client.calls[0]["success_url"] == "https://other.example/ok"

    def test_complete_clears_snapshot(self, service, memory_store, sample_artwork):
        session = ArtworkSession(memory_store)
        session.save(sample_artwork)
        service.complete_checkout(session, "cs_test_123")
        assert session.load() is None

    def test_complete_returns_delivery_estimate(self, service, memory_store, sample_artwork):
        session = ArtworkSession(memory_store)
        session.save(sample_artwork)
        delivery = service.complete_checkout(session, "cs_test_123", today=date(2024, 3, 1))
        assert delivery == date(2024, 3, 12)

    def test_cancel_keeps_snapshot(self, service, memory_store, sample_artwork):
        session = ArtworkSession(memory_store)
        session.save(sample_artwork)
        service.cancel()
        assert session.load() == sample_artwork
