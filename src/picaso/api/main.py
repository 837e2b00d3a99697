"""PICASO - FastAPI Application.

This module is the single entry point for the web application.  It defines
the application factory, all REST API routes, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
- **Configuration** comes from :data:`~picaso.core.config.config` (or the
  instance passed to :func:`create_app`).
- **Collaborators** (httpx client, durable object store, generation client,
  persistence chain, checkout service) are created once in the lifespan
  handler and kept on ``app.state``.
- **Profiles** stand in for the browser's own storage.  Each browser gets a
  ``picaso_profile`` cookie; the quota window and artwork snapshot for that
  profile live in ``<data_dir>/profiles/<profile>.json``.
- **Stored images** are served by FastAPI's ``StaticFiles`` at ``/static``
  when the local object store backend is used.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/config``               Filters, quota policy, product
GET       ``/api/quota``                Quota status for this profile
POST      ``/api/prompt/compile``       Preview the composed prompt
POST      ``/api/generate``             Run the generation pipeline
GET       ``/api/artwork``              Current artwork snapshot
DELETE    ``/api/artwork``              Discard the snapshot
POST      ``/api/checkout``             Create a payment session
POST      ``/api/checkout/complete``    Clear the snapshot after payment
POST      ``/api/checkout/cancel``      Return from an abandoned checkout
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    picaso

Direct invocation::

    python -m picaso.api.main
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from picaso import __version__
from picaso.api.models import (
    CheckoutCompleteRequest,
    CheckoutRequest,
    GenerateRequest,
    GenerateResponse,
    QuotaResponse,
)
from picaso.core.checkout import (
    CheckoutRequestBuilder,
    CheckoutService,
    PaymentSessionClient,
    ProductConfig,
    format_delivery_date,
)
from picaso.core.config import PicasoConfig, config
from picaso.core.errors import (
    CheckoutErrorCategory,
    CheckoutFailure,
    ContentPolicyViolation,
    PersistenceFailure,
    PicasoError,
    QuotaExceeded,
    RateLimited,
    TransientNetwork,
    UpstreamError,
    ValidationError,
)
from picaso.core.generation import GenerationClient
from picaso.core.models import FILTER_ORDER, MIN_PROMPT_WORDS, ProgressEvent, QuotaStatus
from picaso.core.object_store import LocalObjectStore, ObjectStore, S3ObjectStore
from picaso.core.persistence import PersistenceChain
from picaso.core.pipeline import GenerationPipeline
from picaso.core.prompt_builder import FILTER_LABELS, build_request, compose_prompt
from picaso.core.quota import QuotaTracker
from picaso.core.storage import ArtworkSession, JsonFileKeyValueStore

logger = logging.getLogger(__name__)

PROFILE_COOKIE = "picaso_profile"
PROFILE_COOKIE_MAX_AGE = 365 * 24 * 60 * 60
_PROFILE_ID = re.compile(r"[0-9a-f]{32}")

# Order matters: subclasses before their bases.
_ERROR_STATUS: list[tuple[type[PicasoError], int]] = [
    (ValidationError, 400),
    (ContentPolicyViolation, 400),
    (RateLimited, 429),
    (TransientNetwork, 503),
    (UpstreamError, 502),
    (PersistenceFailure, 502),
]

_CHECKOUT_STATUS: dict[CheckoutErrorCategory, int] = {
    CheckoutErrorCategory.CARD: 400,
    CheckoutErrorCategory.INVALID_REQUEST: 400,
    CheckoutErrorCategory.RATE_LIMITED: 429,
}


# ---------------------------------------------------------------------------
# Collaborator construction.
# ---------------------------------------------------------------------------


def build_object_store(cfg: PicasoConfig) -> ObjectStore:
    """Create the durable object store selected by ``store_backend``."""
    if cfg.store_backend == "s3":
        logger.info(f"Using S3 object store (bucket={cfg.s3_bucket})")
        return S3ObjectStore.from_settings(
            bucket=cfg.s3_bucket,
            public_base_url=cfg.store_public_url,
            endpoint_url=cfg.s3_endpoint_url,
            access_key_id=cfg.s3_access_key_id,
            secret_access_key=cfg.s3_secret_access_key,
        )
    logger.info(f"Using local object store at {cfg.store_dir}")
    return LocalObjectStore(cfg.store_dir, cfg.store_public_url)


def to_http_exception(exc: PicasoError) -> HTTPException:
    """Translate a core error into the HTTP status the frontend expects."""
    if isinstance(exc, QuotaExceeded):
        return HTTPException(
            status_code=429,
            detail={"message": str(exc), "reset_at": exc.reset_at},
        )
    if isinstance(exc, CheckoutFailure):
        return HTTPException(
            status_code=_CHECKOUT_STATUS.get(exc.category, 500),
            detail=exc.user_message,
        )
    if isinstance(exc, PersistenceFailure):
        # The reason names the backend failure; keep it in the logs.
        logger.error(str(exc))
        return HTTPException(
            status_code=502,
            detail="Could not save your artwork. Please try again.",
        )
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))

    logger.error(f"Unhandled application error: {exc}", exc_info=exc)
    return HTTPException(status_code=500, detail="Something went wrong. Please try again.")


# ---------------------------------------------------------------------------
# Per-profile dependencies.
# ---------------------------------------------------------------------------


def get_profile_id(request: Request, response: Response) -> str:
    """Return this browser's profile id, issuing a new one when needed.

    The id becomes a filename, so anything that is not 32 lowercase hex
    characters is replaced rather than used.
    """
    profile_id = request.cookies.get(PROFILE_COOKIE)
    if profile_id is None or not _PROFILE_ID.fullmatch(profile_id):
        profile_id = uuid.uuid4().hex
        response.set_cookie(
            PROFILE_COOKIE,
            profile_id,
            max_age=PROFILE_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
        )
    return profile_id


def get_profile_store(
    request: Request, profile_id: str = Depends(get_profile_id)
) -> JsonFileKeyValueStore:
    cfg: PicasoConfig = request.app.state.config
    return JsonFileKeyValueStore(cfg.profiles_dir / f"{profile_id}.json")


def _quota_tracker(cfg: PicasoConfig, store: JsonFileKeyValueStore) -> QuotaTracker:
    return QuotaTracker(
        store,
        max_attempts=cfg.max_attempts,
        window_duration_ms=cfg.window_duration_ms,
    )


def _quota_response(tracker: QuotaTracker, status: QuotaStatus) -> QuotaResponse:
    return QuotaResponse(
        allowed=status.allowed,
        remaining=status.remaining,
        reset_at=status.reset_at,
        resets_in=tracker.time_until_reset(),
    )


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/api/config")
async def get_config(request: Request) -> dict:
    """Return the settings the frontend needs to render its controls.

    Returns:
        Dictionary with ``version``, ``filters`` (category and label in
        rendering order), ``min_prompt_words``, ``quota`` policy and the
        print ``product``.
    """
    cfg: PicasoConfig = request.app.state.config
    return {
        "version": __version__,
        "filters": [
            {"category": category.value, "label": FILTER_LABELS[category]}
            for category in FILTER_ORDER
        ],
        "min_prompt_words": MIN_PROMPT_WORDS,
        "quota": {
            "max_attempts": cfg.max_attempts,
            "window_hours": cfg.window_hours,
        },
        "product": {
            "name": cfg.product_name,
            "price_cents": cfg.product_price_cents,
            "currency": cfg.product_currency,
            "size": cfg.product_size,
        },
    }


@router.get("/api/quota", response_model=QuotaResponse)
async def get_quota(
    request: Request, store: JsonFileKeyValueStore = Depends(get_profile_store)
) -> QuotaResponse:
    """Return the quota status for the calling profile."""
    tracker = _quota_tracker(request.app.state.config, store)
    return _quota_response(tracker, tracker.check_status())


@router.post("/api/prompt/compile")
async def compile_prompt(req: GenerateRequest) -> dict:
    """Preview the composed prompt without generating an image.

    Raises:
        HTTPException: 400 if the prompt or filters are invalid.
    """
    try:
        request = build_request(req.prompt, req.filters)
    except ValidationError as e:
        raise to_http_exception(e) from e
    return {"compiled_prompt": compose_prompt(request)}


@router.post("/api/generate", response_model=GenerateResponse)
async def generate_artwork(
    req: GenerateRequest,
    request: Request,
    profile_id: str = Depends(get_profile_id),
    store: JsonFileKeyValueStore = Depends(get_profile_store),
) -> GenerateResponse:
    """Generate one artwork for the calling profile.

    This endpoint:

    1. Refuses to start while another run for the profile is in flight.
    2. Runs the generation pipeline (validate, compose, quota check,
       generate, persist, record).
    3. Saves the artwork snapshot for the review and checkout steps.

    Returns:
        The artwork, the updated quota and every progress checkpoint.

    Raises:
        HTTPException: 400 invalid prompt or content policy, 409 run in
            progress, 429 quota or upstream rate limit, 502 upstream or
            storage failure, 503 network failure.
    """
    state = request.app.state
    cfg: PicasoConfig = state.config

    # An entry exists only while a run for the profile holds it.
    lock = state.profile_locks.setdefault(profile_id, asyncio.Lock())
    if lock.locked():
        raise HTTPException(status_code=409, detail="A generation is already in progress.")

    tracker = _quota_tracker(cfg, store)
    pipeline = GenerationPipeline(state.generation_client, state.chain, tracker)
    events: list[ProgressEvent] = []

    def on_progress(percentage: int, message: str) -> None:
        events.append(ProgressEvent(percentage=percentage, message=message))

    try:
        async with lock:
            result = await pipeline.run(req.prompt, req.filters, on_progress=on_progress)
    except PicasoError as e:
        raise to_http_exception(e) from e
    finally:
        if not lock.locked() and state.profile_locks.get(profile_id) is lock:
            del state.profile_locks[profile_id]

    try:
        ArtworkSession(store).save(result.artwork)
    except PicasoError as e:
        # The caller still gets the artwork in the response body.
        logger.error(f"Could not save artwork snapshot: {e}")

    return GenerateResponse(
        artwork=result.artwork,
        quota=_quota_response(tracker, result.quota),
        progress=events,
    )


@router.get("/api/artwork")
async def get_artwork(store: JsonFileKeyValueStore = Depends(get_profile_store)) -> dict:
    """Return the current artwork snapshot.

    Raises:
        HTTPException: 404 if there is no usable snapshot.
    """
    artwork = ArtworkSession(store).load()
    if artwork is None:
        raise HTTPException(status_code=404, detail="No artwork found")
    return artwork.model_dump()


@router.delete("/api/artwork")
async def discard_artwork(store: JsonFileKeyValueStore = Depends(get_profile_store)) -> dict:
    """Discard the artwork snapshot (the "back" action on the review page)."""
    try:
        ArtworkSession(store).clear()
    except PicasoError as e:
        raise to_http_exception(e) from e
    return {"success": True}


@router.post("/api/checkout")
async def start_checkout(
    request: Request,
    req: CheckoutRequest | None = None,
    store: JsonFileKeyValueStore = Depends(get_profile_store),
) -> dict:
    """Create a payment session for the current artwork.

    Returns:
        Dictionary with ``session_id`` and the provider ``url`` to redirect
        the browser to.

    Raises:
        HTTPException: 400 no artwork or invalid request, 429 provider rate
            limit, 500 other payment failures.
    """
    checkout: CheckoutService = request.app.state.checkout
    overrides = req or CheckoutRequest()
    try:
        session = await checkout.start_checkout(
            ArtworkSession(store),
            success_url=overrides.success_url,
            cancel_url=overrides.cancel_url,
        )
    except PicasoError as e:
        raise to_http_exception(e) from e
    return {"session_id": session.session_id, "url": session.redirect_url}


@router.post("/api/checkout/complete")
async def complete_checkout(
    req: CheckoutCompleteRequest,
    request: Request,
    store: JsonFileKeyValueStore = Depends(get_profile_store),
) -> dict:
    """Clear the artwork snapshot after the provider reports success.

    Returns:
        Dictionary with the ``session_id`` and the estimated delivery date,
        both as an ISO date and as display text.
    """
    checkout: CheckoutService = request.app.state.checkout
    try:
        delivery = checkout.complete_checkout(ArtworkSession(store), req.session_id)
    except PicasoError as e:
        raise to_http_exception(e) from e
    return {
        "success": True,
        "session_id": req.session_id,
        "estimated_delivery": delivery.isoformat(),
        "estimated_delivery_text": format_delivery_date(delivery),
    }


@router.post("/api/checkout/cancel")
async def cancel_checkout(request: Request) -> dict:
    """Acknowledge an abandoned checkout; the snapshot is kept."""
    request.app.state.checkout.cancel()
    return {"success": True}


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    cfg: PicasoConfig = config,
    *,
    http_client: httpx.AsyncClient | None = None,
    object_store: ObjectStore | None = None,
    payment_client: PaymentSessionClient | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Configuration to run with.
        http_client: Shared client for outbound calls.  Created (and closed)
            by the lifespan handler when omitted.
        object_store: Durable object store.  Built from ``cfg`` when omitted.
        payment_client: Payment session client.  Built from ``cfg`` when
            omitted.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Create the outbound collaborators on startup and close them on shutdown."""
        # --- Startup -------------------------------------------------------
        client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.generation_timeout_seconds)
        )
        store = object_store or build_object_store(cfg)

        app.state.generation_client = GenerationClient(
            client,
            api_url=cfg.generation_api_url,
            api_key=cfg.generation_api_key,
            model=cfg.generation_model,
            image_size=cfg.generation_image_size,
            timeout_seconds=cfg.generation_timeout_seconds,
        )
        app.state.chain = PersistenceChain.default(
            client,
            store,
            relay_url_template=cfg.relay_url_template,
            strategy_timeout_seconds=cfg.persistence_timeout_seconds,
            pacing_seconds=cfg.progress_pacing_seconds,
        )
        app.state.checkout = CheckoutService(
            CheckoutRequestBuilder(
                ProductConfig.from_config(cfg), prompt_limit=cfg.checkout_prompt_limit
            ),
            payment_client
            or PaymentSessionClient.from_settings(
                secret_key=cfg.payment_secret_key, api_base=cfg.payment_api_base
            ),
            base_url=cfg.checkout_base_url,
        )
        if not cfg.generation_api_key:
            logger.warning("PICASO_GENERATION_API_KEY is not set; generation calls will fail")
        logger.info("PICASO services initialised.")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        if http_client is None:
            await client.aclose()
        logger.info("PICASO services shut down.")

    app = FastAPI(
        title="PICASO",
        description="AI art generation with durable storage and print checkout.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = cfg
    app.state.profile_locks = {}

    # The frontend is served from its own origin during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if cfg.store_backend == "local":
        app.mount("/static", StaticFiles(directory=str(cfg.store_dir)), name="static")

    app.include_router(router)
    return app


app = create_app(config)


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~picaso.core.config.config` (which
    loads from ``PICASO_SERVER_HOST`` and ``PICASO_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``picaso`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "picaso.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
