"""Pydantic request and response models for the PICASO API.

These models define the JSON schema for every API endpoint.  FastAPI uses
them for automatic request validation, serialisation, and OpenAPI
documentation generation.

Models
------
GenerateRequest
    Payload for ``POST /api/generate`` and ``POST /api/prompt/compile``.
CheckoutRequest
    Optional redirect overrides for ``POST /api/checkout``.
CheckoutCompleteRequest
    Payload for ``POST /api/checkout/complete``.
GenerateResponse / QuotaResponse
    Response bodies for generation and quota status.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from picaso.core.models import Artwork, ProgressEvent


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Word-count and filter-category checks are done by the core so the
    same rules apply to every caller; this model only checks shape.

    Attributes:
        prompt: Free-text prompt.  At least three words.
        filters: Selected values per filter category (``medium``,
            ``style``, ``tone``, ``realism``).
    """

    prompt: str = Field(
        ...,
        description="Prompt describing the artwork (at least three words).",
    )
    filters: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Selected filter values keyed by category.",
    )


class CheckoutRequest(BaseModel):
    """Request body for the ``POST /api/checkout`` endpoint.

    Both URLs default to pages under ``PICASO_CHECKOUT_BASE_URL``.
    """

    success_url: str | None = None
    cancel_url: str | None = None


class CheckoutCompleteRequest(BaseModel):
    """Request body for the ``POST /api/checkout/complete`` endpoint."""

    session_id: str = Field(..., min_length=1)


class QuotaResponse(BaseModel):
    """Quota status plus a human-readable countdown."""

    allowed: bool
    remaining: int
    reset_at: int
    resets_in: str


class GenerateResponse(BaseModel):
    """Response body for a successful generation.

    Attributes:
        artwork: The generated artwork.
        quota: Quota status after the attempt was recorded.
        progress: Every progress checkpoint reported during the run.
    """

    success: bool = True
    artwork: Artwork
    quota: QuotaResponse
    progress: list[ProgressEvent] = Field(default_factory=list)
