"""Client for the external image generation service.

:class:`GenerationClient` sends one composed prompt to an OpenAI-images
compatible endpoint and returns the URL of the generated image.  It makes a
single attempt: retrying is a caller decision.

Failure Taxonomy
----------------
Every failure is raised as a :class:`~picaso.core.errors.GenerationFailure`
subclass so the pipeline never inspects provider error bodies:

===========================  ===========================================
Exception                    Raised when
===========================  ===========================================
``ContentPolicyViolation``   upstream moderation rejected the prompt
``RateLimited``              upstream answered 429
``TransientNetwork``         connect/read timeout, transport failure, or
                             the overall time bound elapsed
``UpstreamError``            any other non-2xx, or a malformed body
===========================  ===========================================

Response Shapes
---------------
Two result shapes are normalised to a plain URL string:

- OpenAI style: ``{"data": [{"url": "https://..."}]}``
- Replicate style: ``{"output": ["https://..."]}``
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from picaso.core.errors import (
    ContentPolicyViolation,
    GenerationFailure,
    RateLimited,
    TransientNetwork,
    UpstreamError,
)

logger = logging.getLogger(__name__)

_CONTENT_POLICY_CODES = {"content_policy_violation", "content_policy", "moderation_blocked"}


class GenerationClient:
    """Calls the image generation service.

    Args:
        http_client: Shared ``httpx.AsyncClient``.
        api_url: Base URL of the API (``/images/generations`` is appended).
        api_key: Bearer token.
        model: Model name sent with the request.
        image_size: Requested image size.
        timeout_seconds: Upper bound for the whole call.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_url: str,
        api_key: str = "",
        model: str = "dall-e-3",
        image_size: str = "1024x1024",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._http = http_client
        self.endpoint = api_url.rstrip("/") + "/images/generations"
        self._api_key = api_key
        self.model = model
        self.image_size = image_size
        self.timeout_seconds = timeout_seconds

    async def generate(self, composed_prompt: str) -> str:
        """Generate one image and return its (possibly short-lived) URL.

        Args:
            composed_prompt: Full prompt from the composer.

        Returns:
            URL of the generated image.

        Raises:
            GenerationFailure: One of the four taxonomy subclasses.
        """
        logger.info(f"Requesting image from {self.endpoint} (model={self.model})")
        try:
            response = await asyncio.wait_for(
                self._post(composed_prompt), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise TransientNetwork(
                f"generation exceeded {self.timeout_seconds}s"
            ) from e
        except httpx.TimeoutException as e:
            raise TransientNetwork(f"timeout: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetwork(f"transport error: {e}") from e

        if response.is_success:
            image_url = _extract_image_url(_json_or_none(response))
            if not image_url:
                raise UpstreamError("response did not contain an image URL")
            logger.info("Image generated successfully")
            return image_url

        raise classify_error_response(response)

    async def _post(self, composed_prompt: str) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        payload = {
            "model": self.model,
            "prompt": composed_prompt,
            "n": 1,
            "size": self.image_size,
        }
        return await self._http.post(self.endpoint, json=payload, headers=headers)


def classify_error_response(response: httpx.Response) -> GenerationFailure:
    """Map a non-2xx generation response onto the failure taxonomy.

    A machine-readable ``category`` or ``code`` in the error body takes
    precedence; otherwise the HTTP status decides.
    """
    body = _json_or_none(response)
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        error = {}

    code = str(error.get("category") or error.get("code") or "").lower()
    detail = f"HTTP {response.status_code}: {error.get('message') or code or 'no detail'}"
    logger.error(f"Image generation failed: {detail}")

    if code in _CONTENT_POLICY_CODES:
        return ContentPolicyViolation(detail)
    if response.status_code == 429 or code in {"rate_limit_exceeded", "rate_limited"}:
        return RateLimited(detail)
    return UpstreamError(detail)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _extract_image_url(body: Any) -> str | None:
    """Pull the first image URL out of either supported result shape."""
    if not isinstance(body, dict):
        return None

    data = body.get("data")
    if isinstance(data, list) and data and isinstance(data[0], dict):
        url = data[0].get("url")
        if isinstance(url, str) and url:
            return url

    output = body.get("output")
    if isinstance(output, str) and output:
        return output
    if isinstance(output, list) and output and isinstance(output[0], str) and output[0]:
        return output[0]

    return None
