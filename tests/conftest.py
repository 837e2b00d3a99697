"""Shared pytest fixtures for PICASO tests."""

from __future__ import annotations

import io
import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace
from typing import Generator

import httpx
import pytest
from PIL import Image

from picaso.core.checkout import PaymentSessionClient
from picaso.core.config import PicasoConfig
from picaso.core.models import Artwork
from picaso.core.storage import MemoryKeyValueStore

START_MS = 1_700_000_000_000
SOURCE_URL = "https://cdn.example/generated/fox.png"
STORE_URL = "https://store.example"


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingObjectStore:
    """In-memory ObjectStore that can be told to fail.

    Args:
        errors: Exceptions raised by successive writes before writes start
            succeeding.
    """

    def __init__(self, errors: list[Exception] | None = None) -> None:
        self.errors = list(errors or [])
        self.writes: list[dict] = []

    async def write(self, key, data, content_type, metadata) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.writes.append(
            {"key": key, "data": data, "content_type": content_type, "metadata": metadata}
        )
        return f"{STORE_URL}/{key}"


class FakeUpstream:
    """httpx.MockTransport handler standing in for every external service.

    Hosts:
        gen.example: image generation API
        cdn.example: generated image download
        relay.example: cross-origin relay

    Responses are built fresh on every call from the attributes below so
    tests can change behaviour between requests.
    """

    def __init__(self, image_bytes: bytes) -> None:
        self.image_bytes = image_bytes
        self.requests: list[httpx.Request] = []

        self.generation_status = 200
        self.generation_json: dict = {"data": [{"url": SOURCE_URL}]}
        self.generation_exc: Exception | None = None

        self.image_status = 200
        self.relay_status = 404

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == "gen.example":
            if self.generation_exc is not None:
                raise self.generation_exc
            return httpx.Response(self.generation_status, json=self.generation_json)
        if host == "cdn.example":
            if self.image_status != 200:
                return httpx.Response(self.image_status)
            return httpx.Response(200, content=self.image_bytes)
        if host == "relay.example":
            if self.relay_status != 200:
                return httpx.Response(self.relay_status)
            return httpx.Response(200, content=self.image_bytes)
        return httpx.Response(404)

    def hosts(self) -> list[str]:
        return [request.url.host for request in self.requests]


class FakeStripeClient:
    """Stands in for ``stripe.StripeClient`` (only ``checkout.sessions.create``).

    Set ``error`` to a ``stripe.StripeError`` to make the next calls fail.
    """

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Exception | None = None
        self.session = SimpleNamespace(
            id="cs_test_123", url="https://checkout.example/pay/cs_test_123"
        )
        self.checkout = SimpleNamespace(sessions=SimpleNamespace(create=self.create))

    def create(self, params=None, options=None):
        self.calls.append(params)
        if self.error is not None:
            raise self.error
        return self.session


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PicasoConfig:
    """Create a test configuration pointing every service at fake hosts.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PicasoConfig instance for testing
    """
    return PicasoConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        store_dir=temp_dir / "static",
        store_backend="local",
        store_public_url=STORE_URL,
        generation_api_url="https://gen.example/v1",
        generation_api_key="test-key",
        relay_url_template="https://relay.example/?url={url}",
        progress_pacing_seconds=0.0,
        payment_secret_key="sk_test_123",
        checkout_base_url="https://picaso.example",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def object_store() -> RecordingObjectStore:
    return RecordingObjectStore()


@pytest.fixture
def png_bytes() -> bytes:
    """A small valid PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 40, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A small valid JPEG image, for re-encoding tests."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (20, 90, 200)).save(buffer, format="JPEG")
    return buffer.getvalue()


@pytest.fixture
def upstream(png_bytes: bytes) -> FakeUpstream:
    return FakeUpstream(png_bytes)


@pytest.fixture
def http_client(upstream: FakeUpstream) -> httpx.AsyncClient:
    """AsyncClient whose every request is answered by ``upstream``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream))


@pytest.fixture
def stripe_client() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def sample_artwork() -> Artwork:
    return Artwork(
        image_url=f"{STORE_URL}/images/{START_MS}-abcd1234.png",
        prompt="a red fox in snow",
        filters={"medium": ["oil painting"], "style": [], "tone": [], "realism": []},
        timestamp=START_MS,
        is_permanent=True,
    )


@pytest.fixture
def test_client(
    test_config: PicasoConfig,
    http_client: httpx.AsyncClient,
    stripe_client: FakeStripeClient,
):
    """FastAPI TestClient running the app against the fake upstream.

    The ``with`` block runs the lifespan handler so services exist on
    ``app.state``.
    """
    from fastapi.testclient import TestClient

    from picaso.api.main import create_app

    app = create_app(
        test_config,
        http_client=http_client,
        payment_client=PaymentSessionClient(stripe_client),
    )
    with TestClient(app) as client:
        yield client
