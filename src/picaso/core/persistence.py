"""Persistence chain: turn a short-lived image URL into a durable one.

Image generation services hand back URLs that expire (DALL-E URLs live for
about an hour) and are often served without cross-origin headers.  The
:class:`PersistenceChain` tries an ordered list of strategies until one
yields a durable URL:

1. :class:`DirectTransfer` — fetch the bytes, re-encode as PNG, write to the
   durable object store.
2. :class:`ProxiedTransfer` — the same, but fetched through a relay that
   strips cross-origin restrictions.
3. :class:`PassThrough` — hand back the source URL unchanged, flagged as not
   permanent.

A strategy that fails with a recoverable error (fetch or decode failure,
store temporarily unavailable, time bound exceeded) hands over to the next
one.  A non-recoverable store error (quota, authorization) stops the chain
and is raised as :class:`~picaso.core.errors.PersistenceFailure`.  New
strategies are added by appending to the list; the executor applies the
recoverable/non-recoverable split uniformly.

Progress
--------
Four checkpoints are reported on every path: fetching (25), converting (50),
uploading (75) and finalizing (100).  A checkpoint already reached by an
earlier strategy is not reported again, so percentages never go backwards
within one ``materialize`` call.
"""

from __future__ import annotations

import asyncio
import io
import logging
import secrets
import string
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from enum import Enum
from urllib.parse import quote

import httpx
from PIL import Image

from picaso.core.errors import PersistenceFailure, StoreError, TransferError
from picaso.core.models import PersistenceAttempt, PersistenceResult
from picaso.core.object_store import ObjectStore
from picaso.core.quota import now_ms

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]

KEY_ALPHABET = string.ascii_lowercase + string.digits
KEY_SUFFIX_LENGTH = 8


class Checkpoint(Enum):
    """Progress checkpoints of one ``materialize`` call."""

    FETCHING = (25, "Fetching your artwork...")
    CONVERTING = (50, "Preparing your image...")
    UPLOADING = (75, "Saving your masterpiece...")
    FINALIZING = (100, "Finalizing...")

    @property
    def percentage(self) -> int:
        return self.value[0]

    @property
    def message(self) -> str:
        return self.value[1]


CheckpointReporter = Callable[[Checkpoint], None]


class _CheckpointTracker:
    """Forwards each checkpoint at most once, in increasing order."""

    def __init__(self, on_progress: ProgressCallback | None) -> None:
        self._on_progress = on_progress
        self._last = 0

    def reach(self, checkpoint: Checkpoint) -> None:
        if checkpoint.percentage <= self._last:
            return
        self._last = checkpoint.percentage
        if self._on_progress is not None:
            self._on_progress(checkpoint.percentage, checkpoint.message)


def generate_object_key(prefix: str, timestamp_ms: int, extension: str = "png") -> str:
    """Build a collision-resistant object key.

    Returns:
        ``<prefix>/<timestamp_ms>-<8 random [a-z0-9]>.<extension>``
    """
    suffix = "".join(secrets.choice(KEY_ALPHABET) for _ in range(KEY_SUFFIX_LENGTH))
    return f"{prefix.strip('/')}/{timestamp_ms}-{suffix}.{extension}"


async def fetch_image_bytes(http_client: httpx.AsyncClient, url: str) -> bytes:
    """Download image bytes, raising TransferError on any load failure."""
    try:
        response = await http_client.get(url, follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        raise TransferError(f"Could not fetch {url}: {e}") from e

    if not response.is_success:
        raise TransferError(f"Fetching {url} returned HTTP {response.status_code}")
    if not response.content:
        raise TransferError(f"Fetching {url} returned an empty body")
    return response.content


def reencode_png(data: bytes) -> bytes:
    """Decode arbitrary image bytes and re-encode them as PNG.

    Raises:
        TransferError: If the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            if source.mode in ("RGB", "RGBA"):
                image = source
            else:
                image = source.convert("RGBA" if "A" in source.getbands() else "RGB")
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise TransferError(f"Source is not a decodable image: {e}") from e
    return buffer.getvalue()


# ---------------------------------------------------------------------------
# Strategies.
# ---------------------------------------------------------------------------


class PersistenceStrategy(ABC):
    """One way of turning a source URL into a usable image URL.

    Attributes:
        name: Identifier used in logs and PersistenceAttempt records.
        permanent: Whether a successful result lives in the durable store.
    """

    name: str = "strategy"
    permanent: bool = True

    @abstractmethod
    async def attempt(self, source_url: str, checkpoint: CheckpointReporter) -> str:
        """Return the resulting image URL or raise.

        Recoverable failures are raised as ``TransferError`` or a recoverable
        ``StoreError``; anything else is treated as a defect.
        """


class DirectTransfer(PersistenceStrategy):
    """Fetch the source directly and write it to the durable store."""

    name = "direct"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store: ObjectStore,
        *,
        key_prefix: str = "images",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._http = http_client
        self._store = store
        self.key_prefix = key_prefix
        self._clock = clock

    def fetch_url(self, source_url: str) -> str:
        return source_url

    async def attempt(self, source_url: str, checkpoint: CheckpointReporter) -> str:
        checkpoint(Checkpoint.FETCHING)
        data = await fetch_image_bytes(self._http, self.fetch_url(source_url))

        checkpoint(Checkpoint.CONVERTING)
        png = await asyncio.to_thread(reencode_png, data)

        checkpoint(Checkpoint.UPLOADING)
        key = generate_object_key(self.key_prefix, self._clock())
        metadata = {
            "source_url": source_url,
            "strategy": self.name,
            "persisted_at": datetime.now(timezone.utc).isoformat(),
        }
        return await self._store.write(key, png, "image/png", metadata)


class ProxiedTransfer(DirectTransfer):
    """Fetch the source through a relay, then write it to the durable store.

    Args:
        relay_url_template: Relay URL containing ``{url}``, which is replaced
            with the percent-encoded source URL.
    """

    name = "proxied"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store: ObjectStore,
        *,
        relay_url_template: str,
        key_prefix: str = "images",
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if "{url}" not in relay_url_template:
            raise ValueError("relay_url_template must contain '{url}'")
        super().__init__(http_client, store, key_prefix=key_prefix, clock=clock)
        self.relay_url_template = relay_url_template

    def fetch_url(self, source_url: str) -> str:
        return self.relay_url_template.replace("{url}", quote(source_url, safe=""))


class PassThrough(PersistenceStrategy):
    """Return the source URL unchanged.

    Always succeeds.  The remaining checkpoints are reported with a short
    pause between them so progress stays visible to the user.
    """

    name = "pass_through"
    permanent = False

    def __init__(self, pacing_seconds: float = 0.25) -> None:
        self.pacing_seconds = pacing_seconds

    async def attempt(self, source_url: str, checkpoint: CheckpointReporter) -> str:
        logger.warning("Using provider URL directly; it may expire")
        for step in (Checkpoint.FETCHING, Checkpoint.CONVERTING, Checkpoint.UPLOADING):
            checkpoint(step)
            if self.pacing_seconds:
                await asyncio.sleep(self.pacing_seconds)
        return source_url


# ---------------------------------------------------------------------------
# Chain executor.
# ---------------------------------------------------------------------------


class PersistenceChain:
    """Runs persistence strategies in order until one succeeds.

    Args:
        strategies: Strategies in priority order.
        strategy_timeout_seconds: Upper bound for each strategy.  A strategy
            that exceeds it counts as a recoverable failure.
    """

    def __init__(
        self,
        strategies: Sequence[PersistenceStrategy],
        *,
        strategy_timeout_seconds: float = 30.0,
    ) -> None:
        if not strategies:
            raise ValueError("PersistenceChain needs at least one strategy")
        self.strategies = list(strategies)
        self.strategy_timeout_seconds = strategy_timeout_seconds

    @classmethod
    def default(
        cls,
        http_client: httpx.AsyncClient,
        store: ObjectStore,
        *,
        relay_url_template: str,
        strategy_timeout_seconds: float = 30.0,
        pacing_seconds: float = 0.25,
        clock: Callable[[], int] = now_ms,
    ) -> "PersistenceChain":
        """Build the standard direct → proxied → pass-through chain."""
        return cls(
            [
                DirectTransfer(http_client, store, clock=clock),
                ProxiedTransfer(
                    http_client, store, relay_url_template=relay_url_template, clock=clock
                ),
                PassThrough(pacing_seconds),
            ],
            strategy_timeout_seconds=strategy_timeout_seconds,
        )

    async def materialize(
        self,
        source_url: str,
        on_progress: ProgressCallback | None = None,
    ) -> PersistenceResult:
        """Convert ``source_url`` into the most durable URL available.

        Args:
            source_url: URL returned by the generation service.
            on_progress: Called with ``(percentage, message)`` at each
                checkpoint.

        Returns:
            The resulting URL, whether it is permanent, and every attempt.

        Raises:
            PersistenceFailure: A strategy hit a non-recoverable store error.
        """
        tracker = _CheckpointTracker(on_progress)
        attempts: list[PersistenceAttempt] = []

        for strategy in self.strategies:
            try:
                url = await asyncio.wait_for(
                    strategy.attempt(source_url, tracker.reach),
                    timeout=self.strategy_timeout_seconds,
                )
            except StoreError as e:
                attempts.append(
                    PersistenceAttempt(strategy=strategy.name, succeeded=False, reason=str(e))
                )
                if not e.recoverable:
                    logger.error(f"Persistence aborted by {strategy.name}: {e}")
                    raise PersistenceFailure(strategy.name, str(e)) from e
                logger.warning(f"Strategy {strategy.name} failed, falling back: {e}")
            except TransferError as e:
                attempts.append(
                    PersistenceAttempt(strategy=strategy.name, succeeded=False, reason=str(e))
                )
                logger.warning(f"Strategy {strategy.name} failed, falling back: {e}")
            except asyncio.TimeoutError:
                reason = f"timed out after {self.strategy_timeout_seconds}s"
                attempts.append(
                    PersistenceAttempt(strategy=strategy.name, succeeded=False, reason=reason)
                )
                logger.warning(f"Strategy {strategy.name} {reason}, falling back")
            else:
                attempts.append(PersistenceAttempt(strategy=strategy.name, succeeded=True, url=url))
                tracker.reach(Checkpoint.FINALIZING)
                logger.info(f"Artwork persisted via {strategy.name} (permanent={strategy.permanent})")
                return PersistenceResult(url=url, is_permanent=strategy.permanent, attempts=attempts)

        # Only reachable when the list has no pass-through at the end.
        logger.warning("Every persistence strategy failed, returning source URL")
        for step in Checkpoint:
            tracker.reach(step)
        return PersistenceResult(url=source_url, is_permanent=False, attempts=attempts)
