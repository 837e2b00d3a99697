"""Rolling generation quota for one profile.

:class:`QuotaTracker` counts generations inside a fixed-length window and
decides whether another one is allowed.  State lives in two keys of an
injected :class:`~picaso.core.storage.KeyValueStore`:

- ``picaso_generations`` — JSON list of ``{timestamp, imageUrl, prompt}``
- ``picaso_limit_reset`` — window end in epoch milliseconds

Expiry is lazy: every read or write first checks whether ``now`` has reached
the stored reset time and, if so, starts a fresh window.  There is no
background timer.

If the store is unreadable or holds something that does not parse, the
tracker clears it and reports a fresh window.  Quota enforcement is
best-effort; a corrupt store must never lock a profile out.

The store is read-then-written with no transactional guard.  That is fine
for a single profile driving one pipeline at a time.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable

import pydantic

from picaso.core.errors import KeyValueStoreError
from picaso.core.models import QuotaAttempt, QuotaStatus
from picaso.core.storage import KeyValueStore

logger = logging.getLogger(__name__)

GENERATIONS_KEY = "picaso_generations"
RESET_KEY = "picaso_limit_reset"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_WINDOW_DURATION_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class _CorruptWindow(Exception):
    """Raised internally when stored window state does not parse."""


class QuotaTracker:
    """Time-windowed generation counter.

    Args:
        store: Key-value store owned by the profile.
        max_attempts: Generations allowed per window.
        window_duration_ms: Window length in milliseconds.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window_duration_ms: int = DEFAULT_WINDOW_DURATION_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if window_duration_ms <= 0:
            raise ValueError(f"window_duration_ms must be positive, got {window_duration_ms}")

        self._store = store
        self.max_attempts = max_attempts
        self.window_duration_ms = window_duration_ms
        self._clock = clock

    # -- Public interface ---------------------------------------------------

    def check_status(self) -> QuotaStatus:
        """Report whether another generation is allowed.

        Returns:
            Current status.  ``allowed`` is ``False`` once ``remaining`` is 0.
        """
        now = self._clock()
        try:
            attempts, reset_at = self._read_window(now)
        except (KeyValueStoreError, _CorruptWindow) as e:
            logger.warning(f"Quota state unusable, starting a fresh window: {e}")
            return self._recover(now)

        return self._status(attempts, reset_at)

    def record_attempt(self, image_url: str, prompt: str) -> QuotaStatus:
        """Record one successful generation and return the updated status.

        Call at most once per successful generation and never for a failed
        one.

        Args:
            image_url: Final URL of the generated artwork.
            prompt: The user's original prompt.

        Returns:
            Status recomputed after the attempt was stored.
        """
        now = self._clock()
        try:
            attempts, reset_at = self._read_window(now)
        except (KeyValueStoreError, _CorruptWindow) as e:
            logger.warning(f"Quota state unusable while recording, starting fresh: {e}")
            self._recover(now)
            attempts, reset_at = [], now + self.window_duration_ms

        if len(attempts) >= self.max_attempts:
            logger.warning("Quota window already full, attempt not recorded")
            return self._status(attempts, reset_at)

        attempts.append(QuotaAttempt(timestamp=now, image_url=image_url, prompt=prompt))
        try:
            self._write_attempts(attempts)
        except KeyValueStoreError as e:
            logger.error(f"Failed to record generation: {e}")

        return self.check_status()

    def attempts(self) -> list[QuotaAttempt]:
        """Return the attempts recorded in the current window."""
        try:
            attempts, _ = self._read_window(self._clock())
        except (KeyValueStoreError, _CorruptWindow):
            return []
        return attempts

    def time_until_reset(self) -> str:
        """Human-readable time left in the current window.

        Returns:
            ``"Now"`` once the window has ended, otherwise ``"Xh Ym"`` or
            ``"Ym"``.
        """
        status = self.check_status()
        time_left = status.reset_at - self._clock()
        if time_left <= 0:
            return "Now"

        hours = time_left // (60 * 60 * 1000)
        minutes = (time_left % (60 * 60 * 1000)) // (60 * 1000)
        if hours > 0:
            return f"{hours}h {minutes}m"
        return f"{minutes}m"

    # -- Internals ----------------------------------------------------------

    def _status(self, attempts: list[QuotaAttempt], reset_at: int) -> QuotaStatus:
        remaining = max(0, self.max_attempts - len(attempts))
        return QuotaStatus(allowed=remaining > 0, remaining=remaining, reset_at=reset_at)

    def _read_window(self, now: int) -> tuple[list[QuotaAttempt], int]:
        """Load the window, resetting it first when it has expired."""
        raw_reset = self._store.get(RESET_KEY)

        if raw_reset is None:
            return [], self._reset(now)

        try:
            reset_at = int(raw_reset)
        except ValueError as e:
            raise _CorruptWindow(f"invalid reset time {raw_reset!r}") from e

        if now >= reset_at:
            logger.info("Quota window expired, resetting")
            return [], self._reset(now)

        raw_attempts = self._store.get(GENERATIONS_KEY) or "[]"
        try:
            decoded = json.loads(raw_attempts)
        except ValueError as e:
            raise _CorruptWindow("attempt log is not valid JSON") from e

        if not isinstance(decoded, list):
            raise _CorruptWindow("attempt log is not a list")

        try:
            attempts = [QuotaAttempt.model_validate(item) for item in decoded]
        except pydantic.ValidationError as e:
            raise _CorruptWindow("attempt log has malformed entries") from e

        return attempts, reset_at

    def _reset(self, now: int) -> int:
        reset_at = now + self.window_duration_ms
        self._write_attempts([])
        self._store.set(RESET_KEY, str(reset_at))
        return reset_at

    def _recover(self, now: int) -> QuotaStatus:
        reset_at = now + self.window_duration_ms
        try:
            self._store.delete(GENERATIONS_KEY)
            self._store.delete(RESET_KEY)
            self._store.set(GENERATIONS_KEY, "[]")
            self._store.set(RESET_KEY, str(reset_at))
        except KeyValueStoreError as e:
            logger.error(f"Could not reset quota state: {e}")
        return QuotaStatus(allowed=True, remaining=self.max_attempts, reset_at=reset_at)

    def _write_attempts(self, attempts: list[QuotaAttempt]) -> None:
        payload = [attempt.model_dump(by_alias=True) for attempt in attempts]
        self._store.set(GENERATIONS_KEY, json.dumps(payload))
