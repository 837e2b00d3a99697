"""Generation pipeline orchestration for PICASO.

:class:`GenerationPipeline` turns a raw prompt into an
:class:`~picaso.core.models.Artwork` by running each stage in sequence::

    IDLE → COMPOSING → QUOTA_CHECK → GENERATING → PERSISTING → RECORDING → DONE
                           │              │            │
                           ▼              ▼            ▼
                        ABORTED         FAILED       FAILED

Each stage depends on the previous stage's output, so nothing runs
concurrently.  One pipeline instance handles one run at a time; callers keep
input disabled while a run is in flight.

Error Propagation
-----------------
Stage errors are converted at the pipeline boundary:

- bad input → :class:`~picaso.core.errors.ValidationError`, before any
  network call
- quota denied → :class:`~picaso.core.errors.QuotaExceeded`
- generation failures → a :class:`~picaso.core.errors.GenerationFailure`
  subclass
- non-recoverable persistence → :class:`~picaso.core.errors.PersistenceFailure`

A quota attempt is recorded only after a run reaches RECORDING.  Nothing is
retried automatically.

Progress
--------
The ``on_progress(percentage, message)`` observer is called synchronously
from the pipeline flow.  :class:`ProgressPlan` positions the generating and
persisting phases on the 0–100 scale; :class:`ProgressReporter` guarantees
the observer sees strictly increasing values and sees exactly 100 only when
the run is DONE.

Usage
-----
::

    pipeline = GenerationPipeline(client, chain, tracker)
    result = await pipeline.run(
        "a red fox in snow",
        {"medium": ["oil painting"]},
        on_progress=lambda pct, msg: print(pct, msg),
    )
    print(result.artwork.image_url, result.quota.remaining)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from enum import Enum

from pydantic import BaseModel, model_validator

from picaso.core.errors import (
    GenerationFailure,
    PersistenceFailure,
    QuotaExceeded,
    UpstreamError,
)
from picaso.core.generation import GenerationClient
from picaso.core.models import Artwork, QuotaStatus
from picaso.core.persistence import PersistenceChain, ProgressCallback
from picaso.core.prompt_builder import build_request, compose_prompt
from picaso.core.quota import QuotaTracker, now_ms

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    QUOTA_CHECK = "quota_check"
    GENERATING = "generating"
    PERSISTING = "persisting"
    RECORDING = "recording"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


class ProgressPlan(BaseModel):
    """Where each phase sits on the 0–100 progress scale.

    All four points must be strictly increasing and below 100; 100 is
    reserved for the DONE state.
    """

    generating_start: int = 10
    generating_end: int = 40
    persisting_start: int = 45
    persisting_end: int = 95

    @model_validator(mode="after")
    def _check_order(self) -> "ProgressPlan":
        points = [
            self.generating_start,
            self.generating_end,
            self.persisting_start,
            self.persisting_end,
        ]
        if points[0] < 0 or points[-1] >= 100:
            raise ValueError("Progress points must lie within [0, 100)")
        if any(a >= b for a, b in zip(points, points[1:])):
            raise ValueError("Progress points must be strictly increasing")
        return self

    def scale_persisting(self, chain_percentage: int) -> int:
        """Map a persistence chain percentage (0–100) into this plan."""
        span = self.persisting_end - self.persisting_start
        return self.persisting_start + round(span * chain_percentage / 100)


class ProgressReporter:
    """Forwards strictly increasing progress to an optional observer."""

    def __init__(self, on_progress: ProgressCallback | None) -> None:
        self._on_progress = on_progress
        self.last = -1

    def report(self, percentage: int, message: str) -> None:
        percentage = min(percentage, 99)
        self._emit(percentage, message)

    def complete(self, message: str = "Complete!") -> None:
        self._emit(100, message)

    def _emit(self, percentage: int, message: str) -> None:
        if percentage <= self.last:
            return
        self.last = percentage
        if self._on_progress is not None:
            self._on_progress(percentage, message)


class PipelineResult(BaseModel):
    """What a successful run hands back to the caller."""

    artwork: Artwork
    quota: QuotaStatus


class GenerationPipeline:
    """Orchestrates prompt → quota → generation → persistence → record.

    Args:
        client: Image generation client.
        chain: Persistence chain.
        quota: Quota tracker for the requesting profile.
        plan: Progress positions for the generating and persisting phases.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(
        self,
        client: GenerationClient,
        chain: PersistenceChain,
        quota: QuotaTracker,
        *,
        plan: ProgressPlan | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client = client
        self._chain = chain
        self._quota = quota
        self.plan = plan or ProgressPlan()
        self._clock = clock
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    def _transition(self, state: PipelineState) -> None:
        logger.debug(f"Pipeline {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    async def run(
        self,
        raw_prompt: str,
        filters: Mapping[str, Sequence[str]] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> PipelineResult:
        """Run the pipeline once.

        Args:
            raw_prompt: The user's prompt; at least three words.
            filters: Optional filter selections by category.
            on_progress: Observer for ``(percentage, message)`` updates.

        Returns:
            The artwork and the quota status after recording the attempt.

        Raises:
            ValidationError: Invalid prompt or filters.
            QuotaExceeded: No generations left in the current window.
            GenerationFailure: The generation service failed.
            PersistenceFailure: The durable store failed non-recoverably.
        """
        if self.state is not PipelineState.IDLE:
            # A fresh history per run; the previous result is superseded.
            self.state = PipelineState.IDLE
            self.history = [PipelineState.IDLE]

        progress = ProgressReporter(on_progress)

        # Rejected input never leaves IDLE.
        request = build_request(raw_prompt, filters)

        # --- Composing -------------------------------------------------------
        self._transition(PipelineState.COMPOSING)
        composed = compose_prompt(request)

        # --- Quota check -----------------------------------------------------
        self._transition(PipelineState.QUOTA_CHECK)
        status = self._quota.check_status()
        if not status.allowed:
            self._transition(PipelineState.ABORTED)
            logger.info(f"Generation refused, quota resets at {status.reset_at}")
            raise QuotaExceeded(
                status.reset_at,
                f"You've reached your limit of {self._quota.max_attempts} generations. "
                f"Try again in {self._quota.time_until_reset()}.",
            )

        # --- Generating ------------------------------------------------------
        self._transition(PipelineState.GENERATING)
        progress.report(self.plan.generating_start, "Generating your artwork...")
        try:
            source_url = await self._client.generate(composed)
        except GenerationFailure as e:
            self._transition(PipelineState.FAILED)
            logger.error(f"Generation failed ({e.category.value}): {e.detail}")
            raise
        except Exception as e:
            self._transition(PipelineState.FAILED)
            logger.error(f"Unexpected generation error: {e}", exc_info=True)
            raise UpstreamError(str(e)) from e
        progress.report(self.plan.generating_end, "Artwork generated")

        # --- Persisting ------------------------------------------------------
        self._transition(PipelineState.PERSISTING)

        def on_chain_progress(percentage: int, message: str) -> None:
            progress.report(self.plan.scale_persisting(percentage), message)

        try:
            persisted = await self._chain.materialize(source_url, on_chain_progress)
        except PersistenceFailure:
            self._transition(PipelineState.FAILED)
            raise
        except Exception as e:
            self._transition(PipelineState.FAILED)
            logger.error(f"Unexpected persistence error: {e}", exc_info=True)
            raise PersistenceFailure("chain", str(e)) from e

        # --- Recording -------------------------------------------------------
        self._transition(PipelineState.RECORDING)
        quota = self._quota.record_attempt(persisted.url, request.raw_prompt)

        artwork = Artwork(
            image_url=persisted.url,
            prompt=request.raw_prompt,
            filters=request.filters_as_dict(),
            timestamp=self._clock(),
            is_permanent=persisted.is_permanent,
        )

        self._transition(PipelineState.DONE)
        progress.complete()
        logger.info(
            f"Artwork ready (permanent={artwork.is_permanent}, remaining={quota.remaining})"
        )
        return PipelineResult(artwork=artwork, quota=quota)
