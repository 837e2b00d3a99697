"""Core functionality for artwork generation and checkout.

This module provides the core components of PICASO:

- **Prompt composition**: base template, user prompt and filters
- **QuotaTracker**: rolling per-profile generation limit
- **GenerationClient**: adapter for the external image generation service
- **PersistenceChain**: direct, proxied and pass-through persistence
- **GenerationPipeline**: orchestrates one run and reports progress
- **CheckoutService**: payment sessions for a print of the artwork
- **PicasoConfig / config**: configuration using Pydantic Settings

Architecture Overview
---------------------
The core module follows a layered architecture:

1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - All settings prefixed with PICASO_ in .env files

2. **Domain Layer** (models.py, errors.py, prompt_builder.py, quota.py):
   - Validated request and result models
   - Error taxonomy shared by every adapter
   - Pure prompt composition and the quota window

3. **Adapter Layer** (generation.py, object_store.py, storage.py, checkout.py):
   - An httpx client for the generation service, the Stripe SDK for payments
   - Local directory and S3-compatible durable stores
   - Per-profile key-value state

4. **Orchestration Layer** (persistence.py, pipeline.py):
   - Ordered persistence strategies behind one interface
   - The generation state machine

Usage Example
-------------
    from picaso.core import GenerationPipeline, QuotaTracker, config

    tracker = QuotaTracker(store, max_attempts=config.max_attempts)
    pipeline = GenerationPipeline(client, chain, tracker)
    result = await pipeline.run("a red fox in snow")

See Also
--------
- picaso.api.main: FastAPI application built on these components
"""

from picaso.core.checkout import CheckoutRequestBuilder, CheckoutService, PaymentSessionClient
from picaso.core.config import PicasoConfig, config
from picaso.core.generation import GenerationClient
from picaso.core.persistence import PersistenceChain
from picaso.core.pipeline import GenerationPipeline, PipelineState
from picaso.core.prompt_builder import build_request, compose_prompt
from picaso.core.quota import QuotaTracker

__all__ = [
    "CheckoutRequestBuilder",
    "CheckoutService",
    "GenerationClient",
    "GenerationPipeline",
    "PaymentSessionClient",
    "PersistenceChain",
    "PicasoConfig",
    "PipelineState",
    "QuotaTracker",
    "build_request",
    "compose_prompt",
    "config",
]
