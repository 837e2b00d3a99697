"""Configuration management for PICASO.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PICASO_ prefix,
allowing deployments to change quota policy, service endpoints and storage
backends without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PICASO_* prefix)
2. .env file in the project root
3. Default values defined in PicasoConfig

Example .env file:
    PICASO_GENERATION_API_KEY=sk-...
    PICASO_PAYMENT_SECRET_KEY=sk_test_...
    PICASO_MAX_ATTEMPTS=3
    PICASO_WINDOW_HOURS=24
    PICASO_STORE_BACKEND=local

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from picaso.core.config import config

    print(config.max_attempts)
    print(config.store_dir)

Quota Policy
------------
The advertised quota and the enforced quota must agree, so both come from
``max_attempts`` and ``window_hours``.  They are deliberately configuration
rather than constants: the quota is a product decision, not an invariant of
the pipeline.

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: per-profile key-value store files
- store_dir: durable image storage for the local object store backend
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PicasoConfig(BaseSettings):
    """Main configuration for PICASO.

    Values are loaded from environment variables with the PICASO_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Quota Settings:
        max_attempts : int
            Generations allowed per profile per window
        window_hours : float
            Length of the rolling quota window in hours

    Generation Service:
        generation_api_url : str
            Base URL of the OpenAI-images compatible generation API
        generation_api_key : str
            Bearer token for the generation API
        generation_model : str
            Model name sent with each generation request
        generation_image_size : str
            Requested image size (e.g. 1024x1024)
        generation_timeout_seconds : float
            Upper bound for one generation call

    Persistence:
        persistence_timeout_seconds : float
            Upper bound for each persistence strategy
        relay_url_template : str
            Relay used by the proxied transfer; ``{url}`` is replaced with the
            quoted source URL
        progress_pacing_seconds : float
            Delay between checkpoints reported by the pass-through strategy
        store_backend : Literal["local", "s3"]
            Durable object store implementation
        store_dir : Path
            Root directory of the local object store
        store_public_url : str
            Public base URL that object keys are appended to
        s3_bucket, s3_endpoint_url, s3_access_key_id, s3_secret_access_key
            Settings for the S3-compatible backend

    Checkout:
        payment_api_base : str | None
            Override for the Stripe API base URL (None for the live API)
        payment_secret_key : str
            Secret key for the payment provider
        checkout_base_url : str
            Base URL used to build success/cancel redirect URLs
        product_name, product_description, product_price_cents,
        product_currency, product_size, product_material, product_finish
            Fixed print product metadata
        shipping_countries : list[str]
            Shipping-country allowlist
        checkout_prompt_limit : int
            Maximum prompt length stored in session metadata

    Server:
        server_host : str
        server_port : int
        data_dir : Path
            Directory holding per-profile state files
        log_level : str

    Examples
    --------
        >>> custom_config = PicasoConfig(max_attempts=5, window_hours=12)
        >>> custom_config.window_duration_ms
        43200000
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PICASO_",
        case_sensitive=False,
    )

    # Quota policy
    max_attempts: int = Field(
        default=3,
        description="Generations allowed per profile within one window",
        ge=1,
        le=1000,
    )
    window_hours: float = Field(
        default=24.0,
        description="Length of the rolling quota window in hours",
        gt=0,
    )

    # Image generation service
    generation_api_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of the OpenAI-images compatible API",
    )
    generation_api_key: str = Field(
        default="",
        description="Bearer token for the generation API",
    )
    generation_model: str = Field(
        default="dall-e-3",
        description="Model name sent with each generation request",
    )
    generation_image_size: str = Field(
        default="1024x1024",
        description="Requested image size",
    )
    generation_timeout_seconds: float = Field(
        default=30.0,
        description="Upper bound for one generation call",
        gt=0,
    )

    # Persistence chain
    persistence_timeout_seconds: float = Field(
        default=30.0,
        description="Upper bound for each persistence strategy",
        gt=0,
    )
    relay_url_template: str = Field(
        default="https://corsproxy.io/?{url}",
        description="Relay used by the proxied transfer ({url} is replaced)",
    )
    progress_pacing_seconds: float = Field(
        default=0.25,
        description="Delay between checkpoints reported by the pass-through strategy",
        ge=0,
    )

    # Durable object store
    store_backend: Literal["local", "s3"] = Field(
        default="local",
        description="Durable object store implementation",
    )
    store_dir: Path = Field(
        default=Path("static"),
        description="Root directory of the local object store",
    )
    store_public_url: str = Field(
        default="http://localhost:7860/static",
        description="Public base URL that object keys are appended to",
    )
    s3_bucket: str = Field(default="picaso-artwork")
    s3_endpoint_url: str | None = Field(default=None)
    s3_access_key_id: str | None = Field(default=None)
    s3_secret_access_key: str | None = Field(default=None)

    # Payment session service
    payment_api_base: str | None = Field(
        default=None,
        description="Override for the Stripe API base URL (None for the live API)",
    )
    payment_secret_key: str = Field(
        default="",
        description="Secret key for the payment provider",
    )
    checkout_base_url: str = Field(
        default="http://localhost:5173",
        description="Base URL used to build success/cancel redirect URLs",
    )
    checkout_prompt_limit: int = Field(default=500, ge=1)

    # Print product
    product_name: str = Field(default="Custom AI Art Print (12x12)")
    product_description: str = Field(
        default=(
            "High-quality AI-generated artwork printed on premium matte canvas "
            "with Ayous wood frame"
        )
    )
    product_price_cents: int = Field(default=9900, ge=1)
    product_currency: str = Field(default="usd")
    product_size: str = Field(default="12x12")
    product_material: str = Field(default="Ayous wood frame")
    product_finish: str = Field(default="Matte Canvas")
    shipping_countries: list[str] = Field(default_factory=lambda: ["US", "CA"])

    # Server
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(
        default=7860,
        description="Server port",
        ge=1024,
        le=65535,
    )
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory holding per-profile state files",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self.store_backend == "local":
            self.store_dir.mkdir(parents=True, exist_ok=True)

    @property
    def window_duration_ms(self) -> int:
        """Quota window length in milliseconds."""
        return int(self.window_hours * 60 * 60 * 1000)

    @property
    def profiles_dir(self) -> Path:
        """Directory of per-profile key-value store files."""
        return self.data_dir / "profiles"


# Global configuration instance
# Loads values from environment variables (PICASO_* prefix) and .env file.
config = PicasoConfig()
