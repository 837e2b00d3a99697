"""PICASO - AI art generation with durable storage and print checkout."""

__version__ = "0.1.0"

from picaso.core.config import PicasoConfig, config

__all__ = [
    "PicasoConfig",
    "config",
]
