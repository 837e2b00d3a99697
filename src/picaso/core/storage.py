"""Per-profile key-value storage for PICASO.

The quota window and the artwork snapshot both live in a small key-value
store owned by one profile.  The store is injected so the quota tracker can
run against memory in tests and against a JSON file per profile on the
server.

The file-backed store is intentionally simple:

- one ``<profile>.json`` file holds every key as a JSON object
- every write rewrites the whole file
- a missing file reads as an empty store

A file that exists but cannot be parsed raises :class:`KeyValueStoreError`
so callers can decide how to recover.  The quota tracker treats that as an
implicit reset; the artwork session treats it as "no artwork".
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

import pydantic

from picaso.core.errors import KeyValueStoreError
from picaso.core.models import Artwork

logger = logging.getLogger(__name__)

ARTWORK_KEY = "generatedArtwork"


class KeyValueStore(Protocol):
    """String key-value store owned by one profile."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Dictionary-backed store, used by tests and short-lived sessions."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """Key-value store persisted as a single JSON object on disk.

    Args:
        path: Location of the JSON file.  Parent directories are created on
            first write.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            raise KeyValueStoreError(f"Unreadable store {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise KeyValueStoreError(f"Store {self.path} does not contain a JSON object")
        return data

    def _save(self, data: dict[str, str]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
        except OSError as e:
            raise KeyValueStoreError(f"Cannot write store {self.path}: {e}") from e

    def get(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        try:
            data = self._load()
        except KeyValueStoreError:
            # Overwriting a corrupt file is the recovery path.
            logger.warning(f"Replacing unreadable store at {self.path}")
            data = {}
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        try:
            data = self._load()
        except KeyValueStoreError:
            logger.warning(f"Discarding unreadable store at {self.path}")
            data = {}
        else:
            if key not in data:
                return
            data.pop(key)
        self._save(data)


class ArtworkSession:
    """Holds the artwork snapshot between generation and checkout.

    The snapshot lets the checkout step pick up the generated artwork
    without re-running generation.  It is superseded by each successful
    retry and cleared once the order completes or the user goes back.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def save(self, artwork: Artwork) -> None:
        self._store.set(ARTWORK_KEY, artwork.model_dump_json())

    def load(self) -> Artwork | None:
        """Return the current snapshot, or ``None`` if absent or unreadable."""
        try:
            raw = self._store.get(ARTWORK_KEY)
        except KeyValueStoreError as e:
            logger.warning(f"Artwork snapshot unavailable: {e}")
            return None

        if raw is None:
            return None

        try:
            return Artwork.model_validate_json(raw)
        except pydantic.ValidationError:
            logger.warning("Discarding corrupt artwork snapshot")
            try:
                self._store.delete(ARTWORK_KEY)
            except KeyValueStoreError as e:
                logger.warning(f"Could not discard corrupt artwork snapshot: {e}")
            return None

    def clear(self) -> None:
        self._store.delete(ARTWORK_KEY)
