"""On-disk snapshot of each provider's model list with a freshness window.

One JSON file per provider key, ``<cache_dir>/<key>.json``::

    {"models": [...], "timestamp": "2026-01-01T00:00:00+00:00"}

Reads never fail: a missing or unreadable file is an empty entry. Writes are
atomic (temp file in the same directory plus replace) and raise on error.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable

from pydantic import ValidationError

from .errors import ModelNotFoundError
from .schema import Model

LOG = logging.getLogger(__name__)

MODEL_CACHE_TTL = timedelta(hours=1)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class ModelCacheEntry:
    """Persisted model snapshot; ``timestamp=None`` marks an empty/never-written entry."""

    models: list[Model] = field(default_factory=list)
    timestamp: datetime | None = None


def default_cache_dir() -> Path:
    base = os.getenv("XDG_CACHE_HOME") or str(Path.home() / ".cache")
    return Path(base) / "polyllm" / "models"


def is_valid(entry: ModelCacheEntry, now: datetime | None = None, ttl: timedelta = MODEL_CACHE_TTL) -> bool:
    """Return true when the entry was written less than ``ttl`` ago."""
    if entry.timestamp is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - entry.timestamp < ttl


def _parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw:
        return None
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Year 1 is how a zero time serializes.
    if value.year <= 1:
        return None
    return value


class _ReadWriteLock:
    """Shared/exclusive lock on top of one asyncio.Condition."""

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False

    @contextlib.asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class ModelCache:
    """Per-provider TTL cache of model lists stored as JSON files."""

    def __init__(self, cache_dir: str | Path | None = None, ttl: timedelta = MODEL_CACHE_TTL) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir else default_cache_dir()
        self.ttl = ttl
        self._locks: dict[str, _ReadWriteLock] = {}

    def path_for(self, key: str) -> Path:
        safe = _UNSAFE_KEY_CHARS.sub("_", key) or "_"
        return self.cache_dir / f"{safe}.json"

    def _lock_for(self, key: str) -> _ReadWriteLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = _ReadWriteLock()
        return lock

    def is_valid(self, entry: ModelCacheEntry, now: datetime | None = None) -> bool:
        return is_valid(entry, now=now, ttl=self.ttl)

    async def load(self, key: str) -> ModelCacheEntry:
        """Load the entry for ``key``; missing or corrupt files give an empty entry."""
        async with self._lock_for(key).shared():
            return await asyncio.to_thread(self._read, key)

    async def save(self, key: str, entry: ModelCacheEntry) -> None:
        """Persist ``entry`` for ``key``, creating the cache directory when needed."""
        async with self._lock_for(key).exclusive():
            await asyncio.to_thread(self._write, key, entry)

    def _read(self, key: str) -> ModelCacheEntry:
        path = self.path_for(key)
        if not path.exists():
            return ModelCacheEntry()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError("cache root must be an object")
            models = [Model.model_validate(item) for item in raw.get("models") or []]
            timestamp = _parse_timestamp(raw.get("timestamp"))
        except (OSError, ValueError, ValidationError) as exc:
            LOG.warning("ignoring unreadable model cache key=%s path=%s error=%s", key, path, exc)
            return ModelCacheEntry()
        return ModelCacheEntry(models=models, timestamp=timestamp)

    def _write(self, key: str, entry: ModelCacheEntry) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "models": [model.to_wire() for model in entry.models],
            "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
        }
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, indent=2)
            tmp_path.replace(path)
        except BaseException:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise
        LOG.debug("model cache saved key=%s models=%s path=%s", key, len(entry.models), path)

    async def cached_models(self, key: str, fetch: Callable[[], Awaitable[list[Model]]]) -> list[Model]:
        """Return cached models while fresh, else fetch live and refresh the cache.

        A failed save is logged; the freshly fetched list is still returned.
        """
        entry = await self.load(key)
        if self.is_valid(entry) and entry.models:
            LOG.debug("model cache hit key=%s models=%s", key, len(entry.models))
            return list(entry.models)

        models = await fetch()
        if not models:
            raise ModelNotFoundError(f"no models found for provider '{key}'")

        try:
            await self.save(key, ModelCacheEntry(models=list(models), timestamp=datetime.now(timezone.utc)))
        except OSError as exc:
            LOG.warning("failed to save model cache key=%s error=%s", key, exc)
        return list(models)
