"""File cache of the model catalog.

Stored as ``<data_dir>/cache/available_models.json``::

    {"version": 1, "updated_at": <epoch ms>, "models": [{id, display_name, model_constant}, ...]}

A version mismatch or an unreadable file is treated as "no cache".  Entries
older than the TTL are ignored on normal reads but are still returned by
``load(allow_stale=True)`` so a failed live fetch can fall back to them.
"""

import logging
import os
import time
from collections.abc import Callable

from pydantic import ValidationError

from quotawake.models import ModelInfo, ModelQuotaSnapshot
from quotawake.storage.atomic import read_json, write_json_atomic

logger = logging.getLogger(__name__)

CACHE_VERSION = 1
CACHE_DIRNAME = "cache"
CACHE_FILENAME = "available_models.json"
DEFAULT_TTL_SECONDS = 12 * 60 * 60


def _now_ms() -> int:
    return int(time.time() * 1000)


def filter_models_by_constants(models: list[ModelInfo], constants: list[str]) -> list[ModelInfo]:
    """Keep only models whose constant is in ``constants``, in the order of ``constants``."""
    if not constants:
        return list(models)
    by_constant = {m.model_constant: m for m in models}
    return [by_constant[c] for c in constants if c in by_constant]


def snapshots_to_catalog(snapshots: list[ModelQuotaSnapshot]) -> list[ModelInfo]:
    """Project live quota snapshots onto catalog entries, dropping models with no constant."""
    return [
        ModelInfo(id=s.id, display_name=s.display_name or s.id, model_constant=s.model_constant)
        for s in snapshots
        if s.model_constant
    ]


class ModelCatalogCache:
    def __init__(
        self,
        data_dir: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.path = os.path.join(os.path.expanduser(data_dir), CACHE_DIRNAME, CACHE_FILENAME)
        self.ttl_ms = ttl_seconds * 1000
        self.now_ms = now_ms

    def load(self, allow_stale: bool = False) -> list[ModelInfo] | None:
        """Return cached models, or None when the cache is missing, invalid or expired."""
        data = read_json(self.path)
        if not isinstance(data, dict):
            return None
        if data.get("version") != CACHE_VERSION:
            logger.info("Model cache version %r != %d, ignoring", data.get("version"), CACHE_VERSION)
            return None

        updated_at = data.get("updated_at")
        if not isinstance(updated_at, int):
            return None
        if not allow_stale and self.now_ms() - updated_at > self.ttl_ms:
            logger.debug("Model cache expired (age %ds)", (self.now_ms() - updated_at) // 1000)
            return None

        try:
            return [ModelInfo.model_validate(m) for m in data.get("models", [])]
        except ValidationError:
            logger.warning("Model cache at '%s' has malformed entries, ignoring", self.path)
            return None

    def save(self, models: list[ModelInfo]) -> None:
        payload = {
            "version": CACHE_VERSION,
            "updated_at": self.now_ms(),
            "models": [m.model_dump(mode="json") for m in models],
        }
        write_json_atomic(self.path, payload)
        logger.debug("Cached %d models to '%s'", len(models), self.path)
