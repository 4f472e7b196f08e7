"""Atomic JSON file helpers shared by the state, credential and cache stores."""

import contextlib
import json
import logging
import os
import tempfile
from typing import Any

logger = logging.getLogger(__name__)


def read_json(path: str) -> Any | None:
    """Load a JSON document, returning None if the file is missing or corrupt."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError):
        logger.warning("Ignoring unreadable JSON file '%s'", path)
        return None


def write_json_atomic(path: str, payload: Any, mode: int | None = None) -> None:
    """Write JSON via a temp file in the same directory, then rename over the target."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise
