"""JSON-file key/value store for trigger history, watermarks and the saved schedule."""

import logging
import os
import threading
from typing import Any

from quotawake.storage.atomic import read_json, write_json_atomic

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"


class JsonStateStore:
    """Keeps the whole document in memory and rewrites the file on every save."""

    def __init__(self, data_dir: str) -> None:
        self.path = os.path.join(os.path.expanduser(data_dir), STATE_FILENAME)
        self._lock = threading.Lock()
        loaded = read_json(self.path)
        self._data: dict[str, Any] = loaded if isinstance(loaded, dict) else {}

    def get_state(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def save_state(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            write_json_atomic(self.path, self._data)
        logger.debug("Saved state key '%s'", key)
