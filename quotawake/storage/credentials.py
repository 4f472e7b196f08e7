"""Plain JSON credential store (file mode 0600).

Layout::

    {"active_account": "a@x", "accounts": {"a@x": {...OAuthCredential...}}}
"""

import asyncio
import logging
import os
from typing import Any

from quotawake.models import OAuthCredential
from quotawake.storage.atomic import read_json, write_json_atomic

logger = logging.getLogger(__name__)

CREDENTIALS_FILENAME = "credentials.json"


class JsonCredentialStore:
    def __init__(self, data_dir: str) -> None:
        self.path = os.path.join(os.path.expanduser(data_dir), CREDENTIALS_FILENAME)
        self._lock = asyncio.Lock()

    def _load(self) -> dict[str, Any]:
        data = read_json(self.path)
        if not isinstance(data, dict):
            return {"active_account": None, "accounts": {}}
        data.setdefault("accounts", {})
        data.setdefault("active_account", None)
        return data

    def _save(self, data: dict[str, Any]) -> None:
        write_json_atomic(self.path, data, mode=0o600)

    async def list_accounts(self) -> list[str]:
        return list(self._load()["accounts"])

    async def get_all_credentials(self) -> dict[str, OAuthCredential]:
        return {email: OAuthCredential.model_validate(raw) for email, raw in self._load()["accounts"].items()}

    async def get_active_account(self) -> str | None:
        data = self._load()
        active = data["active_account"]
        if active in data["accounts"]:
            return active
        return next(iter(data["accounts"]), None)

    async def set_active_account(self, email: str) -> None:
        async with self._lock:
            data = self._load()
            if email not in data["accounts"]:
                raise KeyError(f"Unknown account: {email}")
            data["active_account"] = email
            self._save(data)

    async def get_credential(self, email: str) -> OAuthCredential | None:
        raw = self._load()["accounts"].get(email)
        return OAuthCredential.model_validate(raw) if raw else None

    async def save_credential(self, email: str, credential: OAuthCredential) -> None:
        async with self._lock:
            data = self._load()
            data["accounts"][email] = credential.model_dump(mode="json")
            if not data["active_account"]:
                data["active_account"] = email
            self._save(data)
        logger.info("Saved credential for %s", email)

    async def delete_credential(self, email: str) -> None:
        async with self._lock:
            data = self._load()
            data["accounts"].pop(email, None)
            if data["active_account"] == email:
                data["active_account"] = next(iter(data["accounts"]), None)
            self._save(data)
        logger.info("Deleted credential for %s", email)

    async def delete_all(self) -> None:
        async with self._lock:
            self._save({"active_account": None, "accounts": {}})
        logger.info("Deleted all credentials")

    async def update_project_id(self, email: str, project_id: str) -> None:
        async with self._lock:
            data = self._load()
            raw = data["accounts"].get(email)
            if raw is None:
                return
            raw["project_id"] = project_id
            self._save(data)
