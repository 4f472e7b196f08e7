"""Narrow capabilities the trigger engine depends on.

Concrete implementations live in ``quotawake.storage``, ``quotawake.auth`` and
``quotawake.client``; tests substitute in-memory fakes.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from quotawake.models import (
    AccessTokenResult,
    AutoTriggerState,
    KeepAliveReply,
    ModelQuotaSnapshot,
    OAuthCredential,
    ScheduleConfig,
)


class StateStore(Protocol):
    """Synchronous key/value persistence for small JSON documents."""

    def get_state(self, key: str, default: Any = None) -> Any: ...

    def save_state(self, key: str, value: Any) -> None: ...


class AccountStore(Protocol):
    async def list_accounts(self) -> list[str]: ...

    async def get_all_credentials(self) -> dict[str, OAuthCredential]: ...

    async def get_active_account(self) -> str | None: ...

    async def set_active_account(self, email: str) -> None: ...

    async def get_credential(self, email: str) -> OAuthCredential | None: ...

    async def save_credential(self, email: str, credential: OAuthCredential) -> None: ...

    async def delete_credential(self, email: str) -> None: ...

    async def delete_all(self) -> None: ...

    async def update_project_id(self, email: str, project_id: str) -> None: ...


class TokenProvider(Protocol):
    async def get_access_token_status(self, email: str) -> AccessTokenResult: ...


class ModelCatalogSource(Protocol):
    async def fetch_available_models(self, access_token: str, project_id: str | None) -> list[ModelQuotaSnapshot]: ...


class KeepAliveTransport(Protocol):
    async def resolve_project_id(self, access_token: str) -> str | None: ...

    async def send_keep_alive(
        self,
        access_token: str,
        project_id: str,
        model: str,
        prompt: str,
        max_output_tokens: int,
    ) -> KeepAliveReply: ...


class CalendarScheduler(Protocol):
    def set_schedule(self, config: ScheduleConfig, on_fire: Callable[[], Awaitable[object]]) -> None: ...

    def stop(self) -> None: ...

    def describe(self, config: ScheduleConfig) -> str: ...

    def config_to_crontab(self, config: ScheduleConfig) -> str: ...

    def validate_crontab(self, expression: str) -> str | None: ...

    def next_run_time(self) -> datetime | None: ...


StateNotifier = Callable[[AutoTriggerState], Awaitable[None]]
