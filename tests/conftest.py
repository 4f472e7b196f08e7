"""Shared pytest configuration and fixtures."""

import asyncio
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from quotawake.config import Settings, get_settings
from quotawake.models import (
    AccessTokenResult,
    KeepAliveReply,
    ModelQuotaSnapshot,
    OAuthCredential,
    ScheduleConfig,
    TokenState,
)
from quotawake.schedule import calendar as calendar_mod
from quotawake.trigger.controller import AutoTriggerController
from quotawake.trigger.decision import ResetDecisionEngine
from quotawake.trigger.dispatcher import TriggerDispatcher
from quotawake.trigger.history import TriggerHistory
from quotawake.trigger.model_cache import ModelCatalogCache
from quotawake.trigger.orchestrator import ResetOrchestrator


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit the real Cloud Code API (requires .env with credentials)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local settings never leak into tests."""
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings(tmp_path: Any) -> Generator[Any]:
    """Provide fake settings pointing at a temp data dir.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "data_dir": str(tmp_path / "data"),
            "log_level": "DEBUG",
            "cloudcode_base_url": "https://cloudcode.test",
            "request_timeout_seconds": 5.0,
            "oauth_token_url": "https://oauth.test/token",
            "oauth_client_id": "test-client-id",
            "oauth_client_secret": "test-client-secret",
            "reset_cooldown_minutes": 10,
            "reset_safety_margin_minutes": 2,
            "quota_check_interval_seconds": 300,
            "max_trigger_concurrency": 4,
            "default_model": "gemini-3-flash",
            "default_prompt": "hi",
            "history_max_records": 40,
            "history_max_days": 7,
            "model_cache_ttl_hours": 12,
        },
    )()
    with (
        patch("quotawake.config.get_settings", return_value=fake_settings),
        patch("quotawake.api.main.get_settings", return_value=fake_settings),
        patch("quotawake.cli.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class MemoryStateStore:
    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.saves: list[str] = []

    def get_state(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def save_state(self, key: str, value: Any) -> None:
        self.data[key] = value
        self.saves.append(key)


class MemoryAccountStore:
    def __init__(self, emails: list[str]) -> None:
        self.credentials: dict[str, OAuthCredential] = {
            email: OAuthCredential(email=email, refresh_token=f"refresh-{email}", access_token=f"token-{email}")
            for email in emails
        }
        self.active: str | None = emails[0] if emails else None

    async def list_accounts(self) -> list[str]:
        return list(self.credentials)

    async def get_all_credentials(self) -> dict[str, OAuthCredential]:
        return dict(self.credentials)

    async def get_active_account(self) -> str | None:
        if self.active in self.credentials:
            return self.active
        return next(iter(self.credentials), None)

    async def set_active_account(self, email: str) -> None:
        self.active = email

    async def get_credential(self, email: str) -> OAuthCredential | None:
        return self.credentials.get(email)

    async def save_credential(self, email: str, credential: OAuthCredential) -> None:
        self.credentials[email] = credential
        self.active = self.active or email

    async def delete_credential(self, email: str) -> None:
        self.credentials.pop(email, None)
        if self.active == email:
            self.active = next(iter(self.credentials), None)

    async def delete_all(self) -> None:
        self.credentials.clear()
        self.active = None

    async def update_project_id(self, email: str, project_id: str) -> None:
        cred = self.credentials.get(email)
        if cred is not None:
            self.credentials[email] = cred.model_copy(update={"project_id": project_id})


class StaticTokenProvider:
    """Returns ``token-<email>`` unless a state override is set for the account."""

    def __init__(self, accounts: MemoryAccountStore) -> None:
        self.accounts = accounts
        self.states: dict[str, TokenState] = {}

    async def get_access_token_status(self, email: str) -> AccessTokenResult:
        if email not in self.accounts.credentials:
            return AccessTokenResult(state=TokenState.MISSING)
        state = self.states.get(email, TokenState.OK)
        if state != TokenState.OK:
            return AccessTokenResult(state=state, error=f"{state.value} for {email}")
        return AccessTokenResult(state=TokenState.OK, token=f"token-{email}")


class FakeCloudCode:
    """Catalog source and keep-alive transport in one, with per-model scripted replies."""

    def __init__(self) -> None:
        self.snapshots: dict[str, list[ModelQuotaSnapshot]] = {}
        self.replies: dict[str, KeepAliveReply | Exception] = {}
        self.delays: dict[str, float] = {}
        self.project_id: str | None = "projects/resolved"
        self.catalog_error: Exception | None = None
        self.sent: list[tuple[str, str, str, str, int]] = []
        self.catalog_calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_available_models(self, access_token: str, project_id: str | None) -> list[ModelQuotaSnapshot]:
        self.catalog_calls.append(access_token)
        if self.catalog_error is not None:
            raise self.catalog_error
        return list(self.snapshots.get(access_token, []))

    async def resolve_project_id(self, access_token: str) -> str | None:
        return self.project_id

    async def send_keep_alive(
        self,
        access_token: str,
        project_id: str,
        model: str,
        prompt: str,
        max_output_tokens: int,
    ) -> KeepAliveReply:
        self.sent.append((access_token, project_id, model, prompt, max_output_tokens))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(model, 0))
        finally:
            self.in_flight -= 1
        reply = self.replies.get(model, KeepAliveReply(reply=f"hello from {model}"))
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingCalendar:
    """Calendar scheduler that records calls instead of arming APScheduler jobs."""

    def __init__(self) -> None:
        self.active: ScheduleConfig | None = None
        self.on_fire: Any = None
        self.set_calls = 0
        self.stop_calls = 0

    def set_schedule(self, config: ScheduleConfig, on_fire: Any) -> None:
        self.set_calls += 1
        self.active = config if config.enabled else None
        self.on_fire = on_fire

    def stop(self) -> None:
        self.stop_calls += 1
        self.active = None

    def describe(self, config: ScheduleConfig) -> str:
        return calendar_mod.describe_crontab(calendar_mod.effective_crontab(config))

    def config_to_crontab(self, config: ScheduleConfig) -> str:
        return calendar_mod.config_to_crontab(config)

    def validate_crontab(self, expression: str) -> str | None:
        return calendar_mod.validate_crontab(expression)

    def next_run_time(self) -> datetime | None:
        return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def utc_clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 0, 0, tzinfo=UTC))


@pytest.fixture
def local_clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 12, 0))


@pytest.fixture
def state_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def accounts() -> MemoryAccountStore:
    return MemoryAccountStore(["a@example.com", "b@example.com"])


@pytest.fixture
def tokens(accounts: MemoryAccountStore) -> StaticTokenProvider:
    return StaticTokenProvider(accounts)


@pytest.fixture
def cloudcode() -> FakeCloudCode:
    return FakeCloudCode()


@pytest.fixture
def history(state_store: MemoryStateStore, utc_clock: FakeClock) -> TriggerHistory:
    return TriggerHistory(state_store, clock=utc_clock)


@pytest.fixture
def decisions(state_store: MemoryStateStore, utc_clock: FakeClock) -> ResetDecisionEngine:
    return ResetDecisionEngine(state_store, clock=utc_clock)


@pytest.fixture
def dispatcher(
    accounts: MemoryAccountStore,
    tokens: StaticTokenProvider,
    cloudcode: FakeCloudCode,
    history: TriggerHistory,
) -> TriggerDispatcher:
    return TriggerDispatcher(accounts, tokens, cloudcode, history, request_timeout=1.0)


@pytest.fixture
def orchestrator(
    accounts: MemoryAccountStore,
    tokens: StaticTokenProvider,
    cloudcode: FakeCloudCode,
    decisions: ResetDecisionEngine,
    dispatcher: TriggerDispatcher,
    local_clock: FakeClock,
) -> ResetOrchestrator:
    return ResetOrchestrator(accounts, tokens, cloudcode, decisions, dispatcher, local_clock=local_clock)


@pytest.fixture
def calendar() -> RecordingCalendar:
    return RecordingCalendar()


@pytest.fixture
def controller(
    state_store: MemoryStateStore,
    accounts: MemoryAccountStore,
    tokens: StaticTokenProvider,
    cloudcode: FakeCloudCode,
    history: TriggerHistory,
    dispatcher: TriggerDispatcher,
    orchestrator: ResetOrchestrator,
    calendar: RecordingCalendar,
    tmp_path: Any,
) -> Generator[AutoTriggerController]:
    ctrl = AutoTriggerController(
        store=state_store,
        accounts=accounts,
        tokens=tokens,
        catalog=cloudcode,
        history=history,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        calendar=calendar,
        model_cache=ModelCatalogCache(str(tmp_path / "cache-root")),
    )
    yield ctrl
    ctrl.dispose()
