"""Auto-trigger controller: wires storage, detection, dispatch and the three schedule modes.

A saved schedule runs in exactly one mode:

* quota_reset: periodic quota checks through the orchestrator, plus fixed-time
  fallback triggers while outside the monitoring window;
* calendar: daily / weekly / interval / crontab triggers through APScheduler;
* disabled: no timers armed.

``save_schedule`` cancels every timer before arming the ones the new mode
needs.  Account mutations run through the FIFO ``AccountMutex``.
"""

import logging
from datetime import timedelta

from quotawake.auth.token_provider import OAuthTokenProvider
from quotawake.client.cloudcode import CloudCodeClient
from quotawake.config import Settings
from quotawake.errors import ConfigurationError, QuotaWakeError
from quotawake.interfaces import (
    AccountStore,
    CalendarScheduler,
    ModelCatalogSource,
    StateNotifier,
    StateStore,
    TokenProvider,
)
from quotawake.models import (
    SCHEDULE_PRESETS,
    AccountSummary,
    AuthorizationStatus,
    AutoTriggerState,
    ModelInfo,
    OAuthCredential,
    ScheduleConfig,
    ScheduleMode,
    SchedulePreset,
    TokenState,
    TriggerNowResult,
    TriggerRecord,
    TriggerSource,
    TriggerType,
    active_mode,
)
from quotawake.observability.metrics import ACCOUNTS_CONFIGURED, SCHEDULE_MODE
from quotawake.schedule.calendar import ApschedulerCalendar
from quotawake.schedule.fallback import FallbackScheduler, fallback_enabled
from quotawake.schedule.time_window import parse_hhmm
from quotawake.storage.credentials import JsonCredentialStore
from quotawake.storage.state_store import JsonStateStore
from quotawake.trigger.decision import ResetDecisionEngine
from quotawake.trigger.dispatcher import TriggerDispatcher
from quotawake.trigger.history import TriggerHistory
from quotawake.trigger.model_cache import ModelCatalogCache, filter_models_by_constants, snapshots_to_catalog
from quotawake.trigger.mutex import AccountMutex
from quotawake.trigger.orchestrator import ResetOrchestrator, resolve_accounts

logger = logging.getLogger(__name__)

SCHEDULE_CONFIG_KEY = "scheduleConfig"


class AutoTriggerController:
    def __init__(
        self,
        store: StateStore,
        accounts: AccountStore,
        tokens: TokenProvider,
        catalog: ModelCatalogSource,
        history: TriggerHistory,
        dispatcher: TriggerDispatcher,
        orchestrator: ResetOrchestrator,
        calendar: CalendarScheduler,
        model_cache: ModelCatalogCache,
        fallback: FallbackScheduler | None = None,
        notifier: StateNotifier | None = None,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.tokens = tokens
        self.catalog = catalog
        self.history = history
        self.dispatcher = dispatcher
        self.orchestrator = orchestrator
        self.calendar = calendar
        self.model_cache = model_cache
        self.fallback = fallback or FallbackScheduler(self._execute_fallback_trigger)
        self.notifier = notifier
        self.mutex = AccountMutex()
        self.quota_model_constants: list[str] = []
        self._initialized = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Restore the saved schedule and arm its timers. Safe to call twice."""
        if self._initialized:
            return

        cached = self.model_cache.load(allow_stale=True)
        if cached:
            self.orchestrator.model_constants.update({m.id: m.model_constant for m in cached})

        config = self.get_schedule()
        self._apply_schedule(config)
        self._initialized = True
        logger.info("Auto-trigger controller initialized (mode=%s)", active_mode(config).value)

    def dispose(self) -> None:
        self.fallback.stop()
        self.calendar.stop()
        logger.info("Auto-trigger controller disposed")

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def get_schedule(self) -> ScheduleConfig:
        raw = self.store.get_state(SCHEDULE_CONFIG_KEY)
        if not raw:
            return ScheduleConfig()
        return ScheduleConfig.model_validate(raw)

    async def save_schedule(self, config: ScheduleConfig) -> None:
        """Validate, persist and apply ``config``.

        Raises ConfigurationError, leaving the previous schedule in place, when
        the crontab or any time of day is malformed, or when an enabled
        schedule has no models or no usable accounts.
        """
        if config.crontab and config.crontab.strip():
            error = self.calendar.validate_crontab(config.crontab)
            if error:
                raise ConfigurationError(f"Invalid crontab expression: {error}")

        self._validate_times(config)

        if config.enabled:
            if not config.selected_models:
                raise ConfigurationError("Select at least one model before enabling the schedule")
            accounts = await resolve_accounts(self.accounts, config.selected_accounts)
            if not accounts:
                raise ConfigurationError("No authorized account available for this schedule")

        self.store.save_state(SCHEDULE_CONFIG_KEY, config.model_dump(mode="json"))
        self._apply_schedule(config)
        logger.info("Schedule saved (mode=%s)", active_mode(config).value)
        await self._notify()

    @staticmethod
    def _validate_times(config: ScheduleConfig) -> None:
        times = [*config.daily_times, *config.weekly_times, *config.fallback_times, config.interval_start_time]
        times += [t for t in (config.interval_end_time, config.time_window_start, config.time_window_end) if t]
        for value in times:
            try:
                parse_hhmm(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid time of day: {value!r}") from e
        if any(not 0 <= d <= 7 for d in config.weekly_days):
            raise ConfigurationError("Weekly days must be between 0 and 7 (both Sunday)")
        if config.interval_hours < 1:
            raise ConfigurationError("Interval must be at least one hour")

    def _apply_schedule(self, config: ScheduleConfig) -> None:
        """Cancel every timer, then arm exactly the ones the active mode needs."""
        self.calendar.stop()
        self.fallback.stop()

        mode = active_mode(config)
        if mode == ScheduleMode.QUOTA_RESET:
            if fallback_enabled(config):
                self.fallback.start(config)
            logger.info("Wake-on-reset mode enabled, calendar scheduler not started")
        elif mode == ScheduleMode.CALENDAR:
            self.calendar.set_schedule(config, self.execute_scheduled_trigger)
        else:
            logger.info("All triggers disabled")

        for m in ScheduleMode:
            SCHEDULE_MODE.labels(mode=m.value).set(1.0 if m == mode else 0.0)

    def describe_schedule(self, config: ScheduleConfig) -> str:
        return self.calendar.describe(config)

    def config_to_crontab(self, config: ScheduleConfig) -> str:
        return self.calendar.config_to_crontab(config)

    def validate_crontab(self, crontab: str) -> tuple[bool, str | None, str | None]:
        """Return (valid, description, error)."""
        error = self.calendar.validate_crontab(crontab)
        if error:
            return False, None, error
        return True, self.calendar.describe(ScheduleConfig(crontab=crontab)), None

    def get_presets(self) -> list[SchedulePreset]:
        return list(SCHEDULE_PRESETS)

    def next_trigger_time(self) -> str | None:
        config = self.get_schedule()
        mode = active_mode(config)
        if mode == ScheduleMode.CALENDAR:
            next_run = self.calendar.next_run_time()
            return next_run.isoformat() if next_run else None
        if mode == ScheduleMode.QUOTA_RESET and self.fallback.next_fire_at is not None:
            return self.fallback.next_fire_at.astimezone().isoformat()
        return None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def trigger_now(
        self,
        models: list[str] | None = None,
        prompt: str | None = None,
        accounts: list[str] | None = None,
        max_output_tokens: int | None = None,
    ) -> TriggerNowResult:
        """Manually trigger the given (or configured) models on each resolved account, one account at a time."""
        emails = await resolve_accounts(self.accounts, accounts)
        if not emails:
            return TriggerNowResult(success=False, error="No authorized account available")

        config = self.get_schedule()
        targets = models or config.selected_models
        max_tokens = max_output_tokens if max_output_tokens and max_output_tokens > 0 else config.max_output_tokens

        any_success = False
        total_ms = 0
        first_response: str | None = None
        first_error: str | None = None
        for email in emails:
            try:
                record = await self.dispatcher.dispatch(
                    models=targets,
                    prompt=prompt,
                    account_email=email,
                    max_output_tokens=max_tokens,
                    trigger_type=TriggerType.MANUAL,
                    trigger_source=TriggerSource.MANUAL,
                )
            except Exception as e:
                logger.exception("Manual trigger failed for %s", email)
                first_error = first_error or f"{email}: {type(e).__name__}: {e}"
                continue
            total_ms += record.duration_ms or 0
            if record.success:
                any_success = True
                first_response = first_response or record.message
            elif first_error is None:
                first_error = record.message

        await self._notify()
        return TriggerNowResult(
            success=any_success,
            duration_ms=total_ms or None,
            error=None if any_success else (first_error or "Unknown error"),
            response=first_response if any_success else None,
        )

    async def execute_scheduled_trigger(self) -> list[TriggerRecord]:
        """Calendar firing: dispatch the configured models to every resolved account."""
        config = self.get_schedule()
        source = TriggerSource.CRONTAB if config.crontab and config.crontab.strip() else TriggerSource.SCHEDULED
        return await self._dispatch_all(config, source)

    async def _execute_fallback_trigger(self, config: ScheduleConfig) -> None:
        await self._dispatch_all(config, TriggerSource.SCHEDULED)

    async def _dispatch_all(self, config: ScheduleConfig, source: TriggerSource) -> list[TriggerRecord]:
        emails = await resolve_accounts(self.accounts, config.selected_accounts)
        if not emails:
            logger.warning("%s trigger skipped: no valid accounts", source.value.capitalize())
            return []

        records: list[TriggerRecord] = []
        for email in emails:
            try:
                record = await self.dispatcher.dispatch(
                    models=config.selected_models,
                    prompt=config.custom_prompt,
                    account_email=email,
                    max_output_tokens=config.max_output_tokens,
                    trigger_type=TriggerType.AUTO,
                    trigger_source=source,
                )
            except Exception:
                logger.exception("%s trigger failed for %s", source.value.capitalize(), email)
                continue
            if record.success:
                logger.info("%s trigger successful for %s", source.value.capitalize(), email)
            else:
                logger.error("%s trigger failed for %s: %s", source.value.capitalize(), email, record.message)
            records.append(record)

        await self._notify()
        return records

    async def check_and_trigger_on_quota_reset(self) -> list[TriggerRecord]:
        records = await self.orchestrator.run(self.get_schedule())
        if records:
            await self._notify()
        return records

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def switch_account(self, email: str) -> None:
        async def _switch() -> None:
            if await self.accounts.get_credential(email) is None:
                raise ConfigurationError(f"Unknown account: {email}")
            await self.accounts.set_active_account(email)
            logger.info("Switched to account: %s", email)

        await self.mutex.run(_switch, name=f"switch account {email}")
        await self._notify()

    async def import_account(self, credential: OAuthCredential) -> None:
        async def _import() -> None:
            await self.accounts.save_credential(credential.email, credential)
            logger.info("Imported account: %s", credential.email)

        await self.mutex.run(_import, name=f"import account {credential.email}")
        await self._notify()

    async def remove_account(self, email: str) -> None:
        await self.mutex.run(lambda: self._remove_account(email), name=f"remove account {email}")
        await self._notify()

    async def _remove_account(self, email: str) -> None:
        await self.accounts.delete_credential(email)
        logger.info("Removed account: %s", email)

        config = self.get_schedule()
        remaining = set(await self.accounts.list_accounts())
        changed = False

        if config.selected_accounts is not None:
            kept = [a for a in config.selected_accounts if a in remaining]
            if len(kept) != len(config.selected_accounts):
                config = config.model_copy(update={"selected_accounts": kept})
                changed = True
                if not kept and config.enabled:
                    config = config.model_copy(update={"enabled": False})
                    logger.info("All selected accounts removed, disabling schedule")

        if not remaining and config.enabled:
            config = config.model_copy(update={"enabled": False})
            changed = True
            logger.info("No accounts left, disabling schedule")

        if changed:
            self.store.save_state(SCHEDULE_CONFIG_KEY, config.model_dump(mode="json"))
            self._apply_schedule(config)

    async def revoke_authorization(self) -> None:
        """Forget every account and disable the schedule."""

        async def _revoke() -> None:
            await self.accounts.delete_all()
            config = self.get_schedule().model_copy(update={"enabled": False})
            self.store.save_state(SCHEDULE_CONFIG_KEY, config.model_dump(mode="json"))
            self._apply_schedule(config)
            logger.info("Authorization revoked for all accounts")

        await self.mutex.run(_revoke, name="revoke authorization")
        await self._notify()

    async def revoke_active_account(self) -> None:
        active = await self.accounts.get_active_account()
        if active is None:
            await self.revoke_authorization()
            return
        await self.remove_account(active)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def set_quota_models(self, constants: list[str]) -> None:
        """Limit the advertised catalog to these model constants, in this order."""
        self.quota_model_constants = list(constants)

    async def available_models(self, force_refresh: bool = False) -> list[ModelInfo]:
        """Return the model catalog from cache, falling back to a stale cache if the live fetch fails."""
        if not force_refresh:
            cached = self.model_cache.load()
            if cached is not None:
                return filter_models_by_constants(cached, self.quota_model_constants)

        models = await self._fetch_catalog()
        if models is None:
            stale = self.model_cache.load(allow_stale=True) or []
            return filter_models_by_constants(stale, self.quota_model_constants)
        return filter_models_by_constants(models, self.quota_model_constants)

    async def _fetch_catalog(self) -> list[ModelInfo] | None:
        email = await self.accounts.get_active_account()
        if email is None:
            return None
        token = await self.tokens.get_access_token_status(email)
        if token.state != TokenState.OK or not token.token:
            logger.debug("Catalog fetch skipped: no access token (%s)", token.state.value)
            return None

        credential = await self.accounts.get_credential(email)
        try:
            snapshots = await self.catalog.fetch_available_models(token.token, credential.project_id if credential else None)
        except QuotaWakeError as e:
            logger.warning("Model catalog fetch failed, using cache: %s", e)
            return None

        models = snapshots_to_catalog(snapshots)
        self.model_cache.save(models)
        self.orchestrator.remember_constants(snapshots)
        return models

    async def authorization_status(self) -> AuthorizationStatus:
        credentials = await self.accounts.get_all_credentials()
        active = await self.accounts.get_active_account()
        ACCOUNTS_CONFIGURED.set(len(credentials))
        return AuthorizationStatus(
            is_authorized=bool(credentials),
            email=active,
            active_account=active,
            accounts=[
                AccountSummary(email=email, is_active=email == active, is_invalid=cred.is_invalid)
                for email, cred in credentials.items()
            ],
        )

    async def get_state(self) -> AutoTriggerState:
        config = self.get_schedule()
        return AutoTriggerState(
            authorization=await self.authorization_status(),
            schedule=config,
            mode=active_mode(config),
            last_trigger=self.history.last(),
            recent_triggers=self.history.recent(),
            next_trigger_time=self.next_trigger_time(),
            available_models=await self.available_models(),
        )

    async def clear_history(self) -> None:
        self.history.clear()
        await self._notify()

    async def _notify(self) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier(await self.get_state())
        except Exception:
            logger.exception("State notifier failed")


def build_controller(
    settings: Settings,
    notifier: StateNotifier | None = None,
    calendar: CalendarScheduler | None = None,
) -> AutoTriggerController:
    """Assemble a controller backed by the JSON stores and the Cloud Code client."""
    store = JsonStateStore(settings.data_dir)
    accounts = JsonCredentialStore(settings.data_dir)
    tokens = OAuthTokenProvider(
        accounts,
        token_url=settings.oauth_token_url,
        client_id=settings.oauth_client_id,
        client_secret=settings.oauth_client_secret,
    )
    client = CloudCodeClient(settings.cloudcode_base_url, timeout=settings.request_timeout_seconds)
    history = TriggerHistory(
        store,
        max_records=settings.history_max_records,
        max_age=timedelta(days=settings.history_max_days),
    )
    dispatcher = TriggerDispatcher(
        accounts,
        tokens,
        client,
        history,
        max_concurrency=settings.max_trigger_concurrency,
        request_timeout=settings.request_timeout_seconds,
        default_model=settings.default_model,
        default_prompt=settings.default_prompt,
    )
    decisions = ResetDecisionEngine(
        store,
        cooldown=timedelta(minutes=settings.reset_cooldown_minutes),
        safety_margin=timedelta(minutes=settings.reset_safety_margin_minutes),
    )
    orchestrator = ResetOrchestrator(accounts, tokens, client, decisions, dispatcher)
    return AutoTriggerController(
        store=store,
        accounts=accounts,
        tokens=tokens,
        catalog=client,
        history=history,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        calendar=calendar or ApschedulerCalendar(),
        model_cache=ModelCatalogCache(settings.data_dir, ttl_seconds=settings.model_cache_ttl_hours * 3600),
        notifier=notifier,
    )
