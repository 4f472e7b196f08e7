"""Quota-reset check pass: accounts x models -> decision engine -> dispatcher."""

import logging
import math
from collections.abc import Callable
from datetime import datetime

from quotawake.interfaces import AccountStore, ModelCatalogSource, TokenProvider
from quotawake.models import (
    ModelQuotaSnapshot,
    ScheduleConfig,
    TokenState,
    TriggerRecord,
    TriggerSource,
    TriggerType,
)
from quotawake.observability.metrics import QUOTA_CHECKS_TOTAL
from quotawake.schedule.time_window import is_in_time_window
from quotawake.trigger.decision import ResetDecisionEngine, tracked_key
from quotawake.trigger.dispatcher import TriggerDispatcher

logger = logging.getLogger(__name__)

QUOTA_LIMIT = 100


async def resolve_accounts(accounts: AccountStore, selected: list[str] | None) -> list[str]:
    """Turn a schedule's account selection into the accounts to act on.

    An explicit list, even an empty one, is honored and filtered to accounts
    that still have a refresh token.  Only a selection that was never made
    (``None``) falls back to the active account, then the first usable one.
    """
    credentials = await accounts.get_all_credentials()
    usable = [email for email, cred in credentials.items() if cred.refresh_token]

    if selected is not None:
        return [email for email in selected if email in usable]

    active = await accounts.get_active_account()
    if active in usable:
        return [active]
    return usable[:1]


def _localnow() -> datetime:
    return datetime.now()


class ResetOrchestrator:
    def __init__(
        self,
        accounts: AccountStore,
        tokens: TokenProvider,
        catalog: ModelCatalogSource,
        decisions: ResetDecisionEngine,
        dispatcher: TriggerDispatcher,
        local_clock: Callable[[], datetime] = _localnow,
    ) -> None:
        self.accounts = accounts
        self.tokens = tokens
        self.catalog = catalog
        self.decisions = decisions
        self.dispatcher = dispatcher
        self.local_clock = local_clock
        self.model_constants: dict[str, str] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def remember_constants(self, snapshots: list[ModelQuotaSnapshot]) -> None:
        for snap in snapshots:
            if snap.model_constant:
                self.model_constants[snap.id] = snap.model_constant

    async def run(self, config: ScheduleConfig) -> list[TriggerRecord]:
        """Run one check pass; overlapping calls are rejected, not queued."""
        if self._running:
            logger.info("Quota reset check already running, skipping")
            QUOTA_CHECKS_TOTAL.labels(outcome="already_running").inc()
            return []

        self._running = True
        try:
            return await self._run(config)
        finally:
            self._running = False

    async def _run(self, config: ScheduleConfig) -> list[TriggerRecord]:
        if not config.enabled or not config.wake_on_reset:
            logger.debug("Wake on reset is disabled, skipping")
            QUOTA_CHECKS_TOTAL.labels(outcome="disabled").inc()
            return []

        if config.time_window_enabled and not is_in_time_window(
            config.time_window_start, config.time_window_end, self.local_clock()
        ):
            logger.debug("Outside time window, quota reset check skipped (fallback times apply)")
            QUOTA_CHECKS_TOTAL.labels(outcome="outside_window").inc()
            return []

        emails = await resolve_accounts(self.accounts, config.selected_accounts)
        if not emails:
            logger.debug("Wake on reset: no valid accounts, skipping")
            QUOTA_CHECKS_TOTAL.labels(outcome="no_accounts").inc()
            return []

        if not config.selected_models:
            logger.debug("Wake on reset: no models selected, skipping")
            QUOTA_CHECKS_TOTAL.labels(outcome="no_models").inc()
            return []

        logger.info("Wake on reset: checking %d accounts, %d models", len(emails), len(config.selected_models))
        records: list[TriggerRecord] = []
        for email in emails:
            try:
                record = await self._check_account(email, config)
            except Exception:
                logger.exception("Quota reset check failed for %s", email)
                continue
            if record is not None:
                records.append(record)

        QUOTA_CHECKS_TOTAL.labels(outcome="completed").inc()
        return records

    async def _check_account(self, email: str, config: ScheduleConfig) -> TriggerRecord | None:
        token_result = await self.tokens.get_access_token_status(email)
        if token_result.state != TokenState.OK or not token_result.token:
            logger.warning("Skipping %s: no usable access token (%s)", email, token_result.state.value)
            return None

        credential = await self.accounts.get_credential(email)
        project_id = credential.project_id if credential else None
        snapshots = await self.catalog.fetch_available_models(token_result.token, project_id)
        if not snapshots:
            logger.debug("No quota data for %s, skipping", email)
            return None
        self.remember_constants(snapshots)

        quota: dict[str, ModelQuotaSnapshot] = {}
        for snap in snapshots:
            if not snap.model_constant or not snap.reset_time:
                continue
            quota[snap.model_constant] = snap
            quota[snap.id] = snap

        to_fire: list[str] = []
        for model_id in config.selected_models:
            constant = self.model_constants.get(model_id)
            snap = quota.get(constant or "") or quota.get(model_id)
            if snap is None or not snap.reset_time:
                logger.debug("Model %s has no quota/reset data for %s", model_id, email)
                continue

            key = tracked_key(email, constant or model_id)
            remaining = math.floor(snap.remaining_fraction * 100) if snap.remaining_fraction is not None else 0
            logger.debug("[%s] %s: remaining=%d%%, reset_at=%s", email, model_id, remaining, snap.reset_time)

            if self.decisions.should_fire(key, snap.reset_time, remaining, QUOTA_LIMIT):
                self.decisions.mark_fired(key, snap.reset_time)
                to_fire.append(model_id)

        if not to_fire:
            return None

        logger.info("[%s] Quota reset detected for %s, triggering", email, ", ".join(to_fire))
        return await self.dispatcher.dispatch(
            models=to_fire,
            prompt=config.custom_prompt,
            account_email=email,
            max_output_tokens=config.max_output_tokens,
            trigger_type=TriggerType.AUTO,
            trigger_source=TriggerSource.QUOTA_RESET,
        )
