"""Sends keep-alive requests for one account and folds the outcomes into a TriggerRecord.

Requests run in a small worker pool: ``min(max_concurrency, len(models))``
workers claim the next model index from a shared cursor until none are left.
A batch succeeds if at least one model answered; failures are listed after
the successes in the record message.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from quotawake.client.cloudcode import random_project_id
from quotawake.errors import AuthorizationError, QuotaWakeError
from quotawake.interfaces import AccountStore, KeepAliveTransport, TokenProvider
from quotawake.models import TokenState, TriggerRecord, TriggerSource, TriggerType
from quotawake.observability.metrics import (
    KEEP_ALIVE_DURATION,
    KEEP_ALIVE_REQUESTS_TOTAL,
    KEEP_ALIVE_TOKEN_USAGE,
    TRIGGER_DURATION,
    TRIGGERS_TOTAL,
)
from quotawake.trigger.history import TriggerHistory

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-3-flash"
DEFAULT_PROMPT = "hi"
MAX_CONCURRENCY = 4
REQUEST_TIMEOUT_SECONDS = 30.0


@dataclass
class ModelOutcome:
    model: str
    ok: bool
    message: str
    duration_ms: int
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    trace_id: str | None = None

    def summary_line(self) -> str:
        if not self.ok:
            return f"[[{self.model}]]: ERROR {self.message} ({self.duration_ms}ms)"
        tokens = ""
        if self.prompt_tokens is not None or self.total_tokens is not None:
            tokens = f", tokens={_q(self.prompt_tokens)}+{_q(self.completion_tokens)}={_q(self.total_tokens)}"
        trace = f", traceId={self.trace_id}" if self.trace_id else ""
        return f"[[{self.model}]]: {self.message} ({self.duration_ms}ms{tokens}{trace})"


def _q(value: int | None) -> str:
    return "?" if value is None else str(value)


def summarize(outcomes: list[ModelOutcome]) -> str:
    """Success lines first, then failures, separated by blank lines."""
    lines = [o.summary_line() for o in outcomes if o.ok] + [o.summary_line() for o in outcomes if not o.ok]
    return "\n\n".join(lines)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class TriggerDispatcher:
    def __init__(
        self,
        accounts: AccountStore,
        tokens: TokenProvider,
        transport: KeepAliveTransport,
        history: TriggerHistory,
        max_concurrency: int = MAX_CONCURRENCY,
        request_timeout: float = REQUEST_TIMEOUT_SECONDS,
        default_model: str = DEFAULT_MODEL,
        default_prompt: str = DEFAULT_PROMPT,
    ) -> None:
        self.accounts = accounts
        self.tokens = tokens
        self.transport = transport
        self.history = history
        self.max_concurrency = max(1, max_concurrency)
        self.request_timeout = request_timeout
        self.default_model = default_model
        self.default_prompt = default_prompt

    async def dispatch(
        self,
        models: list[str] | None = None,
        prompt: str | None = None,
        account_email: str | None = None,
        max_output_tokens: int = 0,
        trigger_type: TriggerType = TriggerType.MANUAL,
        trigger_source: TriggerSource | None = None,
    ) -> TriggerRecord:
        """Send one keep-alive per model for ``account_email`` and record the outcome."""
        started = time.monotonic()
        targets = list(models) if models else [self.default_model]
        prompt_text = (prompt or "").strip() or self.default_prompt
        max_tokens = max(0, int(max_output_tokens))
        source = trigger_source or (TriggerSource.MANUAL if trigger_type == TriggerType.MANUAL else TriggerSource.SCHEDULED)
        email = account_email or await self.accounts.get_active_account()

        logger.info(
            "Starting %s trigger%s for models: %s",
            trigger_type.value,
            f" ({email})" if email else "",
            ", ".join(targets),
        )

        stage = "get_access_token"
        try:
            if not email:
                raise AuthorizationError("No account available. Please authorize first.")
            token = await self._access_token(email)
            stage = "get_project_id"
            project_id = await self._project_id(email, token)
        except QuotaWakeError as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.error("Trigger failed for %s (stage=%s, source=%s): %s", email, stage, source.value, e)
            record = TriggerRecord(
                timestamp=_now_iso(),
                success=False,
                prompt=f"Prompt: {prompt_text}",
                message=str(e),
                duration_ms=elapsed_ms,
                trigger_type=trigger_type,
                trigger_source=source,
                account_email=email,
            )
            self._finish(record, source)
            return record

        outcomes = await self._send_all(token, project_id, targets, prompt_text, max_tokens)
        succeeded = sum(1 for o in outcomes if o.ok)
        failed = len(outcomes) - succeeded
        usage = next((o for o in outcomes if o.total_tokens is not None), None)

        record = TriggerRecord(
            timestamp=_now_iso(),
            success=succeeded > 0,
            prompt=f"Prompt: {prompt_text}",
            message=summarize(outcomes),
            duration_ms=int((time.monotonic() - started) * 1000),
            total_tokens=usage.total_tokens if usage else None,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
            trace_id=usage.trace_id if usage else None,
            trigger_type=trigger_type,
            trigger_source=source,
            account_email=email,
        )

        if succeeded and not failed:
            logger.info("Trigger successful in %dms", record.duration_ms)
        elif succeeded:
            logger.warning(
                "Trigger completed with partial failures (success=%d, failed=%d) in %dms",
                succeeded,
                failed,
                record.duration_ms,
            )
        else:
            logger.error("Trigger failed for all models (count=%d) in %dms", failed, record.duration_ms)

        self._finish(record, source)
        return record

    def _finish(self, record: TriggerRecord, source: TriggerSource) -> None:
        self.history.add(record)
        status = "success" if record.success else "error"
        TRIGGERS_TOTAL.labels(source=source.value, status=status).inc()
        TRIGGER_DURATION.labels(source=source.value).observe((record.duration_ms or 0) / 1000)

    async def _access_token(self, email: str) -> str:
        result = await self.tokens.get_access_token_status(email)
        if result.state != TokenState.OK or not result.token:
            raise AuthorizationError(f"No valid access token ({result.state.value}). Please authorize first.")
        return result.token

    async def _project_id(self, email: str, token: str) -> str:
        credential = await self.accounts.get_credential(email)
        if credential is not None and credential.project_id:
            return credential.project_id

        try:
            resolved = await self.transport.resolve_project_id(token)
        except QuotaWakeError as e:
            logger.warning("Project id lookup failed for %s: %s", email, e)
            resolved = None

        if resolved:
            await self.accounts.update_project_id(email, resolved)
            logger.info("Resolved project id for %s: %s", email, resolved)
            return resolved

        fallback = random_project_id()
        logger.warning("No project id for %s, using %s", email, fallback)
        return fallback

    async def _send_all(
        self,
        token: str,
        project_id: str,
        models: list[str],
        prompt: str,
        max_output_tokens: int,
    ) -> list[ModelOutcome]:
        results: list[ModelOutcome | None] = [None] * len(models)
        cursor = 0

        async def worker() -> None:
            nonlocal cursor
            while cursor < len(models):
                index = cursor
                cursor += 1
                results[index] = await self._send_one(token, project_id, models[index], prompt, max_output_tokens)

        workers = min(self.max_concurrency, len(models))
        await asyncio.gather(*(worker() for _ in range(workers)))
        return [r for r in results if r is not None]

    async def _send_one(
        self,
        token: str,
        project_id: str,
        model: str,
        prompt: str,
        max_output_tokens: int,
    ) -> ModelOutcome:
        started = time.monotonic()
        try:
            reply = await asyncio.wait_for(
                self.transport.send_keep_alive(token, project_id, model, prompt, max_output_tokens),
                timeout=self.request_timeout,
            )
        except TimeoutError:
            elapsed = time.monotonic() - started
            KEEP_ALIVE_REQUESTS_TOTAL.labels(model=model, status="timeout").inc()
            KEEP_ALIVE_DURATION.labels(model=model).observe(elapsed)
            return ModelOutcome(
                model=model,
                ok=False,
                message=f"Request timed out after {self.request_timeout:g}s",
                duration_ms=int(elapsed * 1000),
            )
        except Exception as e:
            elapsed = time.monotonic() - started
            KEEP_ALIVE_REQUESTS_TOTAL.labels(model=model, status="error").inc()
            KEEP_ALIVE_DURATION.labels(model=model).observe(elapsed)
            logger.warning("Keep-alive for %s failed: %s", model, e)
            return ModelOutcome(model=model, ok=False, message=str(e), duration_ms=int(elapsed * 1000))

        elapsed = time.monotonic() - started
        KEEP_ALIVE_REQUESTS_TOTAL.labels(model=model, status="success").inc()
        KEEP_ALIVE_DURATION.labels(model=model).observe(elapsed)
        if reply.prompt_tokens:
            KEEP_ALIVE_TOKEN_USAGE.labels(type="prompt").inc(reply.prompt_tokens)
        if reply.completion_tokens:
            KEEP_ALIVE_TOKEN_USAGE.labels(type="completion").inc(reply.completion_tokens)

        return ModelOutcome(
            model=model,
            ok=True,
            message=reply.reply,
            duration_ms=int(elapsed * 1000),
            prompt_tokens=reply.prompt_tokens,
            completion_tokens=reply.completion_tokens,
            total_tokens=reply.total_tokens,
            trace_id=reply.trace_id,
        )
