"""Unit tests for trigger engine metrics."""

from prometheus_client import REGISTRY

from quotawake.errors import TransportError
from quotawake.models import KeepAliveReply, ScheduleConfig
from quotawake.observability.metrics import (
    ACCOUNTS_CONFIGURED,
    FALLBACK_FIRES_TOTAL,
    KEEP_ALIVE_DURATION,
    KEEP_ALIVE_REQUESTS_TOTAL,
    KEEP_ALIVE_TOKEN_USAGE,
    QUOTA_CHECKS_TOTAL,
    RESET_DECISIONS_TOTAL,
    SCHEDULE_MODE,
    TRIGGER_DURATION,
    TRIGGERS_TOTAL,
)
from quotawake.trigger.decision import tracked_key

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sample(metric_name: str, labels: dict[str, str] | None = None) -> float:
    """Read current value from the default registry, treating a missing series as 0."""
    return REGISTRY.get_sample_value(metric_name, labels or {}) or 0.0


# ---------------------------------------------------------------------------
# Metric definition tests
# ---------------------------------------------------------------------------


class TestMetricDefinitions:
    """Verify all expected metrics are registered with correct types."""

    def test_triggers_total_is_counter(self) -> None:
        assert TRIGGERS_TOTAL._type == "counter"

    def test_trigger_duration_is_histogram(self) -> None:
        assert TRIGGER_DURATION._type == "histogram"

    def test_keep_alive_metrics(self) -> None:
        assert KEEP_ALIVE_REQUESTS_TOTAL._type == "counter"
        assert KEEP_ALIVE_DURATION._type == "histogram"
        assert KEEP_ALIVE_TOKEN_USAGE._type == "counter"

    def test_reset_metrics_are_counters(self) -> None:
        assert RESET_DECISIONS_TOTAL._type == "counter"
        assert QUOTA_CHECKS_TOTAL._type == "counter"
        assert FALLBACK_FIRES_TOTAL._type == "counter"

    def test_state_metrics_are_gauges(self) -> None:
        assert SCHEDULE_MODE._type == "gauge"
        assert ACCOUNTS_CONFIGURED._type == "gauge"


# ---------------------------------------------------------------------------
# Instrumentation tests
# ---------------------------------------------------------------------------


class TestDispatchInstrumentation:
    async def test_counts_per_model_outcomes(self, dispatcher, cloudcode) -> None:
        cloudcode.replies["metric-ok"] = KeepAliveReply(reply="hi", prompt_tokens=4, completion_tokens=2, total_tokens=6)
        cloudcode.replies["metric-bad"] = TransportError("boom")
        ok_before = _sample("quotawake_keep_alive_requests_total", {"model": "metric-ok", "status": "success"})
        bad_before = _sample("quotawake_keep_alive_requests_total", {"model": "metric-bad", "status": "error"})
        prompt_before = _sample("quotawake_keep_alive_token_usage_total", {"type": "prompt"})
        manual_before = _sample("quotawake_triggers_total", {"source": "manual", "status": "success"})

        await dispatcher.dispatch(models=["metric-ok", "metric-bad"])

        assert _sample("quotawake_keep_alive_requests_total", {"model": "metric-ok", "status": "success"}) == ok_before + 1
        assert _sample("quotawake_keep_alive_requests_total", {"model": "metric-bad", "status": "error"}) == bad_before + 1
        assert _sample("quotawake_keep_alive_token_usage_total", {"type": "prompt"}) == prompt_before + 4
        assert _sample("quotawake_triggers_total", {"source": "manual", "status": "success"}) == manual_before + 1


class TestDecisionInstrumentation:
    def test_counts_outcomes(self, decisions) -> None:
        key = tracked_key("metrics@example.com", "MODEL_X")
        fire_before = _sample("quotawake_reset_decisions_total", {"outcome": "fire"})
        not_full_before = _sample("quotawake_reset_decisions_total", {"outcome": "not_full"})

        decisions.should_fire(key, "2023-12-31T00:00:00Z", 100, 100)
        decisions.should_fire(key, "2023-12-31T00:00:00Z", 50, 100)

        assert _sample("quotawake_reset_decisions_total", {"outcome": "fire"}) == fire_before + 1
        assert _sample("quotawake_reset_decisions_total", {"outcome": "not_full"}) == not_full_before + 1


class TestScheduleModeGauge:
    async def test_tracks_active_mode(self, controller) -> None:
        await controller.save_schedule(ScheduleConfig(enabled=True, daily_times=["07:00"]))

        assert _sample("quotawake_schedule_mode", {"mode": "calendar"}) == 1.0
        assert _sample("quotawake_schedule_mode", {"mode": "disabled"}) == 0.0
        assert _sample("quotawake_schedule_mode", {"mode": "quota_reset"}) == 0.0

    async def test_accounts_gauge(self, controller) -> None:
        await controller.authorization_status()
        assert _sample("quotawake_accounts_configured") == 2.0


class TestQuotaCheckInstrumentation:
    async def test_disabled_pass_counted(self, orchestrator) -> None:
        before = _sample("quotawake_quota_checks_total", {"outcome": "disabled"})

        await orchestrator.run(ScheduleConfig())

        assert _sample("quotawake_quota_checks_total", {"outcome": "disabled"}) == before + 1
