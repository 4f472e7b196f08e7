"""Prometheus metric definitions for trigger engine self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

DISPATCH_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 20.0, 30.0, 60.0)
KEEP_ALIVE_DURATION_BUCKETS = (0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0)

# ---------------------------------------------------------------------------
# Dispatch metrics
# ---------------------------------------------------------------------------

TRIGGERS_TOTAL = Counter(
    "quotawake_triggers_total",
    "Total number of dispatches, one per account",
    labelnames=["source", "status"],
)

TRIGGER_DURATION = Histogram(
    "quotawake_trigger_duration_seconds",
    "Wall-clock duration of one account dispatch in seconds",
    labelnames=["source"],
    buckets=DISPATCH_DURATION_BUCKETS,
)

KEEP_ALIVE_REQUESTS_TOTAL = Counter(
    "quotawake_keep_alive_requests_total",
    "Total number of per-model keep-alive requests",
    labelnames=["model", "status"],
)

KEEP_ALIVE_DURATION = Histogram(
    "quotawake_keep_alive_duration_seconds",
    "Duration of individual keep-alive requests in seconds",
    labelnames=["model"],
    buckets=KEEP_ALIVE_DURATION_BUCKETS,
)

KEEP_ALIVE_TOKEN_USAGE = Counter(
    "quotawake_keep_alive_token_usage",
    "Total tokens spent on keep-alive requests",
    labelnames=["type"],
)

# ---------------------------------------------------------------------------
# Reset detection metrics
# ---------------------------------------------------------------------------

RESET_DECISIONS_TOTAL = Counter(
    "quotawake_reset_decisions_total",
    "Decision engine outcomes per tracked model",
    labelnames=["outcome"],
)

QUOTA_CHECKS_TOTAL = Counter(
    "quotawake_quota_checks_total",
    "Quota-reset check passes by outcome",
    labelnames=["outcome"],
)

FALLBACK_FIRES_TOTAL = Counter(
    "quotawake_fallback_fires_total",
    "Fallback timer firings by outcome",
    labelnames=["outcome"],
)

# ---------------------------------------------------------------------------
# State / info metrics
# ---------------------------------------------------------------------------

SCHEDULE_MODE = Gauge(
    "quotawake_schedule_mode",
    "Currently active schedule mode (1 for the active mode, 0 otherwise)",
    labelnames=["mode"],
)

ACCOUNTS_CONFIGURED = Gauge(
    "quotawake_accounts_configured",
    "Number of accounts with stored credentials",
)

APP_INFO = Info(
    "quotawake",
    "quota-wake build information",
)
