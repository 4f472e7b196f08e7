"""Data models for schedules, trigger records, quota snapshots and credentials."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class RepeatMode(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    INTERVAL = "interval"


class TriggerType(StrEnum):
    MANUAL = "manual"
    AUTO = "auto"


class TriggerSource(StrEnum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    CRONTAB = "crontab"
    QUOTA_RESET = "quota_reset"


class ScheduleMode(StrEnum):
    """The single mode a saved schedule runs in."""

    QUOTA_RESET = "quota_reset"
    CALENDAR = "calendar"
    DISABLED = "disabled"


class TokenState(StrEnum):
    OK = "ok"
    MISSING = "missing"
    EXPIRED = "expired"
    INVALID_GRANT = "invalid_grant"
    REFRESH_FAILED = "refresh_failed"


class ScheduleConfig(BaseModel):
    """User-facing schedule.

    ``selected_accounts`` is tri-state: ``None`` means the user never picked
    accounts (fall back to the active one), ``[]`` means they deliberately
    picked none.
    """

    enabled: bool = False
    repeat_mode: RepeatMode = RepeatMode.DAILY

    daily_times: list[str] = Field(default_factory=lambda: ["08:00"])
    weekly_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])  # 0 = Sunday
    weekly_times: list[str] = Field(default_factory=lambda: ["08:00"])
    interval_hours: int = 4
    interval_start_time: str = "07:00"
    interval_end_time: str | None = "22:00"

    # Raw crontab overrides repeat_mode; several expressions are joined by ';'
    crontab: str | None = None

    selected_models: list[str] = Field(default_factory=lambda: ["gemini-3-flash"])
    selected_accounts: list[str] | None = None

    wake_on_reset: bool = False
    time_window_enabled: bool = False
    time_window_start: str | None = None
    time_window_end: str | None = None
    fallback_times: list[str] = Field(default_factory=list)

    custom_prompt: str | None = None
    max_output_tokens: int = 0  # 0 = no limit


def active_mode(config: ScheduleConfig) -> ScheduleMode:
    """Resolve which of the mutually exclusive modes a config runs in."""
    if not config.enabled:
        return ScheduleMode.DISABLED
    if config.wake_on_reset:
        return ScheduleMode.QUOTA_RESET
    return ScheduleMode.CALENDAR


class TriggerRecord(BaseModel):
    """Outcome of one dispatch for one account."""

    model_config = ConfigDict(frozen=True)

    timestamp: str  # ISO 8601
    success: bool
    prompt: str | None = None
    message: str | None = None
    duration_ms: int | None = None
    total_tokens: int | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    trace_id: str | None = None
    trigger_type: TriggerType | None = None
    trigger_source: TriggerSource | None = None
    account_email: str | None = None


class ModelInfo(BaseModel):
    """A model as advertised by the catalog."""

    id: str
    display_name: str
    model_constant: str


class ModelQuotaSnapshot(BaseModel):
    """Live quota state for one model of one account."""

    id: str
    display_name: str = ""
    model_constant: str | None = None
    remaining_fraction: float | None = None
    reset_time: str | None = None  # ISO 8601


class KeepAliveReply(BaseModel):
    """Parsed response of a single keep-alive request."""

    reply: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    trace_id: str | None = None
    response_id: str | None = None


class OAuthCredential(BaseModel):
    access_token: str = ""
    refresh_token: str = ""
    expires_at: str | None = None  # ISO 8601
    project_id: str | None = None
    scopes: list[str] = Field(default_factory=list)
    email: str
    is_invalid: bool = False


class AccessTokenResult(BaseModel):
    state: TokenState
    token: str | None = None
    error: str | None = None


class AccountSummary(BaseModel):
    email: str
    is_active: bool
    is_invalid: bool = False


class AuthorizationStatus(BaseModel):
    is_authorized: bool
    email: str | None = None
    accounts: list[AccountSummary] = Field(default_factory=list)
    active_account: str | None = None


class AutoTriggerState(BaseModel):
    """Snapshot pushed to the notifier and served by GET /state."""

    authorization: AuthorizationStatus
    schedule: ScheduleConfig
    mode: ScheduleMode
    last_trigger: TriggerRecord | None = None
    recent_triggers: list[TriggerRecord] = Field(default_factory=list)
    next_trigger_time: str | None = None
    available_models: list[ModelInfo] = Field(default_factory=list)


class SchedulePreset(BaseModel):
    id: str
    name: str
    description: str
    config: ScheduleConfig


SCHEDULE_PRESETS: list[SchedulePreset] = [
    SchedulePreset(
        id="morning",
        name="Morning warm-up",
        description="Every day at 07:00",
        config=ScheduleConfig(repeat_mode=RepeatMode.DAILY, daily_times=["07:00"]),
    ),
    SchedulePreset(
        id="workday",
        name="Workday warm-up",
        description="Weekdays at 08:00",
        config=ScheduleConfig(repeat_mode=RepeatMode.WEEKLY, weekly_days=[1, 2, 3, 4, 5], weekly_times=["08:00"]),
    ),
    SchedulePreset(
        id="every4h",
        name="Every 4 hours",
        description="Every 4 hours from 07:00",
        config=ScheduleConfig(
            repeat_mode=RepeatMode.INTERVAL,
            interval_hours=4,
            interval_start_time="07:00",
            interval_end_time="23:00",
        ),
    ),
]


class TriggerNowResult(BaseModel):
    """Aggregate outcome of a manual trigger across accounts."""

    success: bool
    duration_ms: int | None = None
    error: str | None = None
    response: str | None = None
