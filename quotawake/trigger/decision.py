"""Quota-reset detection.

A model has "just reset" when its quota is full and it reports a reset
timestamp we have not fired for yet.  Two guards sit on top of that:

* safety margin: the backend's reset time is only trusted once it is a couple
  of minutes in the past, so a fire never lands in the old cycle;
* cooldown: at most one fire per tracked key every few minutes, regardless of
  how the reported timestamp jitters.

Watermarks are persisted through the injected state store under
``lastResetTriggerTimestamps`` (key -> ISO reset time) and
``lastResetTriggerAt`` (key -> epoch milliseconds).
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from quotawake.interfaces import StateStore
from quotawake.observability.metrics import RESET_DECISIONS_TOTAL

logger = logging.getLogger(__name__)

RESET_TIMESTAMPS_KEY = "lastResetTriggerTimestamps"
RESET_FIRED_AT_KEY = "lastResetTriggerAt"

DEFAULT_COOLDOWN = timedelta(minutes=10)
DEFAULT_SAFETY_MARGIN = timedelta(minutes=2)


def tracked_key(email: str, model: str) -> str:
    """Build the per-account, per-model key watermarks are stored under."""
    return f"{email}:{model}"


def _parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResetDecisionEngine:
    def __init__(
        self,
        store: StateStore,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.cooldown = cooldown
        self.safety_margin = safety_margin
        self.clock = clock
        self._reset_timestamps: dict[str, str] = {}
        self._fired_at: dict[str, int] = {}
        self.load()

    def load(self) -> None:
        """(Re)read both watermark maps from the store."""
        self._reset_timestamps = dict(self.store.get_state(RESET_TIMESTAMPS_KEY, {}) or {})
        self._fired_at = dict(self.store.get_state(RESET_FIRED_AT_KEY, {}) or {})

    def last_reset_at(self, key: str) -> str | None:
        return self._reset_timestamps.get(key)

    def last_fired_at(self, key: str) -> int | None:
        return self._fired_at.get(key)

    def should_fire(self, key: str, reset_at: str, remaining: int, limit: int) -> bool:
        """Return True if ``key`` just reset and has not been fired for this cycle."""
        if remaining < limit:
            RESET_DECISIONS_TOTAL.labels(outcome="not_full").inc()
            return False

        now = self.clock()
        last_reset = self._reset_timestamps.get(key)

        if last_reset:
            last_reset_dt = _parse_iso(last_reset)
            if last_reset_dt is not None and now < last_reset_dt + self.safety_margin:
                logger.debug("Skip %s: previous reset %s is inside the safety margin", key, last_reset)
                RESET_DECISIONS_TOTAL.labels(outcome="safety_margin").inc()
                return False

        last_fired_ms = self._fired_at.get(key)
        if last_fired_ms is not None:
            elapsed_ms = now.timestamp() * 1000 - last_fired_ms
            if elapsed_ms < self.cooldown.total_seconds() * 1000:
                logger.debug("Skip %s: fired %.0fs ago, inside cooldown", key, elapsed_ms / 1000)
                RESET_DECISIONS_TOTAL.labels(outcome="cooldown").inc()
                return False

        if last_reset == reset_at:
            RESET_DECISIONS_TOTAL.labels(outcome="already_fired").inc()
            return False

        RESET_DECISIONS_TOTAL.labels(outcome="fire").inc()
        return True

    def mark_fired(self, key: str, reset_at: str) -> None:
        """Record a fire for ``key`` and persist both watermark maps immediately."""
        self._reset_timestamps[key] = reset_at
        self._fired_at[key] = int(self.clock().timestamp() * 1000)
        self.store.save_state(RESET_TIMESTAMPS_KEY, dict(self._reset_timestamps))
        self.store.save_state(RESET_FIRED_AT_KEY, dict(self._fired_at))
        logger.info("Marked %s as fired for reset at %s", key, reset_at)
