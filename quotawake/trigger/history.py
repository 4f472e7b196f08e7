"""Bounded, time-decayed trigger history persisted under ``triggerHistory``."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import ValidationError

from quotawake.interfaces import StateStore
from quotawake.models import TriggerRecord

logger = logging.getLogger(__name__)

HISTORY_KEY = "triggerHistory"
DEFAULT_MAX_RECORDS = 40
DEFAULT_MAX_AGE = timedelta(days=7)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _record_time(record: TriggerRecord) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(record.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class TriggerHistory:
    """Newest-first list of trigger records, pruned by count and age on every append."""

    def __init__(
        self,
        store: StateStore,
        max_records: int = DEFAULT_MAX_RECORDS,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.max_records = max_records
        self.max_age = max_age
        self.clock = clock
        self._records: list[TriggerRecord] = []
        self.load()

    def load(self) -> None:
        """Load persisted records, dropping malformed entries, and re-prune."""
        raw = self.store.get_state(HISTORY_KEY, []) or []
        records: list[TriggerRecord] = []
        for item in raw:
            try:
                records.append(TriggerRecord.model_validate(item))
            except ValidationError:
                logger.warning("Dropping malformed trigger record: %r", item)
        before = len(records)
        self._records = self._prune(records)
        if len(self._records) != before:
            self._persist()
        logger.debug("Loaded %d trigger records", len(self._records))

    def _prune(self, records: list[TriggerRecord]) -> list[TriggerRecord]:
        cutoff = self.clock() - self.max_age
        kept: list[TriggerRecord] = []
        for record in records:
            ts = _record_time(record)
            if ts is not None and ts < cutoff:
                continue
            kept.append(record)
        return kept[: self.max_records]

    def _persist(self) -> None:
        self.store.save_state(HISTORY_KEY, [r.model_dump(mode="json") for r in self._records])

    def add(self, record: TriggerRecord) -> None:
        self._records = self._prune([record, *self._records])
        self._persist()

    def recent(self) -> list[TriggerRecord]:
        return list(self._records)

    def last(self) -> TriggerRecord | None:
        return self._records[0] if self._records else None

    def clear(self) -> None:
        self._records = []
        self._persist()
        logger.info("Trigger history cleared")
