"""
Append-only fact ledger.

Every change to a fact is a new row in SQLite; rows are never updated or
deleted (triggers enforce this). The current view is derived on read by
replaying a subject's events, so a reader always sees the state after some
whole number of committed batches.

Submissions are serialised by an asyncio.Lock so that matching against the
current view and appending the resulting events happen as one step.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
import orjson
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dde.exceptions import FactStoreError, PersistenceError
from dde.facts.current import FactReplay, compute_current_facts
from dde.facts.keys import category_for_key
from dde.facts.matching import is_human_override, match_fact, values_equal
from dde.logging import get_logger
from dde.types import (
    CurrentFact,
    ExtractedFact,
    FactCategory,
    FactEvent,
    FactEventType,
    FactSource,
    MatchOutcome,
    MatchType,
)

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS fact_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    subject_id TEXT NOT NULL,
    fact_key TEXT NOT NULL,
    category TEXT NOT NULL,
    value_json TEXT NOT NULL,
    display_value TEXT NOT NULL,
    unit TEXT,
    source TEXT NOT NULL,
    source_confidence INTEGER NOT NULL,
    extracted_text TEXT,
    event_type TEXT NOT NULL,
    supersedes_event_id TEXT,
    related_fact_key TEXT,
    reason TEXT,
    created_at TEXT NOT NULL,
    created_by TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_fact_events_subject ON fact_events(subject_id, fact_key);
CREATE INDEX IF NOT EXISTS idx_fact_events_type ON fact_events(event_type);
CREATE TRIGGER IF NOT EXISTS fact_events_no_update
BEFORE UPDATE ON fact_events
BEGIN
    SELECT RAISE(ABORT, 'fact_events is append-only');
END;
CREATE TRIGGER IF NOT EXISTS fact_events_no_delete
BEFORE DELETE ON fact_events
BEGIN
    SELECT RAISE(ABORT, 'fact_events is append-only');
END;
"""

_COLUMNS = (
    "id, subject_id, fact_key, category, value_json, display_value, unit, source, "
    "source_confidence, extracted_text, event_type, supersedes_event_id, "
    "related_fact_key, reason, created_at, created_by"
)


@dataclass(frozen=True)
class SubmissionResult:
    """What one submission did to the ledger."""

    outcomes: tuple[MatchOutcome, ...]
    events: tuple[FactEvent, ...]
    duplicates: int = 0

    @property
    def disputes(self) -> list[MatchOutcome]:
        return [o for o in self.outcomes if o.type is MatchType.REVIEW_NEEDED]

    def count(self, match_type: MatchType) -> int:
        return sum(1 for o in self.outcomes if o.type is match_type)


def events_for_outcome(
    subject_id: str,
    outcome: MatchOutcome,
    created_by: str,
) -> list[FactEvent]:
    """Translate a match outcome into the ledger events that record it."""
    fact = outcome.fact
    category = fact.category or category_for_key(fact.fact_key)
    existing = outcome.existing

    if outcome.type is MatchType.NEW:
        return [
            FactEvent.create(
                subject_id, fact, FactEventType.CREATED, created_by,
                reason=outcome.reason, category=category,
            )
        ]

    if outcome.type is MatchType.IGNORE:
        return []

    assert existing is not None

    if outcome.type is MatchType.SUPERSEDE:
        event_type = FactEventType.SUPERSEDED
        if existing.is_disputed and is_human_override(fact.source):
            event_type = FactEventType.RESOLVED
        return [
            FactEvent.create(
                subject_id, fact, event_type, created_by,
                supersedes_event_id=existing.current_event_id,
                reason=outcome.reason,
                category=category,
            )
        ]

    # REVIEW_NEEDED: record the competing claim without touching the current value.
    if not outcome.fuzzy:
        return [
            FactEvent.create(
                subject_id, fact, FactEventType.DISPUTED, created_by,
                reason=outcome.reason, category=category,
            )
        ]

    marker = replace(fact, fact_key=existing.fact_key, category=existing.category)
    return [
        FactEvent.create(
            subject_id, fact, FactEventType.DISPUTED, created_by,
            related_fact_key=existing.fact_key,
            reason=outcome.reason,
            category=category,
        ),
        FactEvent.create(
            subject_id, marker, FactEventType.DISPUTED, created_by,
            related_fact_key=fact.fact_key,
            reason=outcome.reason,
            category=existing.category,
        ),
    ]


def _is_live_duplicate(fact: ExtractedFact, current: CurrentFact | None) -> bool:
    """Same (key, value, source) as the current value or the open dispute."""
    if current is None:
        return False
    if current.current_source is fact.source and values_equal(current.current_value, fact.value):
        return True
    details = current.dispute_details
    return (
        details is not None
        and details.related_fact_key is None
        and details.conflicting_source is fact.source
        and values_equal(details.conflicting_value, fact.value)
    )


def _validate(subject_id: str, fact: ExtractedFact) -> None:
    segments = fact.fact_key.split(".")
    if not fact.fact_key or any(not s for s in segments):
        raise FactStoreError(
            "Fact key must be a non-empty dotted path",
            context={"fact_key": fact.fact_key, "subject_id": subject_id},
        )
    if not 0 <= fact.source_confidence <= 100:
        raise FactStoreError(
            "Source confidence must be between 0 and 100",
            context={"fact_key": fact.fact_key, "confidence": fact.source_confidence},
        )


class FactStore:
    """Event-sourced store of facts about deal subjects."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Open the database and create the schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.debug("Fact store initialized", path=str(self.db_path))

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("FactStore not initialized. Call init() first.")
        return self._db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, events: Sequence[FactEvent]) -> int:
        """Append a batch of events atomically.

        Either every event in the batch is committed or none is. Event ids
        are unique, so retrying a batch that may have committed is safe.

        Returns:
            Number of events newly written.

        Raises:
            PersistenceError: If the batch could not be committed.
        """
        self._require_db()
        async with self._lock:
            return await self._write(events)

    async def _write(self, events: Sequence[FactEvent]) -> int:
        if not events:
            return 0
        try:
            return await self._write_with_retry(events)
        except aiosqlite.Error as e:
            raise PersistenceError(
                "Failed to append fact events",
                context={"path": str(self.db_path), "events": len(events), "error": str(e)},
            ) from e

    @retry(
        retry=retry_if_exception_type(aiosqlite.OperationalError),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1.0),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    async def _write_with_retry(self, events: Sequence[FactEvent]) -> int:
        db = self._require_db()
        rows = [self._event_to_row(e) for e in events]
        try:
            cursor = await db.executemany(
                f"INSERT OR IGNORE INTO fact_events ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            await db.commit()
        except aiosqlite.Error:
            await db.rollback()
            raise
        return cursor.rowcount

    async def submit(
        self,
        subject_id: str,
        fact: ExtractedFact,
        created_by: str,
    ) -> MatchOutcome:
        """Match a single fact and record the outcome."""
        result = await self.submit_batch(subject_id, [fact], created_by)
        return result.outcomes[0]

    async def submit_batch(
        self,
        subject_id: str,
        facts: Sequence[ExtractedFact],
        created_by: str,
    ) -> SubmissionResult:
        """Match facts in order and append every resulting event in one batch.

        Each fact is matched against the view as updated by the facts before
        it, so two claims for the same key within one batch are settled the
        same way as if they had been submitted one after the other.
        """
        for fact in facts:
            _validate(subject_id, fact)

        self._require_db()
        async with self._lock:
            replay = FactReplay(await self._fetch_events(subject_id))
            outcomes: list[MatchOutcome] = []
            events: list[FactEvent] = []
            duplicates = 0

            for fact in facts:
                existing = replay.get(fact.fact_key)
                if _is_live_duplicate(fact, existing):
                    duplicates += 1
                    outcomes.append(
                        MatchOutcome(
                            type=MatchType.IGNORE,
                            fact=fact,
                            existing=existing,
                            reason="Identical fact already recorded",
                        )
                    )
                    continue

                outcome = match_fact(fact, replay.current())
                new_events = events_for_outcome(subject_id, outcome, created_by)
                replay.apply_all(new_events)
                outcomes.append(outcome)
                events.extend(new_events)

            await self._write(events)

        result = SubmissionResult(
            outcomes=tuple(outcomes), events=tuple(events), duplicates=duplicates
        )
        logger.info(
            "Facts submitted",
            subject_id=subject_id,
            created_by=created_by,
            submitted=len(facts),
            new=result.count(MatchType.NEW),
            superseded=result.count(MatchType.SUPERSEDE),
            ignored=result.count(MatchType.IGNORE),
            review=result.count(MatchType.REVIEW_NEEDED),
        )
        for dispute in result.disputes:
            logger.warning(
                "Fact needs review",
                subject_id=subject_id,
                fact_key=dispute.fact.fact_key,
                reason=dispute.reason,
            )
        return result

    async def resolve_dispute(
        self,
        subject_id: str,
        fact_key: str,
        value: Any,
        display_value: str,
        resolved_by: str,
        source: FactSource = FactSource.BA_OVERRIDE,
        reason: str | None = None,
    ) -> FactEvent:
        """Settle a fact's value explicitly, closing any open dispute."""
        self._require_db()
        async with self._lock:
            current = FactReplay(await self._fetch_events(subject_id, fact_key)).get(fact_key)
            if current is None:
                raise FactStoreError(
                    "No current fact to resolve",
                    context={"subject_id": subject_id, "fact_key": fact_key},
                )
            fact = ExtractedFact(
                fact_key=fact_key,
                value=value,
                display_value=display_value,
                source=source,
                source_confidence=100,
                category=current.category,
                unit=current.unit,
            )
            event = FactEvent.create(
                subject_id, fact, FactEventType.RESOLVED, resolved_by,
                supersedes_event_id=current.current_event_id,
                reason=reason or "Dispute resolved",
                category=current.category,
            )
            await self._write([event])

        logger.info("Fact resolved", subject_id=subject_id, fact_key=fact_key, by=resolved_by)
        return event

    async def delete_fact(
        self,
        subject_id: str,
        fact_key: str,
        deleted_by: str,
        reason: str | None = None,
    ) -> FactEvent:
        """Record a tombstone; history is kept and the key leaves the view."""
        self._require_db()
        async with self._lock:
            current = FactReplay(await self._fetch_events(subject_id, fact_key)).get(fact_key)
            if current is None:
                raise FactStoreError(
                    "No current fact to delete",
                    context={"subject_id": subject_id, "fact_key": fact_key},
                )
            fact = ExtractedFact(
                fact_key=fact_key,
                value=None,
                display_value="",
                source=current.current_source,
                source_confidence=current.current_confidence,
                category=current.category,
            )
            event = FactEvent.create(
                subject_id, fact, FactEventType.DELETED, deleted_by,
                supersedes_event_id=current.current_event_id,
                reason=reason,
                category=current.category,
            )
            await self._write([event])
        return event

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_events(
        self,
        subject_id: str,
        fact_key: str | None = None,
        event_type: FactEventType | None = None,
    ) -> list[FactEvent]:
        """Events for a subject in ledger order."""
        conditions = ["subject_id = ?"]
        params: list[Any] = [subject_id]
        if fact_key:
            conditions.append("fact_key = ?")
            params.append(fact_key)
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type.value)
        return await self._select(" AND ".join(conditions), params)

    async def _fetch_events(self, subject_id: str, fact_key: str | None = None) -> list[FactEvent]:
        return await self.get_events(subject_id, fact_key)

    async def _select(self, where: str, params: list[Any]) -> list[FactEvent]:
        db = self._require_db()
        try:
            async with db.execute(
                f"SELECT {_COLUMNS} FROM fact_events WHERE {where} ORDER BY seq ASC", params
            ) as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(
                "Failed to read fact events",
                context={"path": str(self.db_path), "error": str(e)},
            ) from e
        return [self._row_to_event(row) for row in rows]

    async def get_current(self, subject_id: str) -> list[CurrentFact]:
        """Current view of a subject's facts, sorted by key."""
        return compute_current_facts(await self._fetch_events(subject_id))

    async def get_fact(self, subject_id: str, fact_key: str) -> CurrentFact | None:
        return FactReplay(await self._fetch_events(subject_id, fact_key)).get(fact_key)

    async def get_history(self, subject_id: str, fact_key: str) -> list[FactEvent]:
        return await self.get_events(subject_id, fact_key)

    async def get_disputed(self, subject_id: str) -> list[CurrentFact]:
        return [f for f in await self.get_current(subject_id) if f.is_disputed]

    async def list_subjects(self) -> list[str]:
        db = self._require_db()
        async with db.execute(
            "SELECT DISTINCT subject_id FROM fact_events ORDER BY subject_id"
        ) as cursor:
            rows = await cursor.fetchall()
        return [row["subject_id"] for row in rows]

    async def count(self, subject_id: str | None = None) -> int:
        db = self._require_db()
        if subject_id:
            query, params = "SELECT COUNT(*) FROM fact_events WHERE subject_id = ?", (subject_id,)
        else:
            query, params = "SELECT COUNT(*) FROM fact_events", ()
        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    @staticmethod
    def _event_to_row(event: FactEvent) -> tuple[Any, ...]:
        return (
            event.id,
            event.subject_id,
            event.fact_key,
            event.category.value,
            orjson.dumps(event.value, default=str).decode("utf-8"),
            event.display_value,
            event.unit,
            event.source.value,
            event.source_confidence,
            event.extracted_text,
            event.event_type.value,
            event.supersedes_event_id,
            event.related_fact_key,
            event.reason,
            event.created_at.isoformat(),
            event.created_by,
        )

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> FactEvent:
        return FactEvent(
            id=row["id"],
            subject_id=row["subject_id"],
            fact_key=row["fact_key"],
            category=FactCategory(row["category"]),
            value=orjson.loads(row["value_json"]),
            display_value=row["display_value"],
            unit=row["unit"],
            source=FactSource(row["source"]),
            source_confidence=row["source_confidence"],
            extracted_text=row["extracted_text"],
            event_type=FactEventType(row["event_type"]),
            supersedes_event_id=row["supersedes_event_id"],
            related_fact_key=row["related_fact_key"],
            reason=row["reason"],
            created_at=datetime.fromisoformat(row["created_at"]),
            created_by=row["created_by"],
        )
