"""
SQLite persistence for analysis runs.

Holds everything the orchestrator needs to survive a crash:
- sessions: one row per run, with progress and the final summary
- transitions: the phase history of each run
- checkpoints: snapshots written after each batch, pruned to a bounded count
- analysis_cache: fingerprints of successfully completed runs

Writes go through a single lock-guarded transaction helper so that a
checkpoint and the session progress it implies are committed together.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
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

from dde.exceptions import PersistenceError
from dde.logging import get_logger
from dde.types import (
    AgentResult,
    AnalysisMode,
    AnalysisSession,
    Checkpoint,
    Phase,
    SessionStatus,
    StateTransition,
    utc_now,
)

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    mode TEXT NOT NULL,
    status TEXT NOT NULL,
    phase_state TEXT NOT NULL,
    total_agents INTEGER NOT NULL,
    completed_agents INTEGER NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    subject_fingerprint TEXT,
    summary_json TEXT,
    results_json TEXT,
    error TEXT,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sessions_subject ON sessions(subject_id);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);

CREATE TABLE IF NOT EXISTS transitions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    from_state TEXT NOT NULL,
    to_state TEXT NOT NULL,
    trigger TEXT NOT NULL,
    metadata_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_session ON transitions(session_id);

CREATE TABLE IF NOT EXISTS checkpoints (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL,
    state TEXT NOT NULL,
    total_cost REAL NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON checkpoints(session_id, seq);

CREATE TABLE IF NOT EXISTS analysis_cache (
    subject_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    mode TEXT NOT NULL,
    session_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (subject_id, fingerprint, mode)
);
"""

Statement = tuple[str, Sequence[Any]]


def _dumps(value: Any) -> str:
    return orjson.dumps(value, default=str).decode("utf-8")


class SessionStore:
    """Sessions, transitions, checkpoints and the result cache."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.debug("Session store initialized", path=str(self.db_path))

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("SessionStore not initialized. Call init() first.")
        return self._db

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def _transaction(self, statements: Sequence[Statement], what: str) -> int:
        """Run statements in one transaction; returns rows changed by the last."""
        self._require_db()
        async with self._lock:
            try:
                return await self._run_with_retry(statements)
            except aiosqlite.Error as e:
                raise PersistenceError(
                    f"Failed to {what}",
                    context={"path": str(self.db_path), "error": str(e)},
                ) from e

    @retry(
        retry=retry_if_exception_type(aiosqlite.OperationalError),
        wait=wait_exponential(multiplier=0.05, min=0.05, max=1.0),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    async def _run_with_retry(self, statements: Sequence[Statement]) -> int:
        db = self._require_db()
        changed = 0
        try:
            for sql, params in statements:
                cursor = await db.execute(sql, params)
                changed = cursor.rowcount
            await db.commit()
        except aiosqlite.Error:
            await db.rollback()
            raise
        return changed

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        db = self._require_db()
        async with db.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        db = self._require_db()
        async with db.execute(sql, params) as cursor:
            return await cursor.fetchone()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, session: AnalysisSession) -> None:
        await self._transaction(
            [
                (
                    "INSERT INTO sessions (id, subject_id, mode, status, phase_state, "
                    "total_agents, completed_agents, total_cost, started_at, "
                    "subject_fingerprint, summary_json, results_json, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session.id,
                        session.subject_id,
                        session.mode.value,
                        session.status.value,
                        session.phase_state.value,
                        session.total_agents,
                        session.completed_agents,
                        session.total_cost,
                        session.started_at.isoformat(),
                        session.subject_fingerprint,
                        _dumps(session.summary),
                        _dumps({n: r.to_dict() for n, r in session.results.items()}),
                        utc_now().isoformat(),
                    ),
                )
            ],
            "create session",
        )
        logger.debug("Session created", session_id=session.id, subject_id=session.subject_id)

    async def update_progress(
        self,
        session_id: str,
        completed_agents: int,
        total_cost: float,
    ) -> None:
        await self._transaction(
            [self._progress_statement(session_id, completed_agents, total_cost)],
            "update session progress",
        )

    @staticmethod
    def _progress_statement(session_id: str, completed_agents: int, total_cost: float) -> Statement:
        return (
            "UPDATE sessions SET completed_agents = ?, total_cost = ?, updated_at = ? "
            "WHERE id = ?",
            (completed_agents, total_cost, utc_now().isoformat(), session_id),
        )

    async def complete_session(
        self,
        session_id: str,
        summary: dict[str, Any],
        results: dict[str, AgentResult],
        total_cost: float,
    ) -> None:
        now = utc_now().isoformat()
        await self._transaction(
            [
                (
                    "UPDATE sessions SET status = ?, phase_state = ?, completed_at = ?, "
                    "summary_json = ?, results_json = ?, completed_agents = ?, "
                    "total_cost = ?, updated_at = ? WHERE id = ?",
                    (
                        SessionStatus.COMPLETED.value,
                        Phase.COMPLETED.value,
                        now,
                        _dumps(summary),
                        _dumps({n: r.to_dict() for n, r in results.items()}),
                        len(results),
                        total_cost,
                        now,
                        session_id,
                    ),
                )
            ],
            "complete session",
        )

    async def mark_failed(
        self,
        session_id: str,
        error: str,
        summary: dict[str, Any] | None = None,
        results: dict[str, AgentResult] | None = None,
    ) -> None:
        """Mark a session permanently failed, keeping any partial output."""
        now = utc_now().isoformat()
        sets = "status = ?, phase_state = ?, completed_at = ?, error = ?, updated_at = ?"
        params: list[Any] = [SessionStatus.FAILED.value, Phase.FAILED.value, now, error, now]
        if summary is not None:
            sets += ", summary_json = ?"
            params.append(_dumps(summary))
        if results is not None:
            sets += ", results_json = ?"
            params.append(_dumps({n: r.to_dict() for n, r in results.items()}))
        params.append(session_id)
        await self._transaction(
            [(f"UPDATE sessions SET {sets} WHERE id = ?", params)], "mark session failed"
        )
        logger.warning("Session marked failed", session_id=session_id, error=error)

    async def get_session(self, session_id: str) -> AnalysisSession | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return AnalysisSession.from_row(dict(row)) if row else None

    async def find_interrupted(self) -> list[AnalysisSession]:
        """Sessions still marked running, i.e. left behind by a crash."""
        rows = await self._fetchall(
            "SELECT * FROM sessions WHERE status = ? AND phase_state NOT IN (?, ?) "
            "ORDER BY started_at ASC",
            (SessionStatus.RUNNING.value, Phase.COMPLETED.value, Phase.FAILED.value),
        )
        return [AnalysisSession.from_row(dict(r)) for r in rows]

    async def list_sessions(
        self,
        subject_id: str | None = None,
        status: SessionStatus | None = None,
        limit: int = 20,
    ) -> list[AnalysisSession]:
        conditions: list[str] = []
        params: list[Any] = []
        if subject_id:
            conditions.append("subject_id = ?")
            params.append(subject_id)
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)
        rows = await self._fetchall(
            f"SELECT * FROM sessions {where} ORDER BY started_at DESC LIMIT ?", params
        )
        return [AnalysisSession.from_row(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def record_transition(self, session_id: str, transition: StateTransition) -> None:
        """Append a transition record and move the session's phase with it."""
        await self._transaction(
            [
                (
                    "INSERT INTO transitions (session_id, from_state, to_state, trigger, "
                    "metadata_json, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        transition.from_state.value,
                        transition.to_state.value,
                        transition.trigger,
                        _dumps(transition.metadata),
                        transition.timestamp.isoformat(),
                    ),
                ),
                (
                    "UPDATE sessions SET phase_state = ?, updated_at = ? WHERE id = ?",
                    (transition.to_state.value, utc_now().isoformat(), session_id),
                ),
            ],
            "record transition",
        )

    async def get_transitions(self, session_id: str) -> list[StateTransition]:
        rows = await self._fetchall(
            "SELECT * FROM transitions WHERE session_id = ? ORDER BY seq ASC", (session_id,)
        )
        return [
            StateTransition(
                from_state=Phase(r["from_state"]),
                to_state=Phase(r["to_state"]),
                trigger=r["trigger"],
                timestamp=datetime.fromisoformat(r["created_at"]),
                metadata=orjson.loads(r["metadata_json"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Write a checkpoint and the session progress it implies, atomically."""
        await self._transaction(
            [
                (
                    "INSERT INTO checkpoints (id, session_id, state, total_cost, data_json, "
                    "created_at) VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        checkpoint.id,
                        checkpoint.session_id,
                        checkpoint.state.value,
                        checkpoint.total_cost,
                        _dumps(checkpoint.to_dict()),
                        checkpoint.created_at.isoformat(),
                    ),
                ),
                self._progress_statement(
                    checkpoint.session_id,
                    len(checkpoint.completed_agents) + len(checkpoint.failed_agents),
                    checkpoint.total_cost,
                ),
            ],
            "save checkpoint",
        )

    async def load_latest_checkpoint(self, session_id: str) -> Checkpoint | None:
        row = await self._fetchone(
            "SELECT data_json FROM checkpoints WHERE session_id = ? ORDER BY seq DESC LIMIT 1",
            (session_id,),
        )
        return Checkpoint.from_dict(orjson.loads(row["data_json"])) if row else None

    async def list_checkpoints(self, session_id: str) -> list[Checkpoint]:
        """Checkpoints of a session, newest first."""
        rows = await self._fetchall(
            "SELECT data_json FROM checkpoints WHERE session_id = ? ORDER BY seq DESC",
            (session_id,),
        )
        return [Checkpoint.from_dict(orjson.loads(r["data_json"])) for r in rows]

    async def last_checkpoint_at(self, session_id: str) -> datetime | None:
        row = await self._fetchone(
            "SELECT created_at FROM checkpoints WHERE session_id = ? ORDER BY seq DESC LIMIT 1",
            (session_id,),
        )
        return datetime.fromisoformat(row["created_at"]) if row else None

    async def prune_checkpoints(self, session_id: str, keep: int) -> int:
        """Delete all but the newest ``keep`` checkpoints; returns rows deleted."""
        deleted = await self._transaction(
            [
                (
                    "DELETE FROM checkpoints WHERE session_id = ? AND seq NOT IN ("
                    "SELECT seq FROM checkpoints WHERE session_id = ? "
                    "ORDER BY seq DESC LIMIT ?)",
                    (session_id, session_id, max(keep, 0)),
                )
            ],
            "prune checkpoints",
        )
        if deleted:
            logger.debug("Pruned checkpoints", session_id=session_id, deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Result cache
    # ------------------------------------------------------------------

    async def store_fingerprint(
        self,
        subject_id: str,
        fingerprint: str,
        mode: AnalysisMode,
        session_id: str,
    ) -> None:
        await self._transaction(
            [
                (
                    "INSERT OR REPLACE INTO analysis_cache (subject_id, fingerprint, mode, "
                    "session_id, created_at) VALUES (?, ?, ?, ?, ?)",
                    (subject_id, fingerprint, mode.value, session_id, utc_now().isoformat()),
                )
            ],
            "store fingerprint",
        )

    async def lookup_cached(
        self,
        subject_id: str,
        fingerprint: str,
        mode: AnalysisMode,
        ttl_seconds: float | None,
    ) -> tuple[AnalysisSession, float] | None:
        """Completed session for these inputs, with its age in seconds.

        Returns None when nothing is cached, the entry is older than
        ``ttl_seconds`` or the cached session is no longer completed.
        """
        row = await self._fetchone(
            "SELECT session_id, created_at FROM analysis_cache "
            "WHERE subject_id = ? AND fingerprint = ? AND mode = ?",
            (subject_id, fingerprint, mode.value),
        )
        if row is None:
            return None

        age = (utc_now() - datetime.fromisoformat(row["created_at"])).total_seconds()
        if ttl_seconds is not None and age > ttl_seconds:
            logger.debug("Cached analysis is stale", subject_id=subject_id, age_seconds=age)
            return None

        session = await self.get_session(row["session_id"])
        if session is None or session.status is not SessionStatus.COMPLETED:
            return None
        return session, age
