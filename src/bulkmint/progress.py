"""SQLite-backed progress ledger.

Rows are keyed by (flow, key). Status only moves forward and processed counters
only grow, except for ``rollback_processed`` which reconciliation uses to re-open
dropped fire-and-forget units. Every write is committed before the call returns.
"""

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterable
from contextlib import contextmanager
from pathlib import Path

import bulkmint.constants as C
from bulkmint.errors import ConfigurationError

log = logging.getLogger("bulkmint.progress")


class ProgressLedger:
    """Durable record of completed operations and submitted units."""

    def __init__(self, db_path: str | Path = "bulkmint_progress.db") -> None:
        self.db_path = Path(db_path)
        self._lock = asyncio.Lock()
        self._init_db()

    @contextmanager
    def _conn(self):
        conn = sqlite3.connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Create tables if they don't exist."""
        with self._conn() as conn:
            conn.executescript(
                """
                -- One row per logical operation
                CREATE TABLE IF NOT EXISTS progress (
                    flow TEXT NOT NULL,
                    key TEXT NOT NULL,
                    row_index INTEGER,
                    status TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    detail TEXT,  -- JSON blob of operation outputs
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (flow, key)
                );
                CREATE INDEX IF NOT EXISTS idx_progress_status ON progress(flow, status);

                -- Submission attempts, written before they are sent. A grouped batch
                -- shares one signature across several (key, unit) rows
                CREATE TABLE IF NOT EXISTS submissions (
                    signature TEXT NOT NULL,
                    flow TEXT NOT NULL,
                    key TEXT NOT NULL,
                    unit INTEGER NOT NULL,
                    last_valid_height INTEGER,
                    state TEXT NOT NULL,
                    edition INTEGER,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (signature, key, unit)
                );
                CREATE INDEX IF NOT EXISTS idx_sub_state ON submissions(state);
                CREATE INDEX IF NOT EXISTS idx_sub_key ON submissions(flow, key);

                -- Monotone named counters (edition high-water marks)
                CREATE TABLE IF NOT EXISTS counters (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL,
                    updated_at REAL NOT NULL
                );
                """
            )
            conn.commit()
        log.debug("Progress ledger initialized at %s", self.db_path)

    # =========================================================================
    # Operation progress
    # =========================================================================

    async def load(self, flow: str) -> set[str]:
        """Keys recorded Completed for ``flow``."""
        async with self._lock:
            with self._conn() as conn:
                cursor = conn.execute(
                    "SELECT key FROM progress WHERE flow = ? AND status = ?", (flow, C.OpStatus.COMPLETED)
                )
                return {k for (k,) in cursor.fetchall()}

    async def processed(self, flow: str) -> dict[str, int]:
        async with self._lock:
            with self._conn() as conn:
                cursor = conn.execute("SELECT key, processed FROM progress WHERE flow = ?", (flow,))
                return dict(cursor.fetchall())

    async def status(self, flow: str, key: str) -> C.OpStatus | None:
        async with self._lock:
            with self._conn() as conn:
                row = conn.execute("SELECT status FROM progress WHERE flow = ? AND key = ?", (flow, key)).fetchone()
                return C.OpStatus(row[0]) if row else None

    async def detail_of(self, flow: str, key: str) -> dict:
        async with self._lock:
            with self._conn() as conn:
                row = conn.execute("SELECT detail FROM progress WHERE flow = ? AND key = ?", (flow, key)).fetchone()
        return json.loads(row[0]) if row and row[0] else {}

    async def repeat_of(self, flow: str, key: str) -> int | None:
        """Unit count stored with a counted row, if any."""
        return (await self.detail_of(flow, key)).get("repeat")

    async def record(
        self,
        flow: str,
        key: str,
        status: C.OpStatus,
        *,
        row_index: int | None = None,
        processed: int | None = None,
        detail: dict | None = None,
    ) -> None:
        """Upsert one operation's outcome. A lower-ranked status never overwrites a higher one."""
        async with self._lock:
            with self._conn() as conn:
                row = conn.execute(
                    "SELECT status, processed, row_index, detail FROM progress WHERE flow = ? AND key = ?", (flow, key)
                ).fetchone()
                if row is not None:
                    prev_status, prev_processed, prev_index, prev_detail = row
                    if C.STATUS_RANK[C.OpStatus(prev_status)] > C.STATUS_RANK[status]:
                        log.debug("Keeping %s for %s (ignoring %s)", prev_status, key, status)
                        status = C.OpStatus(prev_status)
                    processed = max(prev_processed, processed or 0)
                    row_index = prev_index if row_index is None else row_index
                    if detail is None and prev_detail:
                        detail = json.loads(prev_detail)
                conn.execute(
                    """
                    INSERT INTO progress (flow, key, row_index, status, processed, detail, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(flow, key) DO UPDATE SET
                        row_index = excluded.row_index,
                        status = excluded.status,
                        processed = excluded.processed,
                        detail = excluded.detail,
                        updated_at = excluded.updated_at
                    """,
                    (
                        flow,
                        key,
                        row_index,
                        str(status),
                        processed or 0,
                        json.dumps(detail) if detail else None,
                        time.time(),
                    ),
                )
                conn.commit()

    async def rollback_processed(self, flow: str, key: str, processed: int) -> None:
        """Lower a row's processed counter so its dropped units are delivered again."""
        async with self._lock:
            with self._conn() as conn:
                row = conn.execute("SELECT status FROM progress WHERE flow = ? AND key = ?", (flow, key)).fetchone()
                if row and row[0] == C.OpStatus.COMPLETED:
                    raise ValueError(f"{key} is Completed and cannot be re-opened")
                conn.execute(
                    "UPDATE progress SET processed = MIN(processed, ?), updated_at = ? WHERE flow = ? AND key = ?",
                    (processed, time.time(), flow, key),
                )
                conn.commit()

    # =========================================================================
    # Submitted units
    # =========================================================================

    async def record_submission(
        self,
        flow: str,
        key: str,
        unit: int,
        signature: str,
        state: C.UnitState,
        *,
        last_valid_height: int | None = None,
        edition: int | None = None,
    ) -> None:
        async with self._lock:
            with self._conn() as conn:
                now = time.time()
                conn.execute(
                    """
                    INSERT INTO submissions (signature, flow, key, unit, last_valid_height, state, edition,
                                             created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(signature, key, unit) DO UPDATE SET
                        state = excluded.state,
                        edition = COALESCE(excluded.edition, submissions.edition),
                        updated_at = excluded.updated_at
                    """,
                    (signature, flow, key, unit, last_valid_height, str(state), edition, now, now),
                )
                conn.commit()

    async def mark_submission(self, signature: str, state: C.UnitState) -> None:
        async with self._lock:
            with self._conn() as conn:
                conn.execute(
                    "UPDATE submissions SET state = ?, updated_at = ? WHERE signature = ?",
                    (str(state), time.time(), signature),
                )
                conn.commit()

    async def supersede_pending(self, flow: str, key: str) -> int:
        """Retire the still-PENDING attempts of a row whose outcome is settled. Returns the count."""
        async with self._lock:
            with self._conn() as conn:
                cursor = conn.execute(
                    "UPDATE submissions SET state = ?, updated_at = ? WHERE flow = ? AND key = ? AND state = ?",
                    (str(C.UnitState.SUPERSEDED), time.time(), flow, key, str(C.UnitState.PENDING)),
                )
                conn.commit()
                return cursor.rowcount

    async def unit_tally(self, flow: str) -> dict[str, tuple[int, int]]:
        """Per key: (units accounted for, next free unit label).

        A unit is accounted for while it has a PENDING, CONFIRMED or DROPPED row;
        REOPENED and SUPERSEDED rows no longer stand for a delivered unit.
        """
        accounted = (C.UnitState.PENDING, C.UnitState.CONFIRMED, C.UnitState.DROPPED)
        marks = ",".join("?" * len(accounted))
        async with self._lock:
            with self._conn() as conn:
                cursor = conn.execute(
                    f"""
                    SELECT key,
                           COUNT(DISTINCT CASE WHEN state IN ({marks}) THEN unit END),
                           MAX(unit) + 1
                    FROM submissions WHERE flow = ? GROUP BY key
                    """,
                    (*(str(s) for s in accounted), flow),
                )
                return {key: (n, next_unit) for key, n, next_unit in cursor.fetchall()}

    async def submissions(
        self, flow: str | None = None, *states: C.UnitState, key: str | None = None
    ) -> list[dict]:
        query = "SELECT signature, flow, key, unit, last_valid_height, state, edition FROM submissions"
        clauses, args = [], []
        if flow is not None:
            clauses.append("flow = ?")
            args.append(flow)
        if key is not None:
            clauses.append("key = ?")
            args.append(key)
        if states:
            clauses.append(f"state IN ({','.join('?' * len(states))})")
            args.extend(str(s) for s in states)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY flow, key, unit"
        async with self._lock:
            with self._conn() as conn:
                cursor = conn.execute(query, args)
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row)) for row in cursor.fetchall()]

    # =========================================================================
    # Counters
    # =========================================================================

    async def counter(self, name: str) -> int:
        async with self._lock:
            with self._conn() as conn:
                row = conn.execute("SELECT value FROM counters WHERE name = ?", (name,)).fetchone()
                return row[0] if row else 0

    async def advance_counter(self, name: str, value: int) -> int:
        """Raise ``name`` to ``value``; a lower value is ignored. Returns the stored value."""
        async with self._lock:
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT INTO counters (name, value, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        value = MAX(counters.value, excluded.value),
                        updated_at = excluded.updated_at
                    """,
                    (name, value, time.time()),
                )
                conn.commit()
                return conn.execute("SELECT value FROM counters WHERE name = ?", (name,)).fetchone()[0]

    # =========================================================================
    # Previous-run files
    # =========================================================================

    @staticmethod
    def merge(previous: Iterable[str] | dict[str, int], current: Iterable[str] | dict[str, int]):
        """Union of two completion views. Counter views keep the larger count per key."""
        if isinstance(previous, dict) or isinstance(current, dict):
            prev = previous if isinstance(previous, dict) else dict.fromkeys(previous, 1)
            cur = current if isinstance(current, dict) else dict.fromkeys(current, 1)
            return {k: max(prev.get(k, 0), cur.get(k, 0)) for k in prev.keys() | cur.keys()}
        return set(previous) | set(current)

    @staticmethod
    def parse_previous(data) -> tuple[set[str], dict[str, int]]:
        """Split a previous-run JSON document into (completed keys, processed counters).

        Accepts a list of keys, ``[key, count]`` pairs, ``[key, value]`` pairs whose
        value is not a count (the key counts as completed), or objects carrying
        ``key``/``pubkey`` and optionally ``processed``.
        """
        if not isinstance(data, list):
            raise ConfigurationError("Previous-run file must hold a JSON array")
        completed: set[str] = set()
        counters: dict[str, int] = {}
        for item in data:
            match item:
                case str():
                    completed.add(item)
                case [str() as key, int() as count] if not isinstance(count, bool):
                    counters[key] = max(counters.get(key, 0), count)
                case [str() as key, *_]:
                    completed.add(key)
                case {"processed": int() as count, **rest} if rest.get("key") or rest.get("pubkey"):
                    key = rest.get("key") or rest.get("pubkey")
                    counters[key] = max(counters.get(key, 0), count)
                case {"key": str() as key} | {"pubkey": str() as key}:
                    completed.add(key)
                case _:
                    raise ConfigurationError(f"Unrecognized previous-run entry: {item!r}")
        return completed, counters

    async def import_previous(self, flow: str, path: str | Path) -> tuple[set[str], dict[str, int]]:
        p = Path(path)
        try:
            data = json.loads(p.read_text())
        except FileNotFoundError as e:
            raise ConfigurationError(f"Previous-run file {p} does not exist") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Previous-run file {p} is not valid JSON: {e}") from e
        completed, counters = self.parse_previous(data)
        for key in completed:
            await self.record(flow, key, C.OpStatus.COMPLETED)
        for key, count in counters.items():
            await self.record(flow, key, C.OpStatus.IN_FLIGHT, processed=count)
        log.info("Imported %d completed and %d counted keys from %s", len(completed), len(counters), p)
        return completed, counters

    async def export_json(self, flow: str, path: str | Path, *, counters: bool = False) -> int:
        """Write the flow's ledger view; returns the number of entries written."""
        if counters:
            view = sorted((await self.processed(flow)).items())
            entries = [[k, n] for k, n in view if n > 0]
        else:
            entries = sorted(await self.load(flow))
        Path(path).write_text(json.dumps(entries, indent=2))
        log.info("Wrote %d entries to %s", len(entries), path)
        return len(entries)
