"""SQLite-backed store for jobs, ledger entries, participants and ratings.

Designed for single-host usage. Safe across processes via SQLite locks: every
mutation that must not race is a single conditional UPDATE whose affected-row
count tells the caller whether it won.
"""

from __future__ import annotations

import os
import re
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..errors import Conflict, UpstreamUnavailable
from .migrations import ensure_schema
from .models import (  # noqa: F401
    ACTIVE_STATES,
    TERMINAL_STATES,
    UNPAID_PAYOUT_STATES,
    Job,
    JobState,
    JobVariant,
    LedgerEntry,
    Participant,
    PayoutState,
    Rating,
    Role,
    VettingStatus,
    parse_timestamp,
    utcnow,
)


DEFAULT_DB = str(Path.cwd() / "scribedesk.db")

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# An extra SQL fragment and its parameters, ANDed into a WHERE clause
Clause = Tuple[str, Sequence[Any]]


def to_sql(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bool):
        return int(value)
    return value


def _ident(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"invalid identifier: {name!r}")
    return name


def build_predicate(expected: Mapping[str, Any]) -> Clause:
    """Translate ``{column: value}`` into a WHERE fragment.

    ``None`` means IS NULL, a list or tuple means IN, anything else equality.
    """
    parts: List[str] = []
    params: List[Any] = []
    for column, value in expected.items():
        col = _ident(column)
        if value is None:
            parts.append(f"{col} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                parts.append("0")
                continue
            q_marks = ",".join(["?"] * len(values))
            parts.append(f"{col} IN ({q_marks})")
            params.extend(to_sql(v) for v in values)
        else:
            parts.append(f"{col}=?")
            params.append(to_sql(value))
    return " AND ".join(parts) if parts else "1", params


class SQLiteStore:
    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or os.getenv("SCRIBEDESK_DB_PATH", DEFAULT_DB)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.OperationalError as e:
            raise UpstreamUnavailable(f"store unavailable: {e}") from e
        return conn

    def _ensure_schema(self) -> None:
        with self.session() as conn:
            ensure_schema(conn)

    @contextmanager
    def session(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Yield ``conn`` when the caller already holds one, else a fresh autocommit connection."""
        if conn is not None:
            yield conn
            return
        own = self._connect()
        try:
            yield own
        except sqlite3.OperationalError as e:
            raise UpstreamUnavailable(f"store unavailable: {e}") from e
        finally:
            own.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One immediate write transaction. Commits on success, rolls back on any exception."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
        except sqlite3.OperationalError as e:
            raise UpstreamUnavailable(f"store unavailable: {e}") from e
        finally:
            conn.close()

    def insert(self, table: str, fields: Mapping[str, Any], conn: Optional[sqlite3.Connection] = None) -> int:
        columns = [_ident(c) for c in fields]
        q_marks = ",".join(["?"] * len(columns))
        with self.session(conn) as c:
            try:
                cur = c.execute(
                    f"INSERT INTO {_ident(table)}({', '.join(columns)}) VALUES ({q_marks})",
                    tuple(to_sql(v) for v in fields.values()),
                )
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise Conflict(f"duplicate {table} record: {e}") from e
                raise
            return int(cur.lastrowid)

    def conditional_update(
        self,
        table: str,
        entity_id: int,
        expected: Mapping[str, Any],
        new_fields: Mapping[str, Any],
        conn: Optional[sqlite3.Connection] = None,
        extra: Optional[Clause] = None,
    ) -> int:
        """Apply ``new_fields`` to one row only if ``expected`` still holds.

        Returns the number of rows affected (0 or 1). Callers must treat 0 as a
        lost race, never as success.
        """
        assignments = ", ".join(f"{_ident(c)}=?" for c in new_fields)
        where, where_params = build_predicate(expected)
        sql = f"UPDATE {_ident(table)} SET {assignments} WHERE id=? AND {where}"
        params: List[Any] = [to_sql(v) for v in new_fields.values()]
        params.append(entity_id)
        params.extend(where_params)
        if extra:
            sql += f" AND {extra[0]}"
            params.extend(to_sql(v) for v in extra[1])
        with self.session(conn) as c:
            cur = c.execute(sql, tuple(params))
            return cur.rowcount or 0

    def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> List[Dict[str, Any]]:
        where, params = build_predicate(filters or {})
        sql = f"SELECT * FROM {_ident(table)} WHERE {where}"
        if order_by:
            # "col" or "col DESC", comma separated
            terms = []
            for term in order_by.split(","):
                pieces = term.strip().split()
                direction = pieces[1].upper() if len(pieces) > 1 else "ASC"
                if direction not in ("ASC", "DESC"):
                    raise ValueError(f"invalid sort direction: {direction}")
                terms.append(f"{_ident(pieces[0])} {direction}")
            sql += " ORDER BY " + ", ".join(terms)
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, int(limit)]
        with self.session(conn) as c:
            rows = c.execute(sql, tuple(params)).fetchall()
            return [dict(row) for row in rows]

    def get(self, table: str, entity_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
        rows = self.query(table, {"id": entity_id}, limit=1, conn=conn)
        return rows[0] if rows else None

    def execute(self, sql: str, params: Sequence[Any] = (), conn: Optional[sqlite3.Connection] = None) -> int:
        """Run a write statement and return its affected-row count."""
        with self.session(conn) as c:
            cur = c.execute(sql, tuple(to_sql(v) for v in params))
            return cur.rowcount or 0

    def fetch(self, sql: str, params: Sequence[Any] = (), conn: Optional[sqlite3.Connection] = None) -> List[Dict[str, Any]]:
        with self.session(conn) as c:
            rows = c.execute(sql, tuple(to_sql(v) for v in params)).fetchall()
            return [dict(row) for row in rows]

    # --- typed loaders ---

    def load_job(self, job_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Job]:
        row = self.get("jobs", job_id, conn=conn)
        return Job.from_row(row) if row else None

    def load_participant(self, participant_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Participant]:
        rows = self.fetch(
            """
            SELECT p.*, r.average_rating AS average_rating
            FROM participants p
            LEFT JOIN reputations r ON r.participant_id = p.id AND r.role = p.role
            WHERE p.id=?
            """,
            (participant_id,),
            conn=conn,
        )
        return Participant.from_row(rows[0]) if rows else None

    def load_ledger_entry(self, entry_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[LedgerEntry]:
        row = self.get("ledger_entries", entry_id, conn=conn)
        return LedgerEntry.from_row(row) if row else None

    def counts(self) -> Dict[str, int]:
        rows = self.fetch("SELECT state, COUNT(1) AS n FROM jobs GROUP BY state")
        result: Dict[str, int] = {state.value: 0 for state in JobState}
        for row in rows:
            result[row["state"]] = int(row["n"])
        return result
