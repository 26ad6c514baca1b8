#!/usr/bin/env python3
"""
SQLite storage backend for tmi-stats.

Append-only event tables (signal samples, speed tests, notes) keyed by
millisecond UTC timestamps, plus two derived views:

* ``stats_bands`` expands every stored sample into one row per
  (generation, band). The metrics are generation-wide in the gateway's
  telemetry, so every band of a generation carries the same numbers.
* ``note_spans`` pairs each ``span-start`` note with the next one.

Uses Python's built-in sqlite3 with asyncio.to_thread() for async operations.
There is no automatic migration: a database written by another schema version
is refused.
"""
import asyncio
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .gateway import SignalMap
from .logging_setup import get_logger
from .speedtest import SpeedTestResult

logger = get_logger(__name__)

CURRENT_VERSION = 1

CREATE_SCHEMA_SQL = """
CREATE TABLE schema_version (
    version INTEGER NOT NULL
);

-- One row per accepted poll; signal is the SignalMap JSON
CREATE TABLE stats (
    timestamp INTEGER PRIMARY KEY,
    signal TEXT NOT NULL
);

CREATE VIEW stats_bands AS
SELECT
    s.timestamp AS timestamp,
    g.key AS generation,
    b.value AS band,
    json_extract(g.value, '$.bars') AS bars,
    json_extract(g.value, '$.sinr') AS sinr,
    json_extract(g.value, '$.rsrq') AS rsrq,
    json_extract(g.value, '$.rsrp') AS rsrp,
    json_extract(g.value, '$.rssi') AS rssi,
    json_extract(g.value, '$.cid') AS cid,
    json_extract(g.value, '$.eNBID') AS enbid
FROM stats AS s,
    json_each(s.signal) AS g,
    json_each(g.value, '$.bands') AS b
WHERE g.key IN ('4g', '5g') AND g.type = 'object';

CREATE TABLE speed_tests (
    started INTEGER PRIMARY KEY,
    finished INTEGER NOT NULL,
    result TEXT NOT NULL,
    upload_bps INTEGER NOT NULL,
    download_bps INTEGER NOT NULL
);

CREATE INDEX idx_speed_tests_upload ON speed_tests(upload_bps);
CREATE INDEX idx_speed_tests_download ON speed_tests(download_bps);

CREATE TABLE notes (
    timestamp INTEGER PRIMARY KEY,
    type TEXT NOT NULL CHECK (type IN ('note', 'span-start')),
    text TEXT NOT NULL
);

CREATE VIEW note_spans AS
SELECT
    n.timestamp AS timestamp,
    n.type AS type,
    n.text AS text,
    MIN(m.timestamp) AS end_timestamp
FROM notes AS n
LEFT JOIN notes AS m
    ON n.type = 'span-start'
    AND m.type = 'span-start'
    AND m.timestamp > n.timestamp
GROUP BY n.timestamp, n.type, n.text;
"""

# Tables whose primary key is an auto-assigned timestamp
_TIMESTAMP_KEYS = {"stats": "timestamp", "notes": "timestamp", "speed_tests": "started"}


class StoreError(Exception):
    """Base class for stats database errors."""


class SchemaVersionError(StoreError):
    def __init__(self, found: int, required: int, message: str):
        super().__init__(message)
        self.found = found
        self.required = required


class UpgradeRequiredError(SchemaVersionError):
    def __init__(self, found: int, required: int = CURRENT_VERSION):
        super().__init__(
            found,
            required,
            f"Database schema v{found} is older than the required v{required}; "
            "it must be upgraded before use",
        )


class UnsupportedVersionError(SchemaVersionError):
    def __init__(self, found: int, required: int = CURRENT_VERSION):
        super().__init__(
            found,
            required,
            f"Database schema v{found} is newer than the supported v{required}; "
            "upgrade tmi-stats to read it",
        )


class SchemaIntegrityError(StoreError):
    """The schema version marker is missing or malformed."""


class DuplicateTimestampError(StoreError):
    """A row with the same timestamp key already exists."""


class NoteType(str, Enum):
    NOTE = "note"
    SPAN_START = "span-start"


@dataclass(frozen=True)
class StatsRecord:
    timestamp: int
    signal: SignalMap


@dataclass(frozen=True)
class StatsBandRow:
    timestamp: int
    generation: str
    band: str
    bars: int
    sinr: int
    rsrq: int
    rsrp: int
    rssi: int
    cid: int
    enbid: int | None


@dataclass(frozen=True)
class SpeedTestRecord:
    started: int
    finished: int
    result: SpeedTestResult
    upload_bps: int
    download_bps: int


@dataclass(frozen=True)
class NoteSpan:
    """A note; ``end_timestamp`` is set for span-starts that have a successor."""

    timestamp: int
    type: NoteType
    text: str
    end_timestamp: int | None


def now_ms() -> int:
    return int(time.time() * 1000)


class StatsStore:
    """
    SQLite-backed stats store.

    Owns a single connection; calls are handed to a worker thread and
    serialized with a lock. Use as ``async with StatsStore(path) as store``
    or pair `init()` with `close()`.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._initialized = False

        # Last auto-assigned key per table, for the same-millisecond tiebreak
        self._last_ts: dict[str, int] = {}

    async def __aenter__(self) -> "StatsStore":
        try:
            await self.init()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            if str(self.db_path) != ":memory:":
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._conn = conn
        return self._conn

    async def init(self) -> None:
        """Create the schema, or check that an existing one is usable.

        Raises:
            UpgradeRequiredError: the database has an older schema.
            UnsupportedVersionError: the database has a newer schema.
            SchemaIntegrityError: the version marker is malformed.
            StoreError: the file cannot be opened as a SQLite database.
        """
        if self._initialized:
            return

        def _init_db() -> None:
            with self._lock:
                conn = self._connect()
                row = conn.execute(
                    "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
                ).fetchone()
                if row is None:
                    self._create_schema(conn)
                else:
                    self._check_version(conn)
                self._load_last_timestamps(conn)

        try:
            await asyncio.to_thread(_init_db)
        except sqlite3.DatabaseError as e:
            raise StoreError(f"Cannot open stats database {self.db_path}: {e}") from e
        self._initialized = True

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        logger.info("Creating stats database v%d at %s", CURRENT_VERSION, self.db_path)
        try:
            # executescript() commits first, so the transaction is spelled out
            conn.executescript(
                "BEGIN;\n"
                f"{CREATE_SCHEMA_SQL}\n"
                f"INSERT INTO schema_version (version) VALUES ({CURRENT_VERSION});\n"
                "COMMIT;"
            )
        except sqlite3.Error:
            if conn.in_transaction:
                conn.rollback()
            raise

    @staticmethod
    def _check_version(conn: sqlite3.Connection) -> None:
        rows = conn.execute("SELECT version FROM schema_version").fetchall()
        if len(rows) != 1:
            raise SchemaIntegrityError(
                f"Expected exactly one schema_version row, found {len(rows)}"
            )
        version = rows[0]["version"]
        # bool is an int subclass but never a valid marker
        if type(version) is not int:
            raise SchemaIntegrityError(f"Malformed schema version: {version!r}")
        if version < CURRENT_VERSION:
            raise UpgradeRequiredError(version, CURRENT_VERSION)
        if version > CURRENT_VERSION:
            raise UnsupportedVersionError(version, CURRENT_VERSION)
        logger.debug("Stats database at schema v%d", version)

    def _load_last_timestamps(self, conn: sqlite3.Connection) -> None:
        for table, key in _TIMESTAMP_KEYS.items():
            row = conn.execute(f"SELECT MAX({key}) AS last FROM {table}").fetchone()
            if row["last"] is not None:
                self._last_ts[table] = row["last"]

    def _next_timestamp(self, table: str) -> int:
        """Current time in ms, bumped past the last key handed out for ``table``."""
        ts = now_ms()
        last = self._last_ts.get(table)
        if last is not None and ts <= last:
            ts = last + 1
        return ts

    def _require_conn(self) -> sqlite3.Connection:
        if not self._initialized or self._conn is None:
            raise StoreError("Stats database is not open; call init() first")
        return self._conn

    async def _execute(
        self,
        query: str,
        params: tuple = (),
        fetch: bool = True,
    ) -> list[sqlite3.Row]:
        """Execute a query in a worker thread."""
        conn = self._require_conn()

        def _run() -> list[sqlite3.Row]:
            with self._lock:
                if fetch:
                    return conn.execute(query, params).fetchall()
                with conn:  # transaction
                    conn.execute(query, params)
                return []

        return await asyncio.to_thread(_run)

    async def _insert(self, table: str, query: str, params: tuple, key: int) -> None:
        try:
            await self._execute(query, params, fetch=False)
        except sqlite3.IntegrityError as e:
            if "UNIQUE" in str(e) or "PRIMARY KEY" in str(e):
                raise DuplicateTimestampError(
                    f"{table} already has a row at timestamp {key}"
                ) from e
            raise StoreError(f"Could not insert into {table}: {e}") from e
        if key > self._last_ts.get(table, key - 1):
            self._last_ts[table] = key

    async def get_version(self) -> int:
        rows = await self._execute("SELECT version FROM schema_version")
        return rows[0]["version"]

    # ---- writers

    async def save_signal(self, signal: SignalMap, timestamp: int | None = None) -> int:
        """Store one accepted sample. Returns the timestamp used as its key.

        Raises:
            DuplicateTimestampError: ``timestamp`` is already taken.
        """
        self._require_conn()
        if timestamp is None:
            timestamp = self._next_timestamp("stats")
        await self._insert(
            "stats",
            "INSERT INTO stats (timestamp, signal) VALUES (?, ?)",
            (timestamp, signal.to_json()),
            timestamp,
        )
        return timestamp

    async def save_speed_test(self, started: int, finished: int, result: SpeedTestResult) -> None:
        """Store one speed-test result keyed by its start time (ms UTC)."""
        await self._insert(
            "speed_tests",
            """
            INSERT INTO speed_tests (started, finished, result, upload_bps, download_bps)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                started,
                finished,
                result.to_json(),
                result.upload.bandwidth,
                result.download.bandwidth,
            ),
            started,
        )

    async def save_note(
        self,
        note_type: NoteType | str,
        text: str,
        timestamp: int | None = None,
    ) -> int:
        """Store a note or span marker. Returns the timestamp used as its key."""
        note_type = NoteType(note_type)
        self._require_conn()
        if timestamp is None:
            timestamp = self._next_timestamp("notes")
        await self._insert(
            "notes",
            "INSERT INTO notes (timestamp, type, text) VALUES (?, ?, ?)",
            (timestamp, note_type.value, text),
            timestamp,
        )
        return timestamp

    # ---- queries

    async def get_last_stats(self, n: int = 20) -> list[StatsBandRow]:
        """The ``n`` most recent band rows, newest first."""
        if n <= 0:
            return []
        rows = await self._execute(
            """
            SELECT timestamp, generation, band, bars, sinr, rsrq, rsrp, rssi, cid, enbid
            FROM stats_bands
            ORDER BY timestamp DESC, generation, band
            LIMIT ?
            """,
            (int(n),),
        )
        return [StatsBandRow(**dict(r)) for r in rows]

    async def get_stats(self, start_at: int, end_at: int) -> list[StatsRecord]:
        """Raw samples with ``start_at <= timestamp <= end_at``, oldest first."""
        rows = await self._execute(
            """
            SELECT timestamp, signal FROM stats
            WHERE timestamp >= ? AND timestamp <= ?
            ORDER BY timestamp
            """,
            (int(start_at), int(end_at)),
        )
        return [StatsRecord(r["timestamp"], SignalMap.from_json(r["signal"])) for r in rows]

    async def get_notes(self) -> list[NoteSpan]:
        """All notes with their span ends, oldest first."""
        rows = await self._execute(
            "SELECT timestamp, type, text, end_timestamp FROM note_spans ORDER BY timestamp"
        )
        return [
            NoteSpan(r["timestamp"], NoteType(r["type"]), r["text"], r["end_timestamp"])
            for r in rows
        ]

    async def get_speed_tests(
        self,
        start_at: int | None = None,
        end_at: int | None = None,
    ) -> list[SpeedTestRecord]:
        """Speed tests started within the (inclusive) window, oldest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if start_at is not None:
            clauses.append("started >= ?")
            params.append(int(start_at))
        if end_at is not None:
            clauses.append("started <= ?")
            params.append(int(end_at))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        rows = await self._execute(
            f"""
            SELECT started, finished, result, upload_bps, download_bps
            FROM speed_tests {where}
            ORDER BY started
            """,
            tuple(params),
        )
        return [
            SpeedTestRecord(
                started=r["started"],
                finished=r["finished"],
                result=SpeedTestResult.from_json(r["result"]),
                upload_bps=r["upload_bps"],
                download_bps=r["download_bps"],
            )
            for r in rows
        ]

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""

        def _close():
            with self._lock:
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None

        await asyncio.to_thread(_close)
        self._initialized = False


async def open_stats_store(db_path: str | Path) -> StatsStore:
    """Create and initialize a stats store."""
    store = StatsStore(db_path)
    try:
        await store.init()
    except BaseException:
        await store.close()
        raise
    return store
