"""
e2e_results.py
==============
SQLite-backed results log for the E2E suite.

Every finished test leaves one row in ``test_results.db``:

    test_results(id, test_name, status, duration_ms,
                 request, response, error, created_at)

The log is written to the working directory (NOT the SUT's temp dir) so it
survives across runs.  It is an audit trail only: if the database cannot be
opened or a row cannot be written, the failure is logged at debug level and
the test run carries on.
"""

import json
import logging
import os
import sqlite3
import threading

log = logging.getLogger("horostracker-e2e")

RESULTS_FILE = "test_results.db"
STATUSES = ("pass", "fail", "skip")

RESULTS_SCHEMA = """
CREATE TABLE IF NOT EXISTS test_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    test_name TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('pass','fail','skip')),
    duration_ms INTEGER NOT NULL,
    request TEXT,
    response TEXT,
    error TEXT,
    created_at DATETIME DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_test_results_name ON test_results(test_name);
CREATE INDEX IF NOT EXISTS idx_test_results_status ON test_results(status);
"""


def _as_json(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class ResultsDB:
    """One open results database; writes are serialized by ``_lock``."""

    def __init__(self, conn: sqlite3.Connection, path: str):
        self.path     = path
        self.recorded = 0
        self._conn    = conn
        self._lock    = threading.Lock()

    @classmethod
    def open(cls, directory: str) -> "ResultsDB":
        path = os.path.join(directory, RESULTS_FILE)
        conn = sqlite3.connect(path, timeout=5.0, check_same_thread=False,
                               isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.executescript(RESULTS_SCHEMA)
        except sqlite3.Error:
            conn.close()
            raise
        return cls(conn, path)

    def record(self, test_name: str, status: str, duration_ms: int,
               request=None, response=None, error: str | None = None):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.execute(
                    "INSERT INTO test_results "
                    "(test_name, status, duration_ms, request, response, error) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (test_name, status, int(duration_ms),
                     _as_json(request), _as_json(response), error),
                )
                self.recorded += 1
            except (sqlite3.Error, TypeError, ValueError) as exc:
                log.debug("[RESULTS] dropped %s (%s): %s", test_name, status, exc)

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# ---------------------------------------------------------------------------
# Shared instance used by the pytest hooks
# ---------------------------------------------------------------------------
_global_results: ResultsDB | None = None
_global_results_lock = threading.Lock()


def init_global_results(directory: str) -> bool:
    """Open the shared results db.  Returns True only if this call opened it."""
    global _global_results
    with _global_results_lock:
        if _global_results is not None:
            return False
        try:
            _global_results = ResultsDB.open(directory)
        except (sqlite3.Error, OSError) as exc:
            # Tests still run, just without result persistence
            log.debug("[RESULTS] recording disabled: %s", exc)
            return False
        log.info("[RESULTS] recording to %s", _global_results.path)
        return True


def close_global_results():
    global _global_results
    with _global_results_lock:
        if _global_results is not None:
            try:
                _global_results.close()
            except sqlite3.Error as exc:
                log.debug("[RESULTS] close failed: %s", exc)
            _global_results = None


def record(test_name: str, status: str, duration_ms: int,
           request=None, response=None, error: str | None = None):
    """Append one result row to the shared db, or do nothing when it is closed."""
    with _global_results_lock:
        rdb = _global_results
    if rdb is None:
        return
    rdb.record(test_name, status, duration_ms, request, response, error)


def recorded_count() -> int:
    with _global_results_lock:
        return _global_results.recorded if _global_results is not None else 0


def results_path(directory: str | None = None) -> str:
    return os.path.join(directory or os.getcwd(), RESULTS_FILE)
