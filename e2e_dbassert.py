"""
e2e_dbassert.py
===============
Direct SQLite assertions against the databases of a running horostracker.

The SUT keeps three databases in its data directory:

    nodes.db     users, nodes, tags, visibility_strata, node_clones, ...
    flows.db     flows, flow_steps
    metrics.db   request metrics  (path kept, never opened here)

DBAssert holds ONE persistent connection per database, opened on first use
and shared by every test.  Each connection is used under its own lock, so
concurrent tests queue up instead of tripping over each other's cursors,
and the SUT's own writers are absorbed by a 10 s busy timeout.
"""

import logging
import re
import sqlite3
import threading

log = logging.getLogger("horostracker-e2e")

BUSY_TIMEOUT_MS = 10_000

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DBAssertError(Exception):
    """A query (or the open that precedes it) failed at the SQLite level."""
    def __init__(self, message: str, query: str = "", args: tuple = ()):
        self.query = query
        self.query_args = tuple(args)
        super().__init__(message)


def _ident(name: str) -> str:
    if not isinstance(name, str) or not _IDENT.match(name):
        raise DBAssertError(f"not a plain SQL identifier: {name!r}")
    return name


def count_query(table: str, where: str = "") -> str:
    """Build a COUNT(*) query for a table with an optional WHERE clause."""
    q = f"SELECT COUNT(*) FROM {_ident(table)}"
    if where:
        q += " WHERE " + where
    return q


class _SerialConnection:
    """A single sqlite3 connection whose statements never interleave."""

    def __init__(self, conn: sqlite3.Connection, label: str):
        self.conn  = conn
        self.label = label
        self._lock = threading.Lock()

    def _run(self, query: str, args, fetch):
        with self._lock:
            try:
                cur = self.conn.execute(query, tuple(args))
                return fetch(cur)
            except sqlite3.Error as exc:
                raise DBAssertError(
                    f"{self.label}: {exc}  query={query.strip()!r} args={list(args)!r}",
                    query, args,
                ) from exc

    def one(self, query: str, args=()):
        return self._run(query, args, lambda cur: cur.fetchone())

    def all(self, query: str, args=()):
        return self._run(query, args, lambda cur: cur.fetchall())

    def write(self, query: str, args=()) -> int:
        return self._run(query, args, lambda cur: cur.rowcount)

    def close(self):
        with self._lock:
            self.conn.close()


def open_connection(path: str, label: str) -> _SerialConnection:
    """Open ``path`` with the busy timeout and WAL journal every test relies on."""
    try:
        conn = sqlite3.connect(
            path,
            timeout=BUSY_TIMEOUT_MS / 1000,
            check_same_thread=False,
            isolation_level=None,          # autocommit: no long transactions
        )
        conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.Error as exc:
        raise DBAssertError(f"opening {label} at {path}: {exc}") from exc
    log.debug("[DB]  opened %s (%s)", label, path)
    return _SerialConnection(conn, label)


class DBAssert:

    def __init__(self, nodes_path: str, flows_path: str, metrics_path: str):
        self.nodes_path   = nodes_path
        self.flows_path   = flows_path
        self.metrics_path = metrics_path

        self._lock       = threading.Lock()
        self._nodes_conn = None
        self._flows_conn = None

    def close(self):
        """Release the persistent connections.  Safe to call more than once."""
        with self._lock:
            for conn in (self._nodes_conn, self._flows_conn):
                if conn is None:
                    continue
                try:
                    conn.close()
                except sqlite3.Error as exc:
                    log.warning("[DB]  closing %s: %s", conn.label, exc)
            self._nodes_conn = None
            self._flows_conn = None

    def nodes(self) -> _SerialConnection:
        with self._lock:
            if self._nodes_conn is None:
                self._nodes_conn = open_connection(self.nodes_path, "nodes.db")
            return self._nodes_conn

    def flows(self) -> _SerialConnection:
        with self._lock:
            if self._flows_conn is None:
                self._flows_conn = open_connection(self.flows_path, "flows.db")
            return self._flows_conn

    # ------------------------------------------------------------------
    # Existence / field / count assertions
    # ------------------------------------------------------------------
    def assert_node_exists(self, node_id: str):
        (count,) = self.nodes().one("SELECT COUNT(*) FROM nodes WHERE id = ?", (node_id,))
        if count == 0:
            raise AssertionError(f"node {node_id} does not exist in nodes.db")

    def _node_value(self, node_id: str, query: str):
        row = self.nodes().one(query, (node_id,))
        if row is None:
            raise AssertionError(f"node {node_id} does not exist in nodes.db")
        return row[0]

    def assert_node_field(self, node_id: str, field: str, expected):
        actual = self._node_value(
            node_id, f"SELECT {_ident(field)} FROM nodes WHERE id = ?")
        if str(actual) != str(expected):
            raise AssertionError(f"node {node_id}.{field} = {actual!r}, want {expected!r}")

    def assert_node_field_at_least(self, node_id: str, field: str, threshold: int):
        actual = self._node_value(
            node_id, f"SELECT COALESCE({_ident(field)}, 0) FROM nodes WHERE id = ?")
        if int(actual) < threshold:
            raise AssertionError(f"node {node_id}.{field} = {actual}, want >= {threshold}")

    def assert_row_count(self, table: str, where: str, args, expected: int):
        (count,) = self.nodes().one(count_query(table, where), args or ())
        if count != expected:
            raise AssertionError(
                f"table {table} (where {where or 'TRUE'}): count = {count}, want {expected}")

    def assert_row_count_at_least(self, table: str, where: str, args, threshold: int):
        (count,) = self.nodes().one(count_query(table, where), args or ())
        if count < threshold:
            raise AssertionError(
                f"table {table} (where {where or 'TRUE'}): count = {count}, want >= {threshold}")

    def assert_temperature(self, node_id: str, expected: str):
        self.assert_node_field(node_id, "temperature", expected)

    # ------------------------------------------------------------------
    # Scalar queries
    # ------------------------------------------------------------------
    def query_scalar(self, query: str, *args):
        """Run a single-value query on nodes.db.  A missing row is an error, not None."""
        row = self.nodes().one(query, args)
        if row is None:
            raise DBAssertError(f"scalar query matched no row: {query!r} args={list(args)!r}",
                                query, args)
        return row[0]

    def query_scalar_int(self, query: str, *args) -> int:
        row = self.nodes().one(query, args)
        if row is None or row[0] is None:
            raise DBAssertError(f"scalar int query returned no value: {query!r} args={list(args)!r}",
                                query, args)
        return int(row[0])

    def execute(self, query: str, *args) -> int:
        """Run one write statement on nodes.db and return the affected row count."""
        return self.nodes().write(query, args)

    def query_flow_steps(self, flow_id: str) -> list:
        rows = self.flows().all(
            """SELECT step_index, model_id, provider, prompt, response_raw,
                      tokens_in, tokens_out, latency_ms
               FROM flow_steps WHERE flow_id = ? ORDER BY step_index""",
            (flow_id,),
        )
        return [
            {
                "step_index":   r[0],
                "model_id":     r[1] or "",
                "provider":     r[2] or "",
                "prompt":       r[3] or "",
                "response_raw": r[4] or "",
                "tokens_in":    r[5] or 0,
                "tokens_out":   r[6] or 0,
                "latency_ms":   r[7] or 0,
            }
            for r in rows
        ]

    def count_flow_steps(self, flow_id: str) -> int:
        (count,) = self.flows().one(
            "SELECT COUNT(*) FROM flow_steps WHERE flow_id = ?", (flow_id,))
        return count

    # ------------------------------------------------------------------
    # Visibility, roles, strata, clones
    # ------------------------------------------------------------------
    def node_visibility(self, node_id: str) -> str:
        return self._node_value(
            node_id, "SELECT COALESCE(visibility, 'public') FROM nodes WHERE id = ?")

    def assert_node_visibility(self, node_id: str, expected: str):
        vis = self.node_visibility(node_id)
        if vis != expected:
            raise AssertionError(f"node {node_id} visibility = {vis!r}, want {expected!r}")

    def assert_node_visibility_not(self, node_id: str, not_expected: str):
        vis = self.node_visibility(node_id)
        if vis == not_expected:
            raise AssertionError(f"node {node_id} visibility should not be {not_expected!r}")

    def set_node_visibility(self, node_id: str, visibility: str):
        self.execute("UPDATE nodes SET visibility = ? WHERE id = ?", visibility, node_id)

    def promote_user(self, handle: str, role: str) -> int:
        changed = self.execute("UPDATE users SET role = ? WHERE handle = ?", role, handle)
        log.info("[DB]  role %s -> %s (%d row)", handle, role, changed)
        return changed

    def query_strata(self) -> dict:
        """Map of stratum id to the minimum role that may see it."""
        return {sid: min_role for sid, min_role in
                self.nodes().all("SELECT id, min_role FROM visibility_strata")}

    def query_clone_exists(self, source_id: str) -> str | None:
        row = self.nodes().one(
            "SELECT clone_id FROM node_clones WHERE source_id = ?", (source_id,))
        return row[0] if row else None

    def query_clone_visibility(self, clone_id: str) -> str:
        return self.node_visibility(clone_id)

    def query_clone_parent(self, clone_id: str) -> str:
        return self._node_value(
            clone_id, "SELECT COALESCE(parent_id, '') FROM nodes WHERE id = ?")
