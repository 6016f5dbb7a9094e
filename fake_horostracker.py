#!/usr/bin/env python3
"""
fake_horostracker.py
====================
Stand-in horostracker server for exercising the E2E harness without the Go
binary.  It is started exactly like the real one:

    python fake_horostracker.py serve --config <data_dir>/config.toml

and reads the same config.toml sections (server, database, auth, bot, llm).
It serves HTTPS on 127.0.0.1 with a throwaway self-signed certificate
(Werkzeug "adhoc") unless cert_file/key_file are configured.

Databases (created on startup, WAL mode):

    nodes.db     users, nodes, tags, visibility_strata, node_clones
    flows.db     flows, flow_steps
    metrics.db   request_metrics

Endpoints:

    GET    /api/bot/status
    POST   /api/register          { handle, password }      201 | 400 | 409
    POST   /api/login             { handle, password }      200 | 401
    GET    /api/me
    POST   /api/ask               { body [, tags] }         201 { node }
    POST   /api/answer            { parent_id, body, node_type }
    GET    /api/node/<id>
    DELETE /api/node/<id>
    GET    /api/questions[?limit=N]
    GET    /api/tree/<id>[?depth=N]
    POST   /api/bot/answer/<id>   503 when no LLM key is configured

Every response carries the security headers the real server sends.
"""

import argparse
import logging
import os
import re
import secrets
import signal
import sqlite3
import sys
import time
import tomllib

from flask import Flask, g, jsonify, request
from itsdangerous import BadData, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

log = logging.getLogger("fake-horostracker")

app = Flask(__name__)

# ---------------------------------------------------------------------------
# Runtime config  (populated from config.toml in main())
# ---------------------------------------------------------------------------
CFG = {
    "nodes_db":     "nodes.db",
    "flows_db":     "flows.db",
    "metrics_db":   "metrics.db",
    "jwt_secret":   "",
    "token_expiry": 60,
    "bot_handle":   "horostracker",
    "bot_enabled":  False,
    "bot_user_id":  "",
    "llm_keys":     {},
}

SECURITY_HEADERS = {
    "Content-Security-Policy":
        "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; frame-ancestors 'none'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options":        "DENY",
    "Referrer-Policy":        "strict-origin-when-cross-origin",
    "Permissions-Policy":     "camera=(), microphone=(), geolocation=()",
}

_HANDLE_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
MAX_TREE_DEPTH = 50

NODES_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id            TEXT PRIMARY KEY,
    handle        TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    role          TEXT NOT NULL DEFAULT 'user'
                  CHECK(role IN ('anon','user','researcher','provider','operator')),
    is_bot        INTEGER DEFAULT 0,
    reputation    INTEGER DEFAULT 0,
    credits       INTEGER DEFAULT 0,
    created_at    DATETIME DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS nodes (
    id          TEXT PRIMARY KEY,
    parent_id   TEXT REFERENCES nodes(id),
    root_id     TEXT NOT NULL,
    slug        TEXT UNIQUE,
    node_type   TEXT NOT NULL CHECK(node_type IN ('piece','claim')),
    body        TEXT NOT NULL,
    author_id   TEXT NOT NULL,
    model_id    TEXT,
    score       INTEGER DEFAULT 0,
    temperature TEXT DEFAULT 'cold' CHECK(temperature IN ('cold','warm','hot','critical')),
    child_count INTEGER DEFAULT 0,
    depth       INTEGER DEFAULT 0,
    visibility  TEXT DEFAULT 'public',
    created_at  DATETIME DEFAULT (datetime('now')),
    updated_at  DATETIME DEFAULT (datetime('now')),
    deleted_at  DATETIME
);
CREATE TABLE IF NOT EXISTS tags (
    node_id TEXT NOT NULL,
    tag     TEXT NOT NULL,
    PRIMARY KEY (node_id, tag)
);
CREATE TABLE IF NOT EXISTS visibility_strata (
    id       TEXT PRIMARY KEY,
    min_role TEXT NOT NULL,
    ordinal  INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS node_clones (
    source_id  TEXT NOT NULL,
    clone_id   TEXT NOT NULL,
    created_at DATETIME DEFAULT (datetime('now')),
    PRIMARY KEY (source_id, clone_id)
);
"""

FLOWS_SCHEMA = """
CREATE TABLE IF NOT EXISTS flows (
    id         TEXT PRIMARY KEY,
    node_id    TEXT NOT NULL,
    status     TEXT NOT NULL DEFAULT 'completed',
    created_at DATETIME DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS flow_steps (
    flow_id      TEXT NOT NULL,
    step_index   INTEGER NOT NULL,
    model_id     TEXT,
    provider     TEXT,
    prompt       TEXT,
    response_raw TEXT,
    tokens_in    INTEGER,
    tokens_out   INTEGER,
    latency_ms   INTEGER,
    PRIMARY KEY (flow_id, step_index)
);
"""

METRICS_SCHEMA = """
CREATE TABLE IF NOT EXISTS request_metrics (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    method      TEXT NOT NULL,
    path        TEXT NOT NULL,
    status      INTEGER NOT NULL,
    duration_ms INTEGER NOT NULL,
    created_at  DATETIME DEFAULT (datetime('now'))
);
"""

STRATA = [("public", "anon", 0), ("research", "researcher", 1),
          ("provider", "provider", 2), ("instance", "operator", 3)]


# ---------------------------------------------------------------------------
# Database helpers
# ---------------------------------------------------------------------------
def _connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 10000")
    return conn


def init_databases():
    for key, schema in (("nodes_db", NODES_SCHEMA), ("flows_db", FLOWS_SCHEMA),
                        ("metrics_db", METRICS_SCHEMA)):
        conn = _connect(CFG[key])
        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(schema)
            if key == "nodes_db":
                conn.executemany(
                    "INSERT OR IGNORE INTO visibility_strata (id, min_role, ordinal) VALUES (?, ?, ?)",
                    STRATA)
                if CFG["bot_enabled"]:
                    CFG["bot_user_id"] = _ensure_bot_user(conn)
            conn.commit()
        finally:
            conn.close()


def _ensure_bot_user(conn) -> str:
    row = conn.execute("SELECT id FROM users WHERE handle = ?", (CFG["bot_handle"],)).fetchone()
    if row:
        return row["id"]
    uid = new_id()
    conn.execute(
        "INSERT INTO users (id, handle, password_hash, is_bot) VALUES (?, ?, ?, 1)",
        (uid, CFG["bot_handle"], generate_password_hash(secrets.token_hex(16))),
    )
    return uid


def db() -> sqlite3.Connection:
    if "nodes" not in g:
        g.nodes = _connect(CFG["nodes_db"])
    return g.nodes


@app.teardown_appcontext
def _close_db(_exc):
    conn = g.pop("nodes", None)
    if conn is not None:
        conn.close()


def new_id() -> str:
    return secrets.token_hex(8)


def make_slug(body: str) -> str:
    base = re.sub(r"[^a-z0-9]+", "-", body.lower()).strip("-")[:60] or "q"
    return f"{base}-{secrets.token_hex(3)}"


def has_llm() -> bool:
    return any(CFG["llm_keys"].values())


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(CFG["jwt_secret"], salt="horostracker-auth")


def issue_token(user_id: str) -> str:
    return _serializer().dumps({"sub": user_id})


def current_user():
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    try:
        claims = _serializer().loads(header[7:], max_age=CFG["token_expiry"] * 60)
    except BadData:
        return None
    return db().execute("SELECT * FROM users WHERE id = ?", (claims.get("sub"),)).fetchone()


def user_json(row) -> dict:
    return {
        "id":         row["id"],
        "handle":     row["handle"],
        "role":       row["role"],
        "is_bot":     bool(row["is_bot"]),
        "reputation": row["reputation"],
        "created_at": row["created_at"],
    }


def node_json(row) -> dict:
    tags = [t["tag"] for t in db().execute(
        "SELECT tag FROM tags WHERE node_id = ? ORDER BY tag", (row["id"],))]
    return {
        "id":          row["id"],
        "parent_id":   row["parent_id"],
        "root_id":     row["root_id"],
        "slug":        row["slug"],
        "node_type":   row["node_type"],
        "body":        row["body"],
        "author_id":   row["author_id"],
        "model_id":    row["model_id"],
        "score":       row["score"],
        "temperature": row["temperature"],
        "child_count": row["child_count"],
        "depth":       row["depth"],
        "visibility":  row["visibility"],
        "created_at":  row["created_at"],
        "tags":        tags,
    }


def live_node(node_id: str):
    return db().execute(
        "SELECT * FROM nodes WHERE id = ? AND deleted_at IS NULL", (node_id,)).fetchone()


# ---------------------------------------------------------------------------
# Error helper
# ---------------------------------------------------------------------------
def _err(msg: str, status: int = 500):
    return jsonify({"error": msg}), status


@app.errorhandler(404)
def _not_found(_exc):
    return _err("not found", 404)


@app.errorhandler(405)
def _bad_method(_exc):
    return _err("method not allowed", 405)


# ---------------------------------------------------------------------------
# Request bookkeeping: security headers + request metrics
# ---------------------------------------------------------------------------
@app.before_request
def _start_timer():
    g.t0 = time.perf_counter()


@app.after_request
def _finish(resp):
    resp.headers.update(SECURITY_HEADERS)
    ms = round((time.perf_counter() - g.get("t0", time.perf_counter())) * 1000)
    try:
        conn = _connect(CFG["metrics_db"])
        try:
            conn.execute(
                "INSERT INTO request_metrics (method, path, status, duration_ms) VALUES (?, ?, ?, ?)",
                (request.method, request.path, resp.status_code, ms))
            conn.commit()
        finally:
            conn.close()
    except sqlite3.Error as exc:
        log.warning("metrics write failed: %s", exc)
    return resp


# ===========================================================================
# Bot
# ===========================================================================
@app.route("/api/bot/status", methods=["GET"])
def bot_status():
    if not CFG["bot_user_id"]:
        return jsonify({"enabled": False, "handle": "", "has_llm": has_llm()})
    return jsonify({"enabled": True, "handle": CFG["bot_handle"], "has_llm": has_llm()})


@app.route("/api/bot/answer/<node_id>", methods=["POST"])
def bot_answer(node_id):
    if not has_llm():
        return _err("no LLM providers configured: bot unavailable", 503)
    if not CFG["bot_user_id"]:
        return _err("bot not configured", 503)
    if current_user() is None:
        return _err("authentication required", 401)
    parent = live_node(node_id)
    if parent is None:
        return _err("node not found", 404)

    # No provider client here: a canned single-step flow stands in for the LLM
    provider = "anthropic" if CFG["llm_keys"].get("anthropic_api_key") else "gemini"
    answer   = f"Stand-in answer to: {parent['body'][:200]}"
    child_id = _insert_child(parent, answer, "claim", CFG["bot_user_id"], model_id="stand-in")
    flow_id  = new_id()
    flows = _connect(CFG["flows_db"])
    try:
        flows.execute("INSERT INTO flows (id, node_id) VALUES (?, ?)", (flow_id, child_id))
        flows.execute(
            """INSERT INTO flow_steps (flow_id, step_index, model_id, provider, prompt,
                                       response_raw, tokens_in, tokens_out, latency_ms)
               VALUES (?, 0, 'stand-in', ?, ?, ?, ?, ?, 0)""",
            (flow_id, provider, parent["body"], answer,
             len(parent["body"].split()), len(answer.split())))
        flows.commit()
    finally:
        flows.close()
    log.info("bot answered %s -> %s (flow %s)", node_id, child_id, flow_id)
    return jsonify({"node": node_json(live_node(child_id)), "flow_id": flow_id}), 201


# ===========================================================================
# Users
# ===========================================================================
@app.route("/api/register", methods=["POST"])
def register():
    body     = request.get_json(force=True, silent=True) or {}
    handle   = body.get("handle") or ""
    password = body.get("password") or ""
    if not isinstance(handle, str) or not _HANDLE_RE.match(handle):
        return _err("handle must be 3-30 characters of letters, digits or underscore", 400)
    if not isinstance(password, str) or len(password) < 8:
        return _err("password must be at least 8 characters", 400)

    uid  = new_id()
    conn = db()
    try:
        conn.execute("INSERT INTO users (id, handle, password_hash) VALUES (?, ?, ?)",
                     (uid, handle, generate_password_hash(password)))
        conn.commit()
    except sqlite3.IntegrityError:
        return _err("handle already taken", 409)
    user = conn.execute("SELECT * FROM users WHERE id = ?", (uid,)).fetchone()
    log.info("registered %s (%s)", handle, uid)
    return jsonify({"user": user_json(user), "token": issue_token(uid)}), 201


@app.route("/api/login", methods=["POST"])
def login():
    body = request.get_json(force=True, silent=True) or {}
    user = db().execute("SELECT * FROM users WHERE handle = ? AND is_bot = 0",
                        (str(body.get("handle") or ""),)).fetchone()
    if user is None or not check_password_hash(user["password_hash"], str(body.get("password") or "")):
        return _err("invalid credentials", 401)
    return jsonify({"user": user_json(user), "token": issue_token(user["id"])})


@app.route("/api/me", methods=["GET"])
def me():
    user = current_user()
    if user is None:
        return _err("authentication required", 401)
    return jsonify(user_json(user))


# ===========================================================================
# Nodes
# ===========================================================================
def _insert_child(parent, body: str, node_type: str, author_id: str, model_id=None) -> str:
    conn = db()
    cid  = new_id()
    conn.execute(
        """INSERT INTO nodes (id, parent_id, root_id, node_type, body, author_id, model_id, depth)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (cid, parent["id"], parent["root_id"], node_type, body, author_id, model_id,
         parent["depth"] + 1))
    conn.execute("UPDATE nodes SET child_count = child_count + 1, updated_at = datetime('now') "
                 "WHERE id = ?", (parent["id"],))
    conn.commit()
    return cid


@app.route("/api/ask", methods=["POST"])
def ask():
    user = current_user()
    if user is None:
        return _err("authentication required", 401)
    body = request.get_json(force=True, silent=True) or {}
    text = body.get("body")
    if not isinstance(text, str) or not text.strip():
        return _err("body is required", 400)
    tags = body.get("tags") or []
    if not isinstance(tags, list):
        return _err("tags must be a list", 400)

    conn = db()
    nid  = new_id()
    conn.execute(
        "INSERT INTO nodes (id, root_id, slug, node_type, body, author_id) VALUES (?, ?, ?, 'claim', ?, ?)",
        (nid, nid, make_slug(text), text, user["id"]))
    conn.executemany("INSERT OR IGNORE INTO tags (node_id, tag) VALUES (?, ?)",
                     [(nid, str(t)) for t in tags])
    conn.commit()
    return jsonify({"node": node_json(live_node(nid))}), 201


@app.route("/api/answer", methods=["POST"])
def answer():
    user = current_user()
    if user is None:
        return _err("authentication required", 401)
    body      = request.get_json(force=True, silent=True) or {}
    text      = body.get("body")
    node_type = body.get("node_type") or "claim"
    if not isinstance(text, str) or not text.strip():
        return _err("body is required", 400)
    if node_type not in ("claim", "piece"):
        return _err("node_type must be 'claim' or 'piece'", 400)
    parent = live_node(str(body.get("parent_id") or ""))
    if parent is None:
        return _err("parent node not found", 404)

    cid = _insert_child(parent, text, node_type, user["id"])
    return jsonify(node_json(live_node(cid))), 201


@app.route("/api/node/<node_id>", methods=["GET"])
def get_node(node_id):
    row = live_node(node_id)
    if row is None:
        return _err("node not found", 404)
    return jsonify(node_json(row))


@app.route("/api/node/<node_id>", methods=["DELETE"])
def delete_node(node_id):
    user = current_user()
    if user is None:
        return _err("authentication required", 401)
    row = live_node(node_id)
    if row is None:
        return _err("node not found", 404)
    if row["author_id"] != user["id"] and user["role"] != "operator":
        return _err("only the author or an operator can delete a node", 403)
    conn = db()
    conn.execute("UPDATE nodes SET deleted_at = datetime('now') WHERE id = ?", (node_id,))
    conn.commit()
    log.info("soft-deleted %s by %s", node_id, user["handle"])
    return jsonify({"deleted": node_id})


@app.route("/api/questions", methods=["GET"])
def questions():
    limit = request.args.get("limit", type=int) or 20
    rows = db().execute(
        """SELECT * FROM nodes WHERE parent_id IS NULL AND deleted_at IS NULL
           ORDER BY created_at DESC, rowid DESC LIMIT ?""", (max(limit, 1),)).fetchall()
    return jsonify([node_json(r) for r in rows])


def _subtree(row, depth: int) -> dict:
    node = node_json(row)
    node["children"] = []
    if depth > 0:
        for child in db().execute(
                "SELECT * FROM nodes WHERE parent_id = ? AND deleted_at IS NULL ORDER BY rowid",
                (row["id"],)):
            node["children"].append(_subtree(child, depth - 1))
    return node


@app.route("/api/tree/<node_id>", methods=["GET"])
def tree(node_id):
    row = live_node(node_id)
    if row is None:
        return _err("node not found", 404)
    depth = request.args.get("depth", type=int) or 10
    return jsonify(_subtree(row, min(max(depth, 0), MAX_TREE_DEPTH)))


# ===========================================================================
# Entry point
# ===========================================================================
def load_config(path: str):
    with open(path, "rb") as fh:
        conf = tomllib.load(fh)
    database = conf.get("database", {})
    auth     = conf.get("auth", {})
    bot      = conf.get("bot", {})
    CFG["nodes_db"]     = database.get("path", CFG["nodes_db"])
    CFG["flows_db"]     = database.get("flows_path", CFG["flows_db"])
    CFG["metrics_db"]   = database.get("metrics_path", CFG["metrics_db"])
    CFG["jwt_secret"]   = auth.get("jwt_secret") or secrets.token_hex(32)
    CFG["token_expiry"] = int(auth.get("token_expiry_min", 60))
    CFG["bot_handle"]   = bot.get("handle", CFG["bot_handle"])
    CFG["bot_enabled"]  = bool(bot.get("enabled", False))
    CFG["llm_keys"]     = dict(conf.get("llm", {}))
    return conf


def _listen_address(addr: str):
    host, _, port = addr.rpartition(":")
    return host or "127.0.0.1", int(port)


def main():
    parser = argparse.ArgumentParser(description="Stand-in horostracker server")
    sub    = parser.add_subparsers(dest="command", required=True)
    serve  = sub.add_parser("serve", help="Serve the API over HTTPS")
    serve.add_argument("--config", required=True, help="Path to config.toml")
    serve.add_argument("--debug",  action="store_true", help="Log every request")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    if not args.debug:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    conf   = load_config(args.config)
    server = conf.get("server", {})
    host, port = _listen_address(server.get("addr", ":8080"))
    cert, key  = server.get("cert_file", ""), server.get("key_file", "")
    ssl_context = (cert, key) if cert and key else "adhoc"

    init_databases()

    def _shutdown(signum, _frame):
        log.info("signal %d received, shutting down", signum)
        sys.exit(0)

    signal.signal(signal.SIGTERM, _shutdown)

    log.info("horostracker stand-in listening on https://%s:%d (pid %d)", host, port, os.getpid())
    log.info("  nodes db : %s", CFG["nodes_db"])
    log.info("  bot      : %s (enabled=%s, llm=%s)", CFG["bot_handle"], CFG["bot_enabled"], has_llm())
    app.run(host=host, port=port, ssl_context=ssl_context, threaded=True, debug=False)


if __name__ == "__main__":
    main()
