"""
e2e_harness.py
==============
Spawns a horostracker server for the E2E suite and talks to it over HTTPS.

One Harness == one running SUT:

    reserve a free port on 127.0.0.1
    create a temp data dir          (removed ONLY by Harness.stop())
    write <data_dir>/config.toml
    <binary> serve --config <data_dir>/config.toml
    poll GET /api/bot/status until HTTP 200   (100 ms, x1.5, max 2 s; 15 s deadline)

The server presents a self-signed certificate, so requests go out with
verify=False and trust_env off (an environment CA bundle or proxy would
override it), and urllib3's InsecureRequestWarning is silenced.

Why the data dir is not a per-test tmp_path
-------------------------------------------
DBAssert keeps connections open to nodes.db / flows.db for the whole session.
A per-test temp dir gets removed when its first test finishes, while those
connections (and the server) are still using the files.  The directory is
created with tempfile.mkdtemp() and removed by stop().

Binary resolution
-----------------
    --sut-binary / sut_binary ini key / HOROSTRACKER_BIN / ../horostracker

A path ending in ``.py`` is started with the current interpreter, which is how
the Flask stand-in (fake_horostracker.py) is launched.
"""

import enum
import json
import logging
import os
import shutil
import socket
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field

import requests
import urllib3

log     = logging.getLogger("horostracker-e2e")
sut_log = logging.getLogger("horostracker-e2e.sut")

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

# ---------------------------------------------------------------------------
# Timing and defaults
# ---------------------------------------------------------------------------
CFG = {
    "request_timeout": 60.0,
    "ready_timeout":   15.0,
    "stop_timeout":    5.0,
    "backoff_initial": 0.1,
    "backoff_factor":  1.5,
    "backoff_max":     2.0,
    "health_path":     "/api/bot/status",
    "binary":          os.path.join("..", "horostracker"),
}

BODY_SNIPPET = 500


class HarnessState(enum.Enum):
    INIT            = "init"
    PORT_RESERVED   = "port_reserved"
    TEMP_READY      = "temp_ready"
    CONFIG_WRITTEN  = "config_written"
    PROCESS_STARTED = "process_started"
    READY           = "ready"
    STOPPING        = "stopping"
    STOPPED         = "stopped"
    FAILED          = "failed"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class HarnessSetupError(Exception):
    """The SUT could not be brought up; nothing of it is left running."""


class UnexpectedStatus(AssertionError):
    """An HTTP response carried a status code the test did not expect."""
    def __init__(self, status: int, expected: int, body: str, context: str = ""):
        self.status   = status
        self.expected = expected
        self.body     = body
        prefix = f"{context}: " if context else ""
        super().__init__(f"{prefix}expected status {expected}, got {status}: {body}")


class ResponseDecodeError(ValueError):
    def __init__(self, status: int, body: str, cause: Exception):
        self.status = status
        self.body   = body
        super().__init__(f"decoding JSON (status {status}, body: {body}): {cause}")


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def truncate(s: str, max_len: int) -> str:
    if len(s) <= max_len:
        return s
    return s[:max_len] + "..."


def has_anthropic() -> bool:
    return bool(os.environ.get("ANTHROPIC_API_KEY"))


def has_gemini() -> bool:
    return bool(os.environ.get("GEMINI_API_KEY"))


def has_llm() -> bool:
    """True when at least one LLM provider key is configured."""
    return has_anthropic() or has_gemini()


def string_slice(value) -> list:
    """Turn a decoded JSON array into a list of strings; anything else -> []."""
    if not isinstance(value, list):
        return []
    return [v if isinstance(v, str) else json.dumps(v) if isinstance(v, (dict, list)) else str(v)
            for v in value]


def contains_string(items, target: str) -> bool:
    return any(s == target or target in s for s in items)


def dig(obj, *path, default=None):
    """
    Walk a decoded JSON value.  Strings index objects, ints index arrays:

        dig(body, "user", "id")
        dig(tree, "children", 0, "id")
    """
    cur = obj
    for key in path:
        if isinstance(key, int) and isinstance(cur, list):
            if not -len(cur) <= key < len(cur):
                return default
            cur = cur[key]
        elif isinstance(cur, dict) and key in cur:
            cur = cur[key]
        else:
            return default
    return cur


def body_snippet(content: bytes) -> str:
    """First BODY_SNIPPET bytes of a response body, decoded for messages."""
    text = content[:BODY_SNIPPET].decode("utf-8", errors="replace")
    return text + "..." if len(content) > BODY_SNIPPET else text


def require_status(resp: requests.Response, expected: int, context: str = ""):
    """Fail the calling test when ``resp`` did not come back with ``expected``."""
    if resp.status_code != expected:
        raise UnexpectedStatus(resp.status_code, expected, body_snippet(resp.content), context)


def reserve_port() -> int:
    """
    Bind 127.0.0.1:0, read the ephemeral port, release it.  Something else can
    grab the port before the SUT binds it; the readiness poll covers that.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def resolve_binary(path: str) -> list:
    """Absolute command prefix for the SUT, or HarnessSetupError if it is missing."""
    binary = os.path.abspath(path)
    if not os.path.isfile(binary):
        raise HarnessSetupError(
            f"binary not found at {binary}; build it with: "
            f"cd horostracker && CGO_ENABLED=0 go build -o horostracker ."
        )
    if binary.endswith(".py"):
        return [sys.executable, binary]
    return [binary]


# ---------------------------------------------------------------------------
# SUT configuration
# ---------------------------------------------------------------------------
@dataclass
class HarnessOptions:
    binary: str = CFG["binary"]

    jwt_secret: str       = "e2e-test-secret-key-horostracker"
    token_expiry_min: int = 60
    cert_file: str        = ""
    key_file: str         = ""

    instance_id: str   = "e2e-test"
    instance_name: str = "horostracker-e2e"

    bot_handle: str           = "horostracker"
    bot_enabled: bool         = True
    bot_credit_per_day: int   = 5000
    bot_default_provider: str = ""
    bot_default_model: str    = ""

    federation_instance_url: str        = ""
    federation_signature_algorithm: str = "Ed25519"
    federation_private_key_path: str    = ""
    federation_public_key_id: str       = ""
    federation_verify_signatures: bool  = True

    llm_keys: dict = field(default_factory=lambda: {
        "gemini_api_key":      "",
        "mistral_api_key":     "",
        "openrouter_api_key":  "",
        "groq_api_key":        "",
        "anthropic_api_key":   "",
        "huggingface_api_key": "",
    })

    ready_timeout: float = CFG["ready_timeout"]

    @classmethod
    def from_env(cls, binary: str | None = None, **overrides) -> "HarnessOptions":
        opts = cls(binary=binary or os.environ.get("HOROSTRACKER_BIN") or CFG["binary"],
                   **overrides)
        if "llm_keys" not in overrides:
            opts.llm_keys["anthropic_api_key"] = os.environ.get("ANTHROPIC_API_KEY", "")
            opts.llm_keys["gemini_api_key"]    = os.environ.get("GEMINI_API_KEY", "")
        return opts


def _toml_str(value: str) -> str:
    # JSON string escapes are valid TOML basic-string escapes
    return json.dumps(value, ensure_ascii=False)


def _toml_bool(value: bool) -> str:
    return "true" if value else "false"


def render_config(opts: HarnessOptions, port: int,
                  nodes_db: str, flows_db: str, metrics_db: str) -> str:
    """The config.toml handed to ``horostracker serve``.  Federation is always off."""
    llm = "\n".join(f"{key} = {_toml_str(val)}" for key, val in opts.llm_keys.items())
    return f"""[server]
addr = {_toml_str(f":{port}")}
cert_file = {_toml_str(opts.cert_file)}
key_file = {_toml_str(opts.key_file)}

[database]
path = {_toml_str(nodes_db)}
flows_path = {_toml_str(flows_db)}
metrics_path = {_toml_str(metrics_db)}

[auth]
jwt_secret = {_toml_str(opts.jwt_secret)}
token_expiry_min = {int(opts.token_expiry_min)}

[instance]
id = {_toml_str(opts.instance_id)}
name = {_toml_str(opts.instance_name)}

[bot]
handle = {_toml_str(opts.bot_handle)}
enabled = {_toml_bool(opts.bot_enabled)}
credit_per_day = {int(opts.bot_credit_per_day)}
default_provider = {_toml_str(opts.bot_default_provider)}
default_model = {_toml_str(opts.bot_default_model)}

[federation]
enabled = false
instance_url = {_toml_str(opts.federation_instance_url)}
signature_algorithm = {_toml_str(opts.federation_signature_algorithm)}
private_key_path = {_toml_str(opts.federation_private_key_path)}
public_key_id = {_toml_str(opts.federation_public_key_id)}
verify_signatures = {_toml_bool(opts.federation_verify_signatures)}
peer_instances = []

[llm]
{llm}
"""


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------
class Harness:

    def __init__(self, options: HarnessOptions | None = None):
        self.options = options or HarnessOptions.from_env()
        self.state   = HarnessState.INIT

        self.port        = 0
        self.base_url    = ""
        self.data_dir    = ""
        self.config_path = ""
        self.nodes_db    = ""
        self.flows_db    = ""
        self.metrics_db  = ""

        self.process       = None
        self.returncode    = None
        self.reader_thread = None
        self._stop_lock    = threading.Lock()

        self._local         = threading.local()
        self._sessions      = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """
        The calling thread's session.  requests.Session is not thread-safe,
        so concurrent tests each get their own.  trust_env is off: a CA
        bundle or proxy from the environment must not apply to the loopback
        SUT and its self-signed certificate.
        """
        sess = getattr(self._local, "session", None)
        if sess is None:
            sess = requests.Session()
            sess.verify    = False
            sess.trust_env = False
            self._local.session = sess
            with self._sessions_lock:
                self._sessions.append(sess)
        return sess

    def _close_sessions(self):
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for sess in sessions:
            sess.close()
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    def start(self) -> "Harness":
        try:
            self._reserve_port()
            self._make_data_dir()
            self._write_config()
            self._spawn()
            self._wait_ready()
        except HarnessSetupError:
            self._abort()
            raise
        except (OSError, requests.RequestException, subprocess.SubprocessError) as exc:
            self._abort()
            raise HarnessSetupError(f"starting horostracker ({self.state.value}): {exc}") from exc
        except Exception:
            self._abort()
            raise
        return self

    def _abort(self):
        self.stop()
        self.state = HarnessState.FAILED

    def _reserve_port(self):
        self.port     = reserve_port()
        self.base_url = f"https://127.0.0.1:{self.port}"
        self.state    = HarnessState.PORT_RESERVED

    def _make_data_dir(self):
        self.data_dir   = tempfile.mkdtemp(prefix="horostracker-e2e-")
        self.nodes_db   = os.path.join(self.data_dir, "nodes.db")
        self.flows_db   = os.path.join(self.data_dir, "flows.db")
        self.metrics_db = os.path.join(self.data_dir, "metrics.db")
        self.state      = HarnessState.TEMP_READY

    def _write_config(self):
        self.config_path = os.path.join(self.data_dir, "config.toml")
        config = render_config(self.options, self.port,
                               self.nodes_db, self.flows_db, self.metrics_db)
        with open(self.config_path, "w", encoding="utf-8") as fh:
            fh.write(config)
        self.state = HarnessState.CONFIG_WRITTEN

    def _spawn(self):
        program = resolve_binary(self.options.binary)
        command = program + ["serve", "--config", self.config_path]
        log.info("[SUT] starting: %s", " ".join(command))
        self.process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=os.path.dirname(program[-1]),
        )
        self.reader_thread = threading.Thread(
            target=self._read_loop, args=(self.process,), daemon=True, name="sut-output"
        )
        self.reader_thread.start()
        self.state = HarnessState.PROCESS_STARTED

    @staticmethod
    def _read_loop(process):
        for raw in iter(process.stdout.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                sut_log.info("[SUT] %s", line)
        process.stdout.close()

    def _wait_ready(self):
        url      = self.base_url + CFG["health_path"]
        deadline = time.monotonic() + self.options.ready_timeout
        backoff  = CFG["backoff_initial"]
        while time.monotonic() < deadline:
            code = self.process.poll()
            if code is not None:
                raise HarnessSetupError(
                    f"horostracker exited with code {code} before becoming ready on port {self.port}")
            try:
                resp = self.session.get(url, timeout=CFG["backoff_max"], verify=False)
                if resp.status_code == 200:
                    log.info("[SUT] horostracker ready on port %d", self.port)
                    self.state = HarnessState.READY
                    return
            except requests.RequestException:
                pass
            time.sleep(backoff)
            backoff = min(backoff * CFG["backoff_factor"], CFG["backoff_max"])
        raise HarnessSetupError(
            f"horostracker did not become ready within {self.options.ready_timeout:.0f}s "
            f"on port {self.port}")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    def stop(self):
        """SIGTERM, wait 5 s, SIGKILL; then remove the data dir.  Idempotent."""
        with self._stop_lock:
            if self.state in (HarnessState.STOPPED, HarnessState.FAILED):
                return
            self.state = HarnessState.STOPPING
            if self.process is not None:
                self._terminate(self.process)
                self.returncode = self.process.returncode
                self.process = None
            self._close_sessions()
            if self.data_dir and os.path.isdir(self.data_dir):
                try:
                    shutil.rmtree(self.data_dir)
                except OSError as exc:
                    log.warning("[SUT] removing %s: %s", self.data_dir, exc)
            self.state = HarnessState.STOPPED

    @staticmethod
    def _terminate(process):
        if process.poll() is not None:
            return
        try:
            process.terminate()
            process.wait(timeout=CFG["stop_timeout"])
        except subprocess.TimeoutExpired:
            log.warning("[SUT] no exit after %.0fs, killing pid %d", CFG["stop_timeout"], process.pid)
            process.kill()
            process.wait()
        except OSError as exc:
            log.warning("[SUT] terminating pid %d: %s", process.pid, exc)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------
    def do(self, method: str, path: str, body=None, token: str = "") -> requests.Response:
        """One request against the SUT.  Transport errors propagate; statuses don't."""
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = "Bearer " + token
        data = json.dumps(body) if body is not None else None
        return self.session.request(
            method, self.base_url + path,
            data=data, headers=headers, timeout=CFG["request_timeout"], verify=False,
        )

    def json(self, method: str, path: str, body=None, token: str = ""):
        """Return ``(response, decoded)``; ``response.content`` stays readable."""
        resp = self.do(method, path, body, token)
        if not resp.content:
            return resp, None
        try:
            return resp, resp.json()
        except ValueError as exc:
            raise ResponseDecodeError(resp.status_code, body_snippet(resp.content), exc) from exc

    def raw_body(self, method: str, path: str, body=None, token: str = ""):
        resp = self.do(method, path, body, token)
        return resp.content, resp

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------
    def _auth(self, path: str, handle: str, password: str, expected: int):
        resp, result = self.json("POST", path, {"handle": handle, "password": password})
        require_status(resp, expected, f"{path.rsplit('/', 1)[-1]} {handle}")
        return result["token"], result["user"]["id"]

    def register(self, handle: str, password: str):
        """Create a user; returns ``(token, user_id)``."""
        return self._auth("/api/register", handle, password, 201)

    def login(self, handle: str, password: str):
        return self._auth("/api/login", handle, password, 200)

    def me(self, token: str) -> dict:
        resp, user = self.json("GET", "/api/me", token=token)
        require_status(resp, 200, "me")
        return user

    def ask_question(self, token: str, body: str, tags=None) -> str:
        """Create a root claim via /api/ask and return its id."""
        req = {"body": body}
        if tags:
            req["tags"] = list(tags)
        resp, result = self.json("POST", "/api/ask", req, token)
        require_status(resp, 201, "ask question")
        return result["node"]["id"]

    def answer_node(self, token: str, parent_id: str, body: str, node_type: str = "claim") -> str:
        resp, result = self.json("POST", "/api/answer", {
            "parent_id": parent_id,
            "body":      body,
            "node_type": node_type or "claim",
        }, token)
        require_status(resp, 201, "answer node")
        return result["id"]

    def get_node(self, node_id: str) -> dict:
        resp, result = self.json("GET", "/api/node/" + node_id)
        require_status(resp, 200, f"get node {node_id}")
        return result


def start_harness(options: HarnessOptions | None = None) -> Harness:
    """Build a harness, bring the SUT up and return it in state READY."""
    return Harness(options).start()
