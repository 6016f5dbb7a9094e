"""Tests for the process harness, run against the Flask stand-in server."""

import os
import re
import socket
import subprocess
import sys
import threading
import tomllib

import pytest
import requests
import requests.certs

import e2e_harness
from e2e_harness import (
    Harness, HarnessOptions, HarnessSetupError, HarnessState, ResponseDecodeError,
    UnexpectedStatus, contains_string, dig, render_config, require_status,
    reserve_port, resolve_binary, string_slice, truncate,
)
from fake_horostracker import SECURITY_HEADERS

FAKE_SUT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fake_horostracker.py")


def _options(**kw) -> HarnessOptions:
    return HarnessOptions(binary=FAKE_SUT, **kw)


def _response(status: int, content: bytes) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = content
    return resp


@pytest.fixture(scope="module")
def running():
    h = Harness(_options()).start()
    yield h
    h.stop()


# ── Helpers ──────────────────────────────────────────────────────────────────

def test_truncate():
    assert truncate("short", 10) == "short"
    assert truncate("x" * 12, 10) == "x" * 10 + "..."


def test_dig_walks_objects_and_arrays():
    doc = {"user": {"id": "u1"}, "children": [{"id": "c0"}, {"id": "c1"}]}
    assert dig(doc, "user", "id") == "u1"
    assert dig(doc, "children", 1, "id") == "c1"
    assert dig(doc, "children", 5, "id") is None
    assert dig(doc, "user", "missing", default="") == ""
    assert dig(None, "user") is None


def test_string_slice_and_contains():
    assert string_slice(["a", 1, {"k": "v"}]) == ["a", "1", '{"k": "v"}']
    assert string_slice("not a list") == []
    assert contains_string(["ai", "machine-learning"], "learning")
    assert not contains_string([], "ai")


def test_llm_detection(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    assert not e2e_harness.has_llm()
    monkeypatch.setenv("GEMINI_API_KEY", "g-key")
    assert e2e_harness.has_gemini()
    assert not e2e_harness.has_anthropic()
    assert e2e_harness.has_llm()


def test_reserve_port_is_bindable():
    port = reserve_port()
    assert 1024 <= port <= 65535
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))


def test_require_status_truncates_body():
    require_status(_response(201, b"{}"), 201)
    with pytest.raises(UnexpectedStatus) as info:
        require_status(_response(409, b"x" * 2000), 201, "register alice")
    exc = info.value
    assert (exc.status, exc.expected) == (409, 201)
    assert len(exc.body) == 503
    assert str(exc).startswith("register alice: expected status 201, got 409: ")
    assert isinstance(exc, AssertionError)


def test_require_status_cuts_at_bytes_not_characters():
    with pytest.raises(UnexpectedStatus) as info:
        require_status(_response(500, "é".encode() * 400), 200)
    assert info.value.body == "é" * 250 + "..."


def test_sessions_are_per_thread_and_ignore_environment():
    h = Harness(_options())
    mine = h.session
    assert h.session is mine
    assert mine.verify is False
    assert mine.trust_env is False

    other = []
    t = threading.Thread(target=lambda: other.append(h.session))
    t.start()
    t.join()
    assert other[0] is not mine

    h.stop()
    assert h._sessions == []
    assert h.session is not mine


def test_json_decode_error_keeps_status_and_body(monkeypatch):
    h = Harness(_options())
    monkeypatch.setattr(h, "do", lambda *a, **kw: _response(502, b"<html>bad gateway</html>"))
    with pytest.raises(ResponseDecodeError) as info:
        h.json("GET", "/api/me")
    assert info.value.status == 502
    assert "bad gateway" in info.value.body

    monkeypatch.setattr(h, "do", lambda *a, **kw: _response(204, b""))
    resp, decoded = h.json("DELETE", "/api/node/x")
    assert resp.status_code == 204 and decoded is None


# ── Options and config ───────────────────────────────────────────────────────

def test_from_env_reads_binary_and_llm_keys(monkeypatch):
    monkeypatch.setenv("HOROSTRACKER_BIN", "/opt/horostracker")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    opts = HarnessOptions.from_env()
    assert opts.binary == "/opt/horostracker"
    assert opts.llm_keys["anthropic_api_key"] == "a-key"
    assert opts.llm_keys["gemini_api_key"] == ""

    explicit = HarnessOptions.from_env(binary="./bin", llm_keys={})
    assert explicit.binary == "./bin"
    assert explicit.llm_keys == {}


def test_rendered_config_parses_back_to_every_option():
    opts = _options(
        jwt_secret='q"uote\\back',
        instance_name="Horos ☉ e2e",
        cert_file="/tmp/c.pem", key_file="/tmp/k.pem",
        bot_enabled=False, bot_credit_per_day=42, bot_default_provider="groq",
        federation_instance_url="https://peer.example", federation_verify_signatures=False,
    )
    opts.llm_keys["mistral_api_key"] = "m-key"
    conf = tomllib.loads(render_config(opts, 43210, "/d/nodes.db", "/d/flows.db", "/d/metrics.db"))

    assert conf["server"] == {"addr": ":43210", "cert_file": "/tmp/c.pem", "key_file": "/tmp/k.pem"}
    assert conf["database"] == {
        "path": "/d/nodes.db", "flows_path": "/d/flows.db", "metrics_path": "/d/metrics.db"}
    assert conf["auth"] == {"jwt_secret": 'q"uote\\back', "token_expiry_min": 60}
    assert conf["instance"] == {"id": "e2e-test", "name": "Horos ☉ e2e"}
    assert conf["bot"] == {
        "handle": "horostracker", "enabled": False, "credit_per_day": 42,
        "default_provider": "groq", "default_model": "",
    }
    fed = conf["federation"]
    assert fed["enabled"] is False
    assert fed["instance_url"] == "https://peer.example"
    assert fed["signature_algorithm"] == "Ed25519"
    assert fed["verify_signatures"] is False
    assert fed["peer_instances"] == []
    assert conf["llm"] == opts.llm_keys
    assert len(conf["llm"]) == 6


def test_resolve_binary(tmp_path):
    with pytest.raises(HarnessSetupError, match="go build -o horostracker"):
        resolve_binary(str(tmp_path / "horostracker"))
    script = tmp_path / "sut.py"
    script.write_text("")
    assert resolve_binary(str(script)) == [sys.executable, str(script)]


# ── Startup failures ─────────────────────────────────────────────────────────

def test_missing_binary_cleans_up(tmp_path):
    h = Harness(HarnessOptions(binary=str(tmp_path / "nope"), llm_keys={}))
    with pytest.raises(HarnessSetupError, match="binary not found"):
        h.start()
    assert h.state is HarnessState.FAILED
    assert h.data_dir and not os.path.exists(h.data_dir)


def test_process_exiting_early_fails_fast(tmp_path):
    script = tmp_path / "crash.py"
    script.write_text("import sys\nprint('config rejected')\nsys.exit(3)\n")
    h = Harness(HarnessOptions(binary=str(script), llm_keys={}))
    with pytest.raises(HarnessSetupError, match="exited with code 3"):
        h.start()
    assert h.state is HarnessState.FAILED
    assert h.returncode == 3
    assert not os.path.exists(h.data_dir)


def test_ready_timeout(tmp_path, monkeypatch):
    script = tmp_path / "silent.py"
    script.write_text("import time\ntime.sleep(30)\n")
    h = Harness(HarnessOptions(binary=str(script), llm_keys={}, ready_timeout=0.5))
    with pytest.raises(HarnessSetupError, match="did not become ready"):
        h.start()
    assert h.process is None
    assert not os.path.exists(h.data_dir)


def test_unexpected_error_still_cleans_up(monkeypatch):
    h = Harness(_options())

    def broken_config():
        raise RuntimeError("template exploded")

    monkeypatch.setattr(h, "_write_config", broken_config)
    with pytest.raises(RuntimeError, match="template exploded"):
        h.start()
    assert h.state is HarnessState.FAILED
    assert h.data_dir and not os.path.exists(h.data_dir)


def test_environment_ca_bundle_and_proxy_are_ignored(monkeypatch):
    monkeypatch.setenv("REQUESTS_CA_BUNDLE", requests.certs.where())
    monkeypatch.setenv("CURL_CA_BUNDLE", requests.certs.where())
    monkeypatch.setenv("HTTPS_PROXY", "http://127.0.0.1:9")
    h = Harness(_options()).start()
    try:
        resp, body = h.json("GET", "/api/bot/status")
        require_status(resp, 200)
        assert body["enabled"] is True
    finally:
        h.stop()


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
def test_terminate_falls_back_to_kill(monkeypatch):
    monkeypatch.setitem(e2e_harness.CFG, "stop_timeout", 0.5)
    proc = subprocess.Popen(
        [sys.executable, "-c",
         "import signal, sys, time\n"
         "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
         "print('armed', flush=True)\n"
         "time.sleep(30)\n"],
        stdout=subprocess.PIPE,
    )
    try:
        assert proc.stdout.readline().strip() == b"armed"
        Harness._terminate(proc)
        assert proc.returncode == -9
    finally:
        proc.stdout.close()
        if proc.poll() is None:
            proc.kill()
            proc.wait()


# ── Running SUT ──────────────────────────────────────────────────────────────

def test_start_reaches_ready(running):
    assert running.state is HarnessState.READY
    assert re.fullmatch(r"https://127\.0\.0\.1:\d+", running.base_url)
    assert running.base_url.endswith(f":{running.port}")
    assert os.path.isfile(running.config_path)
    assert os.path.dirname(running.nodes_db) == running.data_dir


def test_bot_status_is_served(running):
    resp, body = running.json("GET", "/api/bot/status")
    require_status(resp, 200)
    assert body == {"enabled": True, "handle": "horostracker", "has_llm": False}


def test_responses_carry_security_headers(running):
    resp = running.do("GET", "/api/bot/status")
    for name, value in SECURITY_HEADERS.items():
        assert resp.headers.get(name) == value


def test_register_login_me(running):
    token, uid = running.register("harness_user", "harness-pass-1")
    assert token and uid
    token2, uid2 = running.login("harness_user", "harness-pass-1")
    assert uid2 == uid
    me = running.me(token2)
    assert me["handle"] == "harness_user"
    assert me["role"] == "user"


def test_ask_answer_get(running):
    token, _ = running.register("harness_asker", "harness-pass-2")
    qid = running.ask_question(token, "Does the harness work?", tags=["meta"])
    aid = running.answer_node(token, qid, "It does.")
    node = running.get_node(aid)
    assert node["parent_id"] == qid
    assert node["node_type"] == "claim"
    assert running.get_node(qid)["tags"] == ["meta"]


def test_raw_body(running):
    content, resp = running.raw_body("GET", "/api/node/does-not-exist")
    assert resp.status_code == 404
    assert b"not found" in content


def test_two_harnesses_get_distinct_ports(running):
    other = Harness(_options()).start()
    try:
        assert other.port != running.port
        assert other.data_dir != running.data_dir
        assert other.do("GET", "/api/bot/status").status_code == 200
    finally:
        other.stop()


def test_stop_removes_data_dir_and_is_idempotent():
    h = Harness(_options()).start()
    data_dir = h.data_dir
    assert os.path.isdir(data_dir)
    h.stop()
    assert h.state is HarnessState.STOPPED
    assert h.process is None
    assert not os.path.exists(data_dir)
    h.stop()
    assert h.state is HarnessState.STOPPED
