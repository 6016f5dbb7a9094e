"""
conftest.py
===========
Wires the shared E2E runtime into pytest.

    e2e              (harness, dba) pair shared by the whole session
    harness / dba    the two halves of it
    record_exchange  attach request/response payloads to this test's result row

Every test leaves one row in test_results.db (written after the test has
finished, so its final pass/fail/skip state is what gets recorded).  The
SUT is stopped and its data dir removed in pytest_sessionfinish.

SUT binary, first match wins:

    pytest --sut-binary ../horostracker
    HOROSTRACKER_BIN=../horostracker pytest
    [tool.pytest.ini_options] sut_binary = "..."
"""

import os

import pytest

import e2e_lifecycle
import e2e_results
from e2e_harness import HarnessOptions, HarnessSetupError, has_llm

_STATUS = {"passed": "pass", "failed": "fail", "skipped": "skip"}
_RECORDED = pytest.StashKey[int]()


def pytest_addoption(parser):
    parser.addoption("--sut-binary", default=None,
                     help="horostracker binary (or a .py stand-in) to run under test")
    parser.addoption("--results-dir", default=None,
                     help="directory for test_results.db (default: current directory)")
    parser.addini("sut_binary", "default horostracker binary, relative to the rootdir", default="")


def _sut_binary(config) -> str | None:
    cli = config.getoption("--sut-binary")
    if cli:
        return cli
    if os.environ.get("HOROSTRACKER_BIN"):
        return os.environ["HOROSTRACKER_BIN"]
    ini = config.getini("sut_binary")
    if ini:
        return os.path.join(str(config.rootpath), ini)
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "llm: needs ANTHROPIC_API_KEY or GEMINI_API_KEY")
    results_dir = config.getoption("--results-dir") or os.getcwd()
    e2e_results.init_global_results(results_dir)
    e2e_lifecycle.configure(HarnessOptions.from_env(binary=_sut_binary(config)), results_dir)


def pytest_collection_modifyitems(config, items):
    if has_llm():
        return
    skip_llm = pytest.mark.skip(reason="no LLM API key (ANTHROPIC_API_KEY / GEMINI_API_KEY)")
    for item in items:
        if "llm" in item.keywords:
            item.add_marker(skip_llm)


def pytest_sessionfinish(session, exitstatus):
    session.config.stash[_RECORDED] = e2e_results.recorded_count()
    e2e_lifecycle.teardown_harness()
    e2e_results.close_global_results()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def e2e():
    try:
        return e2e_lifecycle.ensure_harness()
    except HarnessSetupError as exc:
        pytest.fail(str(exc), pytrace=False)


@pytest.fixture
def harness(e2e):
    return e2e[0]


@pytest.fixture
def dba(e2e):
    return e2e[1]


@pytest.fixture
def record_exchange(record_property):
    """Call with the request and/or response payload to store alongside the result."""
    def _attach(request=None, response=None):
        if request is not None:
            record_property("request", request)
        if response is not None:
            record_property("response", response)
    return _attach


# ---------------------------------------------------------------------------
# Results log
# ---------------------------------------------------------------------------
def result_name(nodeid: str) -> str:
    """``tests/test_user.py::TestMe::test_role[op]`` -> ``tests.test_user.TestMe.test_role[op]``"""
    path, _, rest = nodeid.partition("::")
    path = path.replace("\\", "/")
    if path.endswith(".py"):
        path = path[:-3]
    return ".".join(p for p in (path.replace("/", "."), rest.replace("::", ".")) if p)


def pytest_runtest_logreport(report):
    # One row per test: the call phase, or the phase that stopped it earlier
    if not (report.when == "call"
            or (report.when == "setup" and not report.passed)
            or (report.when == "teardown" and report.failed)):
        return

    props  = dict(report.user_properties)
    status = _STATUS[report.outcome]
    error  = None
    if report.failed:
        error = report.longreprtext[-4000:]
    elif report.skipped and isinstance(report.longrepr, tuple):
        error = report.longrepr[2]
    e2e_results.record(
        result_name(report.nodeid), status, round(report.duration * 1000),
        props.get("request"), props.get("response"), error,
    )


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    path = e2e_results.results_path(config.getoption("--results-dir"))
    terminalreporter.write_sep("─", "horostracker e2e results", cyan=True)
    terminalreporter.write_line(f"  results db : {path}")
    terminalreporter.write_line(f"  recorded   : {config.stash.get(_RECORDED, 0)} row(s) this session")
