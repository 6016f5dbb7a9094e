"""
e2e_lifecycle.py
================
The one harness / DBAssert pair every E2E test shares.

    ensure()    first caller starts the SUT, opens DBAssert on its databases
                and opens the results log; everyone else gets the same pair
    teardown()  DBAssert.close -> Harness.stop -> close results log

Order matters on the way down: DBAssert holds connections to files inside the
harness data dir, which stop() deletes; the results log closes last so records
written during session cleanup still land.

A failed start is remembered.  Later ensure() calls raise immediately instead
of spawning the server again for every test.
"""

import logging
import threading

import e2e_results
from e2e_dbassert import DBAssert
from e2e_harness import HarnessOptions, HarnessSetupError, start_harness

log = logging.getLogger("horostracker-e2e")


class Lifecycle:

    def __init__(self, options: HarnessOptions | None = None,
                 results_dir: str | None = None, harness_factory=start_harness):
        self.options         = options
        self.results_dir     = results_dir
        self.harness_factory = harness_factory

        self.harness   = None
        self.dba       = None
        self.error     = None
        self._done     = False
        self._torn     = False
        self._owns_results = False
        self._lock     = threading.Lock()

    def ensure(self):
        """Return ``(harness, dba)``, starting them on the first call."""
        with self._lock:
            if not self._done:
                # Flag is set before the attempt and never cleared: no retries
                self._done = True
                self._initialize()
            if self.harness is None:
                raise HarnessSetupError(f"harness initialization failed: {self.error}")
            return self.harness, self.dba

    def _initialize(self):
        try:
            self.harness = self.harness_factory(self.options or HarnessOptions.from_env())
        except HarnessSetupError as exc:
            self.error = exc
            log.error("[SUT] %s", exc)
            return
        except Exception as exc:
            self.error = HarnessSetupError(f"{type(exc).__name__}: {exc}")
            self.error.__cause__ = exc
            log.exception("[SUT] unexpected error starting horostracker")
            return
        self.dba = DBAssert(self.harness.nodes_db, self.harness.flows_db, self.harness.metrics_db)
        if self.results_dir is not None:
            self._owns_results = e2e_results.init_global_results(self.results_dir)

    def teardown(self):
        with self._lock:
            if self._torn:
                return
            self._torn = True
            if self.dba is not None:
                self.dba.close()
            if self.harness is not None:
                self.harness.stop()
            if self._owns_results:
                e2e_results.close_global_results()
                self._owns_results = False


# ---------------------------------------------------------------------------
# Session-wide instance, configured from conftest.py
# ---------------------------------------------------------------------------
LIFECYCLE = Lifecycle()


def configure(options: HarnessOptions | None = None, results_dir: str | None = None):
    global LIFECYCLE
    LIFECYCLE = Lifecycle(options, results_dir)
    return LIFECYCLE


def ensure_harness():
    return LIFECYCLE.ensure()


def teardown_harness():
    LIFECYCLE.teardown()
