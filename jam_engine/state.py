"""Shared system state document and the cross-process emission lock."""

import copy
import fcntl
import os
import time
from contextlib import contextmanager
from pathlib import Path

import psutil

from .constants import PATTERNS
from .log import echo, warn
from .store import read_json, write_json_atomic

LOCK_STALE_AFTER = 300
LOCK_GRACE = 30
LOCK_POLL = 5

ERROR_TYPES = [
    "insufficient_funds", "nonce_error", "gas_error",
    "network_timeout", "transaction_reverted", "unknown",
]


def _pattern_stats() -> dict:
    return {"attempts": 0, "successes": 0, "last_used_at": None,
            "attributions": 0, "reinforcements": 0}


def default_state() -> dict:
    return {
        "last_hash": None,
        "metrics": {
            "total_analyses": 0,
            "audit_passes": 0,
            "audit_fails": 0,
            "emission_successes": 0,
            "emission_failures": 0,
            "last_audit_fail_reason": None,
            "error_types": {k: 0 for k in ERROR_TYPES},
            "pattern_stats": {name: _pattern_stats() for name in PATTERNS},
        },
        "lock": {"locked": False, "pid": None, "acquired_at": None},
        "nonce": None,
    }


def _merge_defaults(state: dict) -> dict:
    merged = default_state()
    for key in ("last_hash", "nonce"):
        if key in state:
            merged[key] = state[key]
    if isinstance(state.get("lock"), dict):
        merged["lock"].update(state["lock"])
    metrics = state.get("metrics")
    if isinstance(metrics, dict):
        for key, value in metrics.items():
            if key == "error_types" and isinstance(value, dict):
                merged["metrics"]["error_types"].update(value)
            elif key == "pattern_stats" and isinstance(value, dict):
                for name, stats in value.items():
                    merged["metrics"]["pattern_stats"].setdefault(name, _pattern_stats()).update(stats)
            else:
                merged["metrics"][key] = value
    return merged


def pid_alive(pid) -> bool:
    try:
        return psutil.pid_exists(int(pid))
    except (TypeError, ValueError):
        return False


class StateStore:
    """The state document at <data_dir>/system-state.json.

    Every read-modify-write holds an exclusive flock on a sidecar file, so the
    lock check-and-set is atomic across processes. The document itself is
    replaced by temp file + rename.
    """

    def __init__(self, data_dir: str | Path, pid: int | None = None,
                 clock=time.time, sleep=time.sleep, is_alive=pid_alive):
        self.path = Path(data_dir) / "system-state.json"
        self.flock_path = Path(data_dir) / "system-state.json.lock"
        self.pid = pid if pid is not None else os.getpid()
        self.clock = clock
        self.sleep = sleep
        self.is_alive = is_alive
        self.holding = False

    @contextmanager
    def _exclusive(self):
        self.flock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.flock_path, "a") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)

    def read(self) -> dict:
        data = read_json(self.path)
        if not isinstance(data, dict):
            return default_state()
        return _merge_defaults(data)

    def update(self, fn) -> dict:
        """Apply fn to a fresh copy of the document under the file lock and persist it."""
        with self._exclusive():
            state = self.read()
            fn(state)
            write_json_atomic(self.path, state)
            return copy.deepcopy(state)

    # -- emission lock --

    def _stale_reason(self, lock: dict) -> str | None:
        """Why an existing lock may be taken over, or None if it must be respected."""
        if not lock.get("locked"):
            return "free"
        if lock.get("pid") == self.pid:
            return "stale_self"
        acquired_at = lock.get("acquired_at") or 0
        if self.clock() - acquired_at > LOCK_STALE_AFTER:
            return "expired"
        if not self.is_alive(lock.get("pid")):
            return "dead_pid"
        return None

    def _try_acquire(self) -> tuple[bool, dict]:
        with self._exclusive():
            state = self.read()
            lock = state["lock"]
            reason = self._stale_reason(lock)
            if reason is None:
                return False, dict(lock)
            if reason != "free":
                echo(lock_recover=reason, previous_pid=lock.get("pid"))
            state["lock"] = {"locked": True, "pid": self.pid, "acquired_at": self.clock()}
            write_json_atomic(self.path, state)
            self.holding = True
            return True, state["lock"]

    def acquire_lock(self, grace: float = LOCK_GRACE, poll: float = LOCK_POLL) -> bool:
        acquired, lock = self._try_acquire()
        if acquired:
            return True
        echo(lock_status="held", pid=lock.get("pid"), grace=grace)
        deadline = self.clock() + grace
        while self.clock() < deadline:
            self.sleep(poll)
            acquired, lock = self._try_acquire()
            if acquired:
                return True
        warn(lock_status="refused", pid=lock.get("pid"))
        return False

    def release_lock(self):
        def clear(state):
            state["lock"] = {"locked": False, "pid": None, "acquired_at": None}

        self.update(clear)
        self.holding = False

    def release_if_held(self):
        """Best-effort release for shutdown and crash paths."""
        if not self.holding:
            return
        try:
            self.release_lock()
            echo(lock_status="released_on_exit", pid=self.pid)
        except OSError as e:
            warn(lock_status="release_failed", msg=str(e))

    # -- metrics --

    def record_analysis(self, audit_pass: bool, reason: str | None = None):
        def apply(state):
            m = state["metrics"]
            m["total_analyses"] += 1
            if audit_pass:
                m["audit_passes"] += 1
            else:
                m["audit_fails"] += 1
                m["last_audit_fail_reason"] = reason

        self.update(apply)

    def record_attempt(self, pattern: str):
        def apply(state):
            stats = state["metrics"]["pattern_stats"].setdefault(pattern, _pattern_stats())
            stats["attempts"] += 1
            stats["last_used_at"] = self.clock()

        self.update(apply)

    def record_error(self, metric: str):
        def apply(state):
            errors = state["metrics"]["error_types"]
            errors[metric] = errors.get(metric, 0) + 1

        self.update(apply)

    def record_emission_failure(self):
        def apply(state):
            state["metrics"]["emission_failures"] += 1

        self.update(apply)

    def commit_emission(self, jam_hash: str, pattern: str, nonce: int | None):
        def apply(state):
            m = state["metrics"]
            state["last_hash"] = jam_hash
            state["nonce"] = nonce
            m["emission_successes"] += 1
            m["pattern_stats"].setdefault(pattern, _pattern_stats())["successes"] += 1

        self.update(apply)

    def set_nonce(self, nonce: int | None):
        def apply(state):
            state["nonce"] = nonce

        self.update(apply)

    def record_attribution(self, pattern: str, reinforced: bool):
        def apply(state):
            stats = state["metrics"]["pattern_stats"].setdefault(pattern, _pattern_stats())
            stats["attributions"] += 1
            if reinforced:
                stats["reinforcements"] += 1

        self.update(apply)
