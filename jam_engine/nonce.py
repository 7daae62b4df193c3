"""Per-wallet nonce issuer with refresh-on-demand and pending tracking."""

import threading
import time

from .errors import NonceUnavailable
from .log import echo, warn

REFRESH_AFTER = 60
MAX_REFRESH_ATTEMPTS = 5
CONTENTION_WAIT = 0.2
MAX_CONTENTION_WAITS = 50


class NonceManager:
    def __init__(self, rpc, address: str, clock=time.time, sleep=time.sleep):
        self.rpc = rpc
        self.address = address
        self.clock = clock
        self.sleep = sleep
        self.nonce: int | None = None
        self.last_refresh_at = 0.0
        self.pending: set[str] = set()
        self._lock = threading.Lock()

    def _needs_refresh(self) -> bool:
        return (self.nonce is None
                or self.clock() - self.last_refresh_at > REFRESH_AFTER
                or bool(self.pending))

    def _refresh(self):
        last_error = None
        for k in range(MAX_REFRESH_ATTEMPTS):
            try:
                fetched = self.rpc.get_transaction_count(self.address, "pending")
            except Exception as e:
                last_error = e
                warn(nonce_refresh="error", attempt=k + 1, msg=str(e)[:160])
            else:
                if self.nonce is None or fetched >= self.nonce:
                    self.nonce = fetched
                    self.last_refresh_at = self.clock()
                    return
                last_error = None
                warn(nonce_refresh="regression", fetched=fetched, cached=self.nonce, attempt=k + 1)
            if k < MAX_REFRESH_ATTEMPTS - 1:
                self.sleep(2.0 * 2 ** k)
        if last_error is not None and self.nonce is None:
            raise NonceUnavailable(f"cannot read nonce for {self.address}: {last_error}")
        # Every read regressed (or failed with a cached value): keep the cached nonce.
        self.last_refresh_at = self.clock()
        echo(nonce_refresh="kept_cached", nonce=self.nonce)

    def get(self) -> int:
        for _ in range(MAX_CONTENTION_WAITS):
            if self._lock.acquire(blocking=False):
                try:
                    if self._needs_refresh():
                        self._refresh()
                    return self.nonce
                finally:
                    self._lock.release()
            self.sleep(CONTENTION_WAIT)
        raise NonceUnavailable("nonce manager busy")

    def add_pending(self, tx_hash: str):
        self.pending.add(tx_hash)

    def remove_pending(self, tx_hash: str):
        self.pending.discard(tx_hash)

    def increment(self):
        if self.nonce is not None:
            self.nonce += 1

    def rollback(self):
        """Undo an optimistic increment after a failed submission."""
        if self.nonce is not None and self.nonce > 0:
            self.nonce -= 1

    def reset(self):
        self.nonce = None
        self.last_refresh_at = 0.0
        self.pending.clear()
