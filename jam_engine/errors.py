"""Exception types and message-based error classification."""

import requests


class RPCError(Exception):
    pass


class AllEndpointsFailed(RPCError):
    def __init__(self, last_error: Exception | None):
        super().__init__(f"all RPC endpoints failed: {last_error}")
        self.last_error = last_error


class ReceiptPending(RPCError):
    """Receipt could not be read because the node is still indexing."""

    def __init__(self, last_error: Exception | None = None):
        super().__init__(f"receipt pending: {last_error}")
        self.last_error = last_error


class ReceiptTimeout(RPCError):
    pass


class NonceUnavailable(RPCError):
    pass


class TransactionReverted(RuntimeError):
    pass


class BundleRejected(RuntimeError):
    pass


INDEXING_KEYWORDS = ["indexing", "index in progress", "transaction indexing"]
RATE_LIMIT_KEYWORDS = ["429", "rate limit", "rate-limit", "too many requests", "quota", "-32005"]
NETWORK_KEYWORDS = ["timeout", "timed out", "econnreset", "connection", "network", "502", "503", "504"]

TX_KEYWORDS = [
    ("insufficient_funds", ["insufficient funds", "insufficient balance"]),
    ("underpriced", ["underpriced", "fee too low", "max fee per gas less than block base fee"]),
    ("nonce", ["nonce too low", "nonce too high", "invalid nonce", "already known", "nonce has already been used"]),
    ("reverted", ["execution reverted", "reverted", "revert"]),
    ("gas", ["gas required exceeds", "intrinsic gas too low", "out of gas", "exceeds block gas limit"]),
]

METRIC_KEYS = {
    "insufficient_funds": "insufficient_funds",
    "nonce": "nonce_error",
    "underpriced": "gas_error",
    "gas": "gas_error",
    "timeout": "network_timeout",
    "reverted": "transaction_reverted",
}


def _message(exc: BaseException) -> str:
    return str(exc).lower()


def classify_tx_error(exc: BaseException) -> str:
    """Map a submission error onto insufficient_funds, underpriced, nonce,
    reverted, gas, timeout or unknown."""
    if isinstance(exc, TransactionReverted):
        return "reverted"
    if isinstance(exc, (requests.exceptions.Timeout, ReceiptTimeout, TimeoutError)):
        return "timeout"
    msg = _message(exc)
    for kind, keywords in TX_KEYWORDS:
        if any(k in msg for k in keywords):
            return kind
    if "timeout" in msg or "timed out" in msg:
        return "timeout"
    return "unknown"


def classify_rpc_error(exc: BaseException) -> str:
    """Map an endpoint error onto indexing, rate_limit, network, transaction or other.

    "transaction" means the node rejected the payload itself; retrying it on
    another endpoint would only rebroadcast it.
    """
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError,
                        TimeoutError, ConnectionError)):
        return "network"
    msg = _message(exc)
    if any(k in msg for k in INDEXING_KEYWORDS):
        return "indexing"
    if any(k in msg for k in RATE_LIMIT_KEYWORDS):
        return "rate_limit"
    if classify_tx_error(exc) in ("insufficient_funds", "underpriced", "nonce", "reverted"):
        return "transaction"
    if any(k in msg for k in NETWORK_KEYWORDS):
        return "network"
    return "other"


def metric_key(kind: str) -> str:
    return METRIC_KEYS.get(kind, "unknown")
