"""Multi-endpoint JSON-RPC client with failover and error-class-aware backoff."""

import time

from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from .errors import AllEndpointsFailed, ReceiptPending, ReceiptTimeout, classify_rpc_error
from .log import warn

BASE_TIMEOUT = 48.0
RECEIPT_TIMEOUT_FACTOR = 0.6
SECOND_ROUND_TIMEOUT_FACTOR = 1.5
INDEXING_STREAK_LIMIT = 3
RECEIPT_POLL_INTERVAL = 2.0


class ResilientRPC:
    """Round-robin over an ordered endpoint list, up to 2·N attempts per call."""

    def __init__(self, urls: list[str], sleep=time.sleep, clock=time.time):
        if not urls:
            raise ValueError("at least one RPC URL is required")
        self.urls = list(urls)
        self.sleep = sleep
        self.clock = clock
        self._cursor = 0
        self._indexing_streak = 0
        self._clients: dict[tuple[str, float], Web3] = {}
        self._chain_id: int | None = None

    def _web3(self, url: str, timeout: float) -> Web3:
        key = (url, timeout)
        if key not in self._clients:
            self._clients[key] = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": timeout}))
        return self._clients[key]

    def _call(self, label: str, fn, receipt: bool = False):
        n = len(self.urls)
        last_error = None
        last_kind = None
        for attempt in range(2 * n):
            rotation = attempt // n
            if attempt and attempt % n == 0:
                self.sleep(min(1.0 * 2 ** rotation, 10.0))
            index = (self._cursor + attempt) % n
            url = self.urls[index]
            timeout = BASE_TIMEOUT
            if receipt:
                timeout *= RECEIPT_TIMEOUT_FACTOR
            if rotation >= 1:
                timeout *= SECOND_ROUND_TIMEOUT_FACTOR
            try:
                result = fn(self._web3(url, timeout))
            except (TransactionNotFound, ContractLogicError):
                raise
            except Exception as e:
                kind = classify_rpc_error(e)
                if kind == "transaction":
                    raise
                last_error, last_kind = e, kind
                warn(rpc_error=kind, method=label, endpoint=index, attempt=attempt + 1, msg=str(e)[:160])
                if kind == "indexing":
                    self._indexing_streak += 1
                    if self._indexing_streak >= INDEXING_STREAK_LIMIT:
                        self.sleep(min(5.0 * self._indexing_streak, 30.0))
                        self._indexing_streak = 0
                elif kind == "rate_limit":
                    self.sleep(5.0)
                elif kind == "network":
                    self.sleep(1.0)
                continue
            self._cursor = index
            self._indexing_streak = 0
            return result
        if receipt and last_kind == "indexing":
            raise ReceiptPending(last_error)
        raise AllEndpointsFailed(last_error)

    def block_number(self) -> int:
        return self._call("eth_blockNumber", lambda w3: w3.eth.block_number)

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self._call("eth_chainId", lambda w3: w3.eth.chain_id)
        return self._chain_id

    def get_balance(self, address: str) -> int:
        address = Web3.to_checksum_address(address)
        return self._call("eth_getBalance", lambda w3: w3.eth.get_balance(address))

    def get_transaction_count(self, address: str, block: str = "pending") -> int:
        address = Web3.to_checksum_address(address)
        return self._call("eth_getTransactionCount",
                          lambda w3: w3.eth.get_transaction_count(address, block))

    def fee_history(self, blocks: int = 5, percentiles: list[float] | None = None):
        percentiles = percentiles or [50]
        return self._call("eth_feeHistory",
                          lambda w3: w3.eth.fee_history(blocks, "latest", percentiles))

    def gas_price(self) -> int:
        return self._call("eth_gasPrice", lambda w3: w3.eth.gas_price)

    def base_fee(self) -> int:
        """Latest block base fee in wei, falling back to eth_gasPrice."""
        block = self.get_block("latest")
        base = block.get("baseFeePerGas")
        if base:
            return base
        return self.gas_price()

    def get_code(self, address: str) -> bytes:
        address = Web3.to_checksum_address(address)
        return self._call("eth_getCode", lambda w3: bytes(w3.eth.get_code(address)))

    def call(self, tx: dict) -> bytes:
        return self._call("eth_call", lambda w3: bytes(w3.eth.call(tx)))

    def contract_call(self, address: str, abi: list, fn_name: str, *args):
        address = Web3.to_checksum_address(address)

        def run(w3):
            contract = w3.eth.contract(address=address, abi=abi)
            return getattr(contract.functions, fn_name)(*args).call()

        return self._call(f"call:{fn_name}", run)

    def get_block(self, block, full: bool = False):
        return self._call("eth_getBlockByNumber", lambda w3: w3.eth.get_block(block, full))

    def get_transaction(self, tx_hash):
        return self._call("eth_getTransactionByHash", lambda w3: w3.eth.get_transaction(tx_hash))

    def get_transaction_receipt(self, tx_hash):
        """Receipt or None when the node does not know the transaction yet."""
        try:
            return self._call("eth_getTransactionReceipt",
                              lambda w3: w3.eth.get_transaction_receipt(tx_hash),
                              receipt=True)
        except TransactionNotFound:
            return None

    def wait_for_receipt(self, tx_hash, timeout: float, poll: float = RECEIPT_POLL_INTERVAL):
        deadline = self.clock() + timeout
        while True:
            receipt = self.get_transaction_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if self.clock() >= deadline:
                raise ReceiptTimeout(f"no receipt for {Web3.to_hex(tx_hash)} after {timeout:.0f}s")
            self.sleep(poll)

    def get_logs(self, params: dict):
        return self._call("eth_getLogs", lambda w3: w3.eth.get_logs(params))

    def send(self, method: str, params: list):
        """Raw JSON-RPC request. Returns the result field."""

        def run(w3):
            response = w3.provider.make_request(method, params)
            if "error" in response:
                raise ValueError(response["error"])
            return response["result"]

        return self._call(method, run)

    def send_raw_transaction(self, raw: bytes) -> str:
        return Web3.to_hex(self._call("eth_sendRawTransaction",
                                      lambda w3: w3.eth.send_raw_transaction(raw)))
