"""Shared fakes: an in-memory chain behind the RPC client interface, and a manual clock."""

import pytest
from eth_account import Account
from web3 import Web3

from jam_engine.abi import SIGNAL_REGISTERED_TOPIC
from jam_engine.errors import ReceiptTimeout
from jam_engine.nonce import NonceManager
from jam_engine.state import StateStore
from jam_engine.store import RecordStore
from jam_engine.wallet import Wallet

PRIMARY_KEY = "0x" + "11" * 32
MIRROR_KEY = "0x" + "22" * 32
BOT_KEY = "0x" + "33" * 32
DMAP = "0x1111111111111111111111111111111111111111"
VAULT = "0x2222222222222222222222222222222222222222"
TARGET = "0x3333333333333333333333333333333333333333"
SEQUENCER = "0x4200000000000000000000000000000000000011"

# 2026-01-01 00:00 UTC: far from every emission point, multiplier 1.0
QUIET_TS = 1767225600
# 2026-01-01 13:21 UTC: on an anchor, multiplier 2.618
ANCHOR_TS = QUIET_TS + 13 * 3600 + 21 * 60


class FakeClock:
    def __init__(self, now: float = QUIET_TS):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRPC:
    """Deterministic stand-in for ResilientRPC.

    Every broadcast gets a successful receipt in the current head block unless
    on_send returns something else or send_errors has an exception queued.
    """

    def __init__(self, head: int = 100, gas_price: int = 5_000_000, base_fee: int = 1_000_000_000):
        self.head = head
        self.gas = gas_price
        self.base = base_fee
        self.balances: dict[str, list[int] | int] = {}
        self.default_balance = 10 ** 18
        self.tx_counts: dict[str, list[int] | int] = {}
        self.blocks: dict[int, dict] = {}
        self.txs: dict[str, dict] = {}
        self.receipts: dict[str, dict] = {}
        self.logs: list[dict] = []
        self.code: dict[str, bytes] = {}
        self.calls: dict[str, object] = {}
        self.sent: list[tuple[bytes, str]] = []
        self.send_errors: list[Exception | None] = []
        self.receipt_errors: dict[str, Exception] = {}
        self.on_send = None

    @staticmethod
    def _pop(table: dict, key: str, default):
        value = table.get(key.lower(), default)
        if isinstance(value, list):
            return value.pop(0) if len(value) > 1 else value[0]
        return value

    def chain_id(self) -> int:
        return 8453

    def block_number(self) -> int:
        return self.head

    def get_balance(self, address: str) -> int:
        return self._pop(self.balances, address, self.default_balance)

    def get_transaction_count(self, address: str, block: str = "pending") -> int:
        value = self._pop(self.tx_counts, address, 0)
        if isinstance(value, Exception):
            raise value
        return value

    def gas_price(self) -> int:
        return self.gas

    def base_fee(self) -> int:
        return self.base

    def get_code(self, address: str) -> bytes:
        return self.code.get(address.lower(), b"")

    def add_block(self, number: int, timestamp: int, transactions=None, miner: str = SEQUENCER) -> dict:
        block = {"number": number, "timestamp": timestamp, "miner": miner,
                 "baseFeePerGas": self.base, "transactions": transactions or []}
        self.blocks[number] = block
        return block

    def get_block(self, block, full: bool = False):
        if block == "latest":
            return self.blocks.get(self.head) or {"number": self.head, "timestamp": QUIET_TS,
                                                  "miner": SEQUENCER, "baseFeePerGas": self.base,
                                                  "transactions": []}
        return self.blocks.get(block)

    def get_transaction(self, tx_hash):
        return self.txs[tx_hash]

    def get_transaction_receipt(self, tx_hash):
        if tx_hash in self.receipt_errors:
            raise self.receipt_errors[tx_hash]
        return self.receipts.get(tx_hash)

    def wait_for_receipt(self, tx_hash, timeout: float, poll: float = 2.0):
        receipt = self.get_transaction_receipt(tx_hash)
        if receipt is None:
            raise ReceiptTimeout(f"no receipt for {tx_hash}")
        return receipt

    def get_logs(self, params: dict):
        return list(self.logs)

    def contract_call(self, address: str, abi: list, fn_name: str, *args):
        handler = self.calls.get(fn_name)
        if callable(handler):
            return handler(address, *args)
        if handler is None:
            raise ValueError(f"unexpected call {fn_name}")
        return handler

    def send_raw_transaction(self, raw: bytes) -> str:
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        tx_hash = Web3.to_hex(Web3.keccak(raw))
        self.sent.append((raw, tx_hash))
        receipt = {"status": 1, "blockNumber": self.head, "gasUsed": 21_000,
                   "effectiveGasPrice": self.gas, "transactionHash": tx_hash, "logs": []}
        if self.on_send is not None:
            receipt = self.on_send(tx_hash, receipt)
        if receipt is not None:
            self.receipts[tx_hash] = receipt
        return tx_hash


class RecordingWallet(Wallet):
    """Wallet that remembers the arguments of every transaction it signs."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.built: list[dict] = []

    def build(self, to, data=b"", value=0, gas=300_000, nonce=None, gas_price=None,
              max_fee=None, priority_fee=None):
        raw, tx_hash = super().build(to, data, value, gas, nonce, gas_price, max_fee, priority_fee)
        self.built.append({"to": to, "data": bytes(data), "value": value, "gas": gas,
                           "nonce": nonce, "gas_price": gas_price, "max_fee": max_fee,
                           "priority_fee": priority_fee, "hash": tx_hash})
        return raw, tx_hash


def registered_receipt(signal_hash: str, registry: str = DMAP):
    """on_send hook adding a SignalRegistered log for signal_hash."""

    def hook(tx_hash, receipt):
        receipt["logs"] = [{
            "address": Web3.to_checksum_address(registry),
            "topics": [SIGNAL_REGISTERED_TOPIC, signal_hash],
        }]
        return receipt

    return hook


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rpc():
    return FakeRPC()


@pytest.fixture
def account():
    return Account.from_key(PRIMARY_KEY)


@pytest.fixture
def mirror_account():
    return Account.from_key(MIRROR_KEY)


@pytest.fixture
def wallet(rpc, account, clock):
    return RecordingWallet(rpc, account, "primary",
                           NonceManager(rpc, account.address, clock=clock, sleep=clock.sleep))


@pytest.fixture
def mirror(rpc, mirror_account, clock):
    return RecordingWallet(rpc, mirror_account, "mirror",
                           NonceManager(rpc, mirror_account.address, clock=clock, sleep=clock.sleep))


@pytest.fixture
def store(tmp_path):
    return RecordStore(tmp_path)


@pytest.fixture
def state(tmp_path, clock):
    return StateStore(tmp_path, pid=4242, clock=clock, sleep=clock.sleep, is_alive=lambda pid: False)
