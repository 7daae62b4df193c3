import pytest
import requests
from web3.exceptions import TransactionNotFound

from jam_engine.errors import (
    AllEndpointsFailed, ReceiptPending, classify_rpc_error, classify_tx_error, metric_key,
)
from jam_engine.rpc import ResilientRPC

from conftest import FakeClock


class FakeEth:
    def __init__(self, outcomes):
        self.outcomes = outcomes
        self.calls = 0

    def _next(self):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def block_number(self):
        return self._next()

    def get_transaction_receipt(self, tx_hash):
        return self._next()

    def send_raw_transaction(self, raw):
        return self._next()


class FakeWeb3:
    def __init__(self, outcomes):
        self.eth = FakeEth(outcomes)


def make_rpc(monkeypatch, endpoints: dict):
    clock = FakeClock()
    rpc = ResilientRPC(list(endpoints), sleep=clock.sleep, clock=clock)
    fakes = {url: FakeWeb3(outcomes) for url, outcomes in endpoints.items()}
    timeouts = []

    def web3_for(url, timeout):
        timeouts.append((url, timeout))
        return fakes[url]

    monkeypatch.setattr(rpc, "_web3", web3_for)
    return rpc, fakes, clock, timeouts


class TestFailover:
    def test_fails_over_to_next_endpoint(self, monkeypatch):
        rpc, fakes, clock, _ = make_rpc(monkeypatch, {
            "http://a": [requests.exceptions.ConnectionError("connection refused")],
            "http://b": [42],
        })
        assert rpc.block_number() == 42
        assert clock.sleeps == [1.0]
        # the healthy endpoint is tried first next time
        assert rpc.block_number() == 42
        assert fakes["http://a"].eth.calls == 1

    def test_all_endpoints_failed_after_two_rounds(self, monkeypatch):
        rpc, fakes, _, timeouts = make_rpc(monkeypatch, {
            "http://a": [ValueError("boom")],
            "http://b": [ValueError("boom")],
        })
        with pytest.raises(AllEndpointsFailed):
            rpc.block_number()
        assert fakes["http://a"].eth.calls == 2
        assert fakes["http://b"].eth.calls == 2
        assert [t for _, t in timeouts] == [48.0, 48.0, 72.0, 72.0]

    def test_rate_limit_backs_off(self, monkeypatch):
        rpc, _, clock, _ = make_rpc(monkeypatch, {
            "http://a": [ValueError("429 Too Many Requests"), 7],
        })
        assert rpc.block_number() == 7
        assert clock.sleeps == [5.0, 2.0]

    def test_rejected_transaction_is_not_rebroadcast(self, monkeypatch):
        rpc, fakes, _, _ = make_rpc(monkeypatch, {
            "http://a": [ValueError("nonce too low")],
            "http://b": [b"\x01" * 32],
        })
        with pytest.raises(ValueError):
            rpc.send_raw_transaction(b"\x00")
        assert fakes["http://b"].eth.calls == 0


class TestReceipts:
    def test_unknown_transaction_is_none(self, monkeypatch):
        rpc, _, _, _ = make_rpc(monkeypatch, {"http://a": [TransactionNotFound("not found")]})
        assert rpc.get_transaction_receipt("0x01") is None

    def test_indexing_everywhere_is_pending(self, monkeypatch):
        rpc, _, clock, timeouts = make_rpc(monkeypatch, {
            "http://a": [ValueError("transaction indexing is in progress")],
            "http://b": [ValueError("transaction indexing is in progress")],
        })
        with pytest.raises(ReceiptPending):
            rpc.get_transaction_receipt("0x01")
        assert timeouts[0][1] == pytest.approx(48.0 * 0.6)
        assert 15.0 in clock.sleeps

    def test_wait_for_receipt_polls(self, monkeypatch):
        rpc, _, clock, _ = make_rpc(monkeypatch, {
            "http://a": [TransactionNotFound("x"), TransactionNotFound("x"), {"status": 1}],
        })
        assert rpc.wait_for_receipt("0x01", timeout=30) == {"status": 1}
        assert clock.sleeps == [2.0, 2.0]


class TestClassification:
    @pytest.mark.parametrize("message,kind", [
        ("insufficient funds for gas * price + value", "insufficient_funds"),
        ("replacement transaction underpriced", "underpriced"),
        ("nonce too low", "nonce"),
        ("execution reverted: STF", "reverted"),
        ("intrinsic gas too low", "gas"),
        ("request timed out", "timeout"),
        ("something odd", "unknown"),
    ])
    def test_tx_errors(self, message, kind):
        assert classify_tx_error(ValueError(message)) == kind

    @pytest.mark.parametrize("exc,kind", [
        (requests.exceptions.ReadTimeout("slow"), "network"),
        (ValueError("transaction indexing is in progress"), "indexing"),
        (ValueError("rate limit exceeded"), "rate_limit"),
        (ValueError("nonce too low"), "transaction"),
        (ValueError("502 Bad Gateway"), "network"),
        (ValueError("weird"), "other"),
    ])
    def test_rpc_errors(self, exc, kind):
        assert classify_rpc_error(exc) == kind

    def test_metric_keys(self):
        assert metric_key("underpriced") == "gas_error"
        assert metric_key("nonce") == "nonce_error"
        assert metric_key("timeout") == "network_timeout"
        assert metric_key("mystery") == "unknown"
