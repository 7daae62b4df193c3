import json

import pytest

from jam_engine.echo import CalldataAnchor, EchoChain, IpfsPin, echo_payload
from jam_engine.record import build_record

from conftest import FakeClock, QUIET_TS

META = {"confirmed_timestamp": 5000, "bait_tx": "0xbait", "block_number": 100}


class Flaky:
    def __init__(self, name, failures, result=None):
        self.name = name
        self.failures = failures
        self.result = result or {"chain": name}
        self.calls = 0

    def publish(self, record, meta):
        self.calls += 1
        if self.calls <= self.failures:
            raise OSError("unreachable")
        return self.result


@pytest.fixture
def record():
    return build_record("CLASSIC_ARBITRAGE", None, 1.618, QUIET_TS, {"audit_pass": True})


class TestEchoChain:
    def test_first_success_wins(self, record):
        first, second = Flaky("A", 0), Flaky("B", 0)
        assert EchoChain([first, second]).publish(record, META) == {"chain": "A"}
        assert second.calls == 0

    def test_retries_with_backoff_then_falls_through(self, record):
        clock = FakeClock()
        first, second = Flaky("A", 3), Flaky("B", 1)
        chain = EchoChain([first, second], sleep=clock.sleep)
        assert chain.publish(record, META) == {"chain": "B"}
        assert first.calls == 3
        assert clock.sleeps == [2.0, 4.0, 2.0]

    def test_exhaustion_returns_none(self, record):
        clock = FakeClock()
        assert EchoChain([Flaky("A", 9)], sleep=clock.sleep).publish(record, META) is None


def test_payload_is_compact(record):
    assert echo_payload(record, META) == {"h": record["hash"], "p": "CLASSIC_ARBITRAGE", "r": 1.618,
                                          "d": 1, "t": 5000, "tx": "0xbait"}


def test_calldata_anchor(record, wallet):
    result = CalldataAnchor(wallet).publish(record, META)
    (tx,) = wallet.built
    assert tx["value"] == 0
    assert json.loads(tx["data"])["h"] == record["hash"]
    assert result["chain"] == "ETH"
    assert result["txid"] == tx["hash"]


def test_ipfs_pin(record):
    class Response:
        def raise_for_status(self):
            pass

        def json(self):
            return {"IpfsHash": "bafy"}

    class Session:
        def post(self, url, json=None, headers=None, timeout=None):
            self.sent = (url, json, headers)
            return Response()

    session = Session()
    assert IpfsPin("secret", session=session).publish(record, META) == {"chain": "IPFS", "cid": "bafy"}
    url, body, headers = session.sent
    assert body["pinataContent"]["h"] == record["hash"]
    assert headers["Authorization"] == "Bearer secret"
