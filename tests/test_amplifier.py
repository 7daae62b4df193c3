import json

import pytest
from web3 import Web3

from jam_engine import abi
from jam_engine.amplifier import CAPTURE_FAILED, MIRROR_EMPTY, Amplifier
from jam_engine.builder import INCLUDED, NOT_INCLUDED
from jam_engine.constants import PHI
from jam_engine.dex import DEXES, ROUTER_WHITELIST
from jam_engine.echo import EchoChain, HoneypotHint
from jam_engine.errors import AllEndpointsFailed, ReceiptPending
from jam_engine.record import build_record

from conftest import DMAP, QUIET_TS, SEQUENCER

EMIT_TX = "0x" + "ee" * 32
HONEYPOT = "0x5555555555555555555555555555555555555555"
BAIT_BLOCK = 100
BAIT_TIMESTAMP = 1_767_225_700
MIRROR_USDC = 25_000_000
EXPECTED_OUT = 10 ** 13


class FakeBuilder:
    def __init__(self, state=INCLUDED):
        self.state = state
        self.bundles = []

    def send_bundle(self, raw_txs, target_block):
        self.bundles.append((raw_txs, target_block))
        return {"bundleHash": "0x01"}

    def wait_for_inclusion(self, rpc, capture_tx, target_block):
        return self.state


class FakePublisher:
    name = "TEST"

    def __init__(self):
        self.published = []

    def publish(self, record, meta):
        self.published.append((record["hash"], meta))
        return {"chain": self.name}


def make_record(store, audit_pass=True, **overrides):
    record = build_record("CLASSIC_ARBITRAGE", None, PHI, QUIET_TS,
                          {"audit_pass": audit_pass, "intent_class": "STANDARD"})
    record.update(overrides)
    store.put(record["hash"], record)
    return record


def signal_log(record):
    return {"topics": [abi.SIGNAL_REGISTERED_TOPIC, record["hash"]],
            "transactionHash": EMIT_TX, "blockNumber": BAIT_BLOCK - 1}


@pytest.fixture
def chain(rpc, wallet, mirror):
    rpc.head = BAIT_BLOCK
    rpc.add_block(BAIT_BLOCK, BAIT_TIMESTAMP)
    rpc.txs[EMIT_TX] = {"from": wallet.address, "to": DMAP, "input": b""}
    rpc.balances[wallet.address.lower()] = [10 ** 18, 10 ** 18 + 512_000_000_000]
    rpc.calls["balanceOf"] = lambda token, who: MIRROR_USDC if who == mirror.address else 0
    rpc.calls["getAmountsOut"] = lambda router, amount, path: [amount, EXPECTED_OUT]
    return rpc


@pytest.fixture
def builder():
    return FakeBuilder()


@pytest.fixture
def amplifier(chain, wallet, mirror, store, builder, clock):
    return Amplifier(chain, wallet, mirror, store, builder, DMAP, wallet.address,
                     amplify_delay=0, clock=clock, sleep=clock.sleep)


def bait_txs(wallet):
    return [tx for tx in wallet.built if tx["to"].lower() in ROUTER_WHITELIST]


class TestHappyPath:
    def test_capture_included(self, amplifier, store, builder, wallet, mirror):
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "captured"

        beacon = store.read_beacon()
        assert beacon["hash"] == record["hash"]
        assert beacon["confirmed_timestamp"] == BAIT_TIMESTAMP
        assert beacon["block_number"] == BAIT_BLOCK

        stored = store.get(record["hash"])
        assert stored["amplification_at"] == BAIT_TIMESTAMP
        assert stored["amplification"]["dex"] == "UNISWAP_V3"

        (entry,) = store.list_profits()
        assert entry["success"] is True
        assert entry["profit"] == 512_000_000_000
        assert entry["signal_hash"] == record["hash"]

        assert len(builder.bundles) == 1
        raw_txs, target = builder.bundles[0]
        assert target == BAIT_BLOCK + 1
        assert len(raw_txs) == 2

    def test_bait_goes_to_first_dex(self, amplifier, store, wallet):
        record = make_record(store)
        amplifier.amplify(record["hash"], signal_log(record))
        (bait,) = bait_txs(wallet)
        assert bait["to"] == DEXES["UNISWAP_V3"].router
        assert bait["value"] == 6_180_000_000_000
        assert bait["gas_price"] == 5_000_000
        assert bait["data"][:4] == abi.selector(abi.SIG_EXACT_INPUT_SINGLE)

    def test_capture_and_bribe(self, amplifier, store, wallet, mirror):
        record = make_record(store)
        amplifier.amplify(record["hash"], signal_log(record))
        (capture,) = mirror.built
        amount_in, _, path, _, _ = abi.decode_call(abi.SIG_SWAP_EXACT_TOKENS_FOR_ETH, capture["data"])
        assert amount_in == MIRROR_USDC
        assert capture["gas_price"] == 10_000_000
        bribe = wallet.built[-1]
        assert bribe["to"] == Web3.to_checksum_address(SEQUENCER)
        assert bribe["value"] == int(0.8 * (EXPECTED_OUT - 200_000 * 10_000_000))

    def test_not_included_is_final(self, amplifier, store, builder, wallet):
        builder.state = NOT_INCLUDED
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "capture_failed"
        (entry,) = store.list_profits()
        assert entry["success"] is False
        assert entry["reason"] == CAPTURE_FAILED
        assert [target for _, target in builder.bundles] == [BAIT_BLOCK + 1]
        assert len(bait_txs(wallet)) == 1

    def test_mirror_without_tokens_skips_capture(self, amplifier, chain, store, builder):
        chain.calls["balanceOf"] = lambda token, who: 0
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "mirror_empty"
        assert builder.bundles == []
        assert store.get(record["hash"])["amplification_at"] == BAIT_TIMESTAMP
        (entry,) = store.list_profits()
        assert entry["success"] is False
        assert entry["reason"] == MIRROR_EMPTY

    def test_rpc_outage_while_waiting_for_inclusion(self, amplifier, store, builder):
        def outage(rpc, capture_tx, target_block):
            raise AllEndpointsFailed(TimeoutError("read timed out"))

        builder.wait_for_inclusion = outage
        record = make_record(store)
        assert amplifier.handle_signal(record["hash"], signal_log(record)) == "capture_failed"
        (entry,) = store.list_profits()
        assert entry["success"] is False
        assert entry["reason"] == CAPTURE_FAILED
        assert "all RPC endpoints failed" in entry["detail"]
        assert [target for _, target in builder.bundles] == [BAIT_BLOCK + 1]

    def test_unreadable_mirror_balance_still_records_profit(self, amplifier, chain, store, builder):
        def indexing(token, who):
            if who == amplifier.mirror.address:
                raise ReceiptPending(ValueError("transaction indexing is in progress"))
            return 0

        chain.calls["balanceOf"] = indexing
        record = make_record(store)
        assert amplifier.handle_signal(record["hash"], signal_log(record)) == "capture_failed"
        assert builder.bundles == []
        (entry,) = store.list_profits()
        assert entry["success"] is False
        assert entry["profit"] == 512_000_000_000


class TestGates:
    def test_audit_fail_never_baits(self, amplifier, chain, store):
        record = make_record(store, audit_pass=False)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "audit_fail"
        assert chain.sent == []

    def test_foreign_emitter(self, amplifier, chain, store):
        chain.txs[EMIT_TX]["from"] = "0x9999999999999999999999999999999999999999"
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "foreign"
        assert chain.sent == []

    def test_missing_record(self, amplifier, chain, store):
        record = build_record("CLASSIC_ARBITRAGE", None, PHI, QUIET_TS, {"audit_pass": True})
        assert amplifier.amplify(record["hash"], signal_log(record)) == "missing"

    def test_already_amplified(self, amplifier, chain, store):
        record = make_record(store, amplification_at=123)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "already_amplified"
        assert chain.sent == []

    def test_not_a_reverse_pair(self, amplifier, chain, store):
        record = make_record(store)
        record["steps"][1]["to"] = "DAI"
        store.put(record["hash"], record)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "invalid_pattern"
        assert chain.sent == []

    def test_gas_ceiling(self, chain, wallet, mirror, store, builder, clock):
        amplifier = Amplifier(chain, wallet, mirror, store, builder, DMAP, wallet.address,
                              max_gas_gwei=0.001, amplify_delay=0, clock=clock, sleep=clock.sleep)
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "gas_ceiling"
        assert chain.sent == []

    def test_every_dex_failing_writes_one_failure(self, amplifier, chain, store, wallet):
        chain.send_errors = [ValueError("execution reverted")] * len(DEXES)
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "all_dexes_failed"
        assert len(bait_txs(wallet)) == len(DEXES)
        (entry,) = store.list_profits()
        assert entry["reason"] == "All DEXes failed"
        assert store.get(record["hash"])["amplification_at"] is None


class TestSideChannels:
    def test_echo_and_hint(self, chain, wallet, mirror, store, builder, clock):
        publisher = FakePublisher()
        amplifier = Amplifier(chain, wallet, mirror, store, builder, DMAP, wallet.address,
                              echo_chain=EchoChain([publisher], sleep=clock.sleep),
                              hint=HoneypotHint(wallet, HONEYPOT),
                              amplify_delay=0, clock=clock, sleep=clock.sleep)
        record = make_record(store)
        amplifier.amplify(record["hash"], signal_log(record))

        assert publisher.published[0][1]["confirmed_timestamp"] == BAIT_TIMESTAMP
        assert store.get(record["hash"])["recursive_topology"] == {"primary": 1, "alt": 1, "failed": 0}
        hint = [tx for tx in wallet.built if tx["to"] == HONEYPOT]
        assert len(hint) == 1
        body = json.loads(hint[0]["data"])
        assert body["signal"] == record["hash"]
        assert body["expected_yield"] == 1618

    def test_echo_exhaustion_counts_failure(self, chain, wallet, mirror, store, builder, clock):
        class Broken(FakePublisher):
            def publish(self, record, meta):
                raise OSError("down")

        amplifier = Amplifier(chain, wallet, mirror, store, builder, DMAP, wallet.address,
                              echo_chain=EchoChain([Broken()], sleep=clock.sleep),
                              amplify_delay=0, clock=clock, sleep=clock.sleep)
        record = make_record(store)
        assert amplifier.amplify(record["hash"], signal_log(record)) == "captured"
        assert store.get(record["hash"])["recursive_topology"]["failed"] == 1


class TestPolling:
    def test_poll_handles_new_events_once(self, amplifier, chain, store):
        record = make_record(store)
        chain.logs = [signal_log(record)]
        assert amplifier.poll_once() == 1
        assert amplifier.last_processed == BAIT_BLOCK
        assert amplifier.poll_once() == 0
        assert len(list(store.list_profits())) == 1

    def test_errors_are_retried_then_given_up(self, amplifier, store, clock):
        record = make_record(store)
        log = dict(signal_log(record), transactionHash="0xunknown")
        assert amplifier.handle_signal(record["hash"], log) == "error"
        assert [s for s in clock.sleeps if s] == [1, 5, 30]
        assert amplifier.is_amplifying is False
