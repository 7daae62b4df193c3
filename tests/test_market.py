from jam_engine.constants import ZERO_ADDRESS
from jam_engine.dex import token_address
from jam_engine.market import MarketOracle

from conftest import FakeClock, FakeRPC

PAIR = "0x7777777777777777777777777777777777777777"
FACTORY = {"UNISWAP_V2": "0x8888888888888888888888888888888888888888"}


def chain_with_pool(token0="USDC"):
    rpc = FakeRPC()
    rpc.calls["getPair"] = lambda factory, a, b: PAIR
    rpc.calls["token0"] = lambda pair: token_address(token0)
    # token0 reserve first, as the pair contract reports it
    rpc.calls["getReserves"] = lambda pair: (
        (5_000 * 10 ** 6, 2 * 10 ** 18, 0) if token0 == "USDC" else (2 * 10 ** 18, 5_000 * 10 ** 6, 0))
    return rpc


def test_reserves_follow_requested_direction():
    for token0 in ("USDC", "WETH"):
        oracle = MarketOracle(chain_with_pool(token0), factories=FACTORY, clock=FakeClock())
        assert oracle.pair_reserves("WETH", "USDC", FACTORY["UNISWAP_V2"]) == (2 * 10 ** 18, 5_000 * 10 ** 6)


def test_missing_pool_has_no_liquidity():
    rpc = FakeRPC()
    rpc.calls["getPair"] = lambda factory, a, b: ZERO_ADDRESS
    snapshot = MarketOracle(rpc, factories=FACTORY, clock=FakeClock()).snapshot()
    assert snapshot["degraded"] is False
    assert snapshot["liquidity"]["WETH/USDC"] == 0.0


def test_snapshot_weakest_side_and_cache():
    rpc = chain_with_pool()
    clock = FakeClock()
    oracle = MarketOracle(rpc, factories=FACTORY, clock=clock)
    snapshot = oracle.snapshot()
    assert snapshot["liquidity"]["WETH/USDC"] == 2.0
    assert snapshot["gas_price_gwei"] == 0.005

    rpc.calls.clear()
    assert oracle.snapshot() is snapshot
    clock.now += 31
    fresh = oracle.snapshot()
    assert fresh["liquidity"]["WETH/USDC"] == 0.0


def test_unreadable_chain_is_degraded():
    rpc = FakeRPC()

    def broken():
        raise OSError("down")

    rpc.gas_price = broken
    snapshot = MarketOracle(rpc, factories=FACTORY, clock=FakeClock()).snapshot()
    assert snapshot["degraded"] is True
    assert snapshot["liquidity"] == {}
