"""Market snapshot from V2 pair reserves, cached for 30 seconds."""

import time

from web3 import Web3

from . import abi
from .constants import PATTERNS, TOKEN_DECIMALS, ZERO_ADDRESS
from .dex import V2_FACTORIES, token_address
from .log import echo, warn

CACHE_TTL = 30


def default_snapshot(gas_price_gwei: float = 0.0) -> dict:
    return {"volatility": {}, "liquidity": {}, "gas_price_gwei": gas_price_gwei, "degraded": True}


class MarketOracle:
    def __init__(self, rpc, factories: dict | None = None, clock=time.time):
        self.rpc = rpc
        self.factories = factories if factories is not None else V2_FACTORIES
        self.clock = clock
        self._cache: dict[str, tuple[float, object]] = {}

    def _cached(self, key: str):
        entry = self._cache.get(key)
        if entry and self.clock() - entry[0] < CACHE_TTL:
            return entry[1]
        return None

    def pair_reserves(self, from_symbol: str, to_symbol: str, factory: str) -> tuple[int, int] | None:
        """(reserve_from, reserve_to) for the pair, or None if there is no pool."""
        key = f"reserves:{factory}:{from_symbol}:{to_symbol}"
        cached = self._cached(key)
        if cached is not None:
            return cached
        from_addr = token_address(from_symbol)
        pair = self.rpc.contract_call(factory, abi.UNISWAP_V2_FACTORY_ABI, "getPair",
                                      from_addr, token_address(to_symbol))
        if not pair or pair == ZERO_ADDRESS:
            return None
        reserve0, reserve1, _ = self.rpc.contract_call(pair, abi.UNISWAP_V2_PAIR_ABI, "getReserves")
        token0 = self.rpc.contract_call(pair, abi.UNISWAP_V2_PAIR_ABI, "token0")
        if Web3.to_checksum_address(token0) == from_addr:
            result = (reserve0, reserve1)
        else:
            result = (reserve1, reserve0)
        self._cache[key] = (self.clock(), result)
        return result

    def snapshot(self) -> dict:
        """Weakest liquidity and highest reserve-ratio drift per pattern pair.

        Falls back to an empty, degraded snapshot when the chain cannot be read.
        """
        cached = self._cached("snapshot")
        if cached is not None:
            return cached
        try:
            gas_gwei = self.rpc.gas_price() / 1e9
        except Exception as e:
            warn(oracle_fetch="error", msg=str(e)[:160])
            return default_snapshot()

        data = {"volatility": {}, "liquidity": {}, "gas_price_gwei": gas_gwei, "degraded": False}
        for cfg in PATTERNS.values():
            first = cfg["steps"][0]
            src, dst = first["from"], first["to"]
            pair = f"{src}/{dst}"
            weakest = None
            drift = 0.0
            for factory in self.factories.values():
                try:
                    reserves = self.pair_reserves(src, dst, factory)
                except Exception as e:
                    warn(oracle_pair="error", pair=pair, factory=factory, msg=str(e)[:120])
                    continue
                if not reserves:
                    continue
                reserve_a = reserves[0] / 10 ** TOKEN_DECIMALS[src]
                reserve_b = reserves[1] / 10 ** TOKEN_DECIMALS[dst]
                liquidity = min(reserve_a, reserve_b)
                weakest = liquidity if weakest is None else min(weakest, liquidity)
                ratio = reserves[1] / reserves[0] if reserves[0] else 0.0
                drift = max(drift, abs(1 - ratio / (cfg["base_resonance"] or 1)))
            data["liquidity"][pair] = weakest or 0.0
            data["volatility"][pair] = drift
        echo(oracle_fetch="success", pairs=len(data["liquidity"]), gas_gwei=round(gas_gwei, 6))
        self._cache["snapshot"] = (self.clock(), data)
        return data
