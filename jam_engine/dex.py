"""DEX table, cascade ordering, swap calldata and trade sizing."""

from decimal import Decimal
from enum import Enum

from eth_abi.exceptions import DecodingError
from web3 import Web3

from . import abi
from .constants import (
    DUST_THRESHOLD_ETH, FIB_BOOST, MIN_TRADE_ETH, PAIR_MULTIPLIERS, PHI, PHI_BASE_ETH,
    PHI_CUBED, PHI_INVERSE, PHI_SQUARED, TOKENS, token_symbol,
)


class DexKind(Enum):
    CONCENTRATED_LIQUIDITY = "concentrated-liquidity"
    UNI_V2 = "uniswap-v2"
    UNI_V2_FORK = "uniswap-v2-fork"
    SOLIDLY = "solidly-fork"


class Dex:
    def __init__(self, dex_id: str, name: str, router: str, kind: DexKind, priority: float,
                 fee_tiers: dict | None = None):
        self.id = dex_id
        self.name = name
        self.router = Web3.to_checksum_address(router)
        self.kind = kind
        self.priority = priority
        self.fee_tiers = fee_tiers or {}

    def fee_for(self, from_symbol: str, to_symbol: str) -> int:
        for key in (f"{from_symbol}-{to_symbol}", f"{to_symbol}-{from_symbol}"):
            if key in self.fee_tiers:
                return self.fee_tiers[key]
        return self.fee_tiers.get("default", 3000)

    def __repr__(self):
        return f"Dex({self.id})"


DEXES = {
    "UNISWAP_V3": Dex(
        "UNISWAP_V3", "Uniswap V3", "0x2626664c2603336e57b271c5c0b26f421741e481",
        DexKind.CONCENTRATED_LIQUIDITY, PHI_SQUARED,
        fee_tiers={"WETH-USDC": 500, "WETH-DAI": 500, "default": 3000},
    ),
    "ROCKETSWAP": Dex(
        "ROCKETSWAP", "RocketSwap", "0x4CF22670302b0b678B65403D8408436aBDe59aBB",
        DexKind.UNI_V2_FORK, PHI,
    ),
    "SUSHISWAP_V3": Dex(
        "SUSHISWAP_V3", "SushiSwap V3", "0xfb7ef66a7e61224dd6fcd0d7d9c3be5c8b049b9f",
        DexKind.UNI_V2_FORK, PHI,
    ),
    "AERODROME": Dex(
        "AERODROME", "Aerodrome", "0xcf77a3ba9a5ca399b7c97c74d54e5b1beb874e43",
        DexKind.SOLIDLY, 1.0,
    ),
    "ALIEN_BASE": Dex(
        "ALIEN_BASE", "Alien Base", "0x8C1E4a23be7030E29e064b031b5056f3Fd76389d",
        DexKind.UNI_V2_FORK, PHI_INVERSE,
    ),
}

CASCADE_ORDER = ["UNISWAP_V3", "ROCKETSWAP", "SUSHISWAP_V3", "AERODROME", "ALIEN_BASE"]
DEFAULT_PHI_RELATIONS = [1.618, 0.618, 1.0]

# V2-style factories consulted for market snapshots.
V2_FACTORIES = {
    "UNISWAP_V2": "0x8909Dc15e40173Ff4699343b6eB8132c65e18eC6",
    "BASESWAP": "0xFDa619b6d20975be80A10332cD39b9a4b0FAa8BB",
}

ROUTER_WHITELIST = {d.router.lower() for d in DEXES.values()}


def topology_confidence(topology: dict | None) -> float:
    topology = topology or {}
    alt = topology.get("alt", 0) or 0
    primary = topology.get("primary", 1) or 1
    return 1 + (alt / primary) * PHI if alt > 0 else 1.0


def cascade(resonance: float, depth: int, topology: dict | None = None,
            phi_relations: list[float] | None = None) -> list[str]:
    """DEX ids ordered by base·resonance·confidence·relation[i%3]/depth, highest first.

    Ties keep the fixed CASCADE_ORDER.
    """
    relations = phi_relations or DEFAULT_PHI_RELATIONS
    confidence = topology_confidence(topology)
    depth = max(depth or 1, 1)
    weighted = []
    for i, dex_id in enumerate(CASCADE_ORDER):
        relation = relations[i % len(relations)]
        priority = DEXES[dex_id].priority * (resonance or 1.0) * confidence * relation / depth
        weighted.append((priority, dex_id))
    weighted.sort(key=lambda item: item[0], reverse=True)
    return [dex_id for _, dex_id in weighted]


def token_address(symbol: str) -> str:
    return Web3.to_checksum_address(TOKENS[symbol])


def encode_swap(kind: DexKind, dex: Dex, from_symbol: str, to_symbol: str, amount_in: int,
                amount_out_min: int, recipient: str, deadline: int) -> bytes:
    """Calldata for an exact-ETH-in swap along [from, to] on a router of the given kind."""
    token_in = token_address(from_symbol)
    token_out = token_address(to_symbol)
    recipient = Web3.to_checksum_address(recipient)
    if kind is DexKind.CONCENTRATED_LIQUIDITY:
        params = (token_in, token_out, dex.fee_for(from_symbol, to_symbol), recipient,
                  amount_in, amount_out_min, 0)
        return abi.encode_call(abi.SIG_EXACT_INPUT_SINGLE, [params])
    if kind is DexKind.SOLIDLY:
        routes = [(token_in, token_out, False)]
        return abi.encode_call(abi.SIG_SOLIDLY_SWAP_EXACT_ETH_FOR_TOKENS,
                               [amount_out_min, routes, recipient, deadline])
    if kind in (DexKind.UNI_V2, DexKind.UNI_V2_FORK):
        return abi.encode_call(abi.SIG_SWAP_EXACT_ETH_FOR_TOKENS,
                               [amount_out_min, [token_in, token_out], recipient, deadline])
    raise ValueError(f"unsupported DEX kind: {kind}")


def encode_reverse_swap(kind: DexKind, from_symbol: str, to_symbol: str, amount_in: int,
                        amount_out_min: int, recipient: str, deadline: int) -> bytes:
    """Calldata for the token -> ETH capture leg."""
    path = [token_address(from_symbol), token_address(to_symbol)]
    recipient = Web3.to_checksum_address(recipient)
    if kind is DexKind.SOLIDLY:
        return abi.encode_call(abi.SIG_SOLIDLY_SWAP_EXACT_TOKENS_FOR_ETH,
                               [amount_in, amount_out_min, [(path[0], path[1], False)],
                                recipient, deadline])
    return abi.encode_call(abi.SIG_SWAP_EXACT_TOKENS_FOR_ETH,
                           [amount_in, amount_out_min, path, recipient, deadline])


def decode_swap_path(data: bytes) -> list[str] | None:
    """Token symbols along a V2 swap path, or None if the calldata is not a known swap."""
    for sig, path_index in ((abi.SIG_SWAP_EXACT_ETH_FOR_TOKENS, 1),
                            (abi.SIG_SWAP_EXACT_TOKENS_FOR_ETH, 2)):
        try:
            decoded = abi.decode_call(sig, data)
        except DecodingError:
            continue
        if decoded is None:
            continue
        symbols = [token_symbol(addr) for addr in decoded[path_index]]
        if None in symbols:
            return None
        return symbols
    return None


def eth_to_wei(amount_eth: float) -> int:
    return int(Decimal(f"{amount_eth:.9f}") * 10 ** 18)


def gas_divisor(gas_price_wei: int) -> float:
    gwei = gas_price_wei / 1e9
    if gwei > 1.0:
        return PHI_CUBED
    if gwei > 0.1:
        return PHI_SQUARED
    if gwei > 0.01:
        return PHI
    return 1.0


def calculate_trade_amount(confidence: float, gas_price_wei: int, pair: str | None = None,
                           consensus_multiplier: float = 1.0) -> int:
    """Bait size in wei. Zero when the gas price is unusable."""
    if not gas_price_wei or gas_price_wei <= 0:
        return 0
    amount = PHI_BASE_ETH
    if pair:
        a, _, b = pair.partition("-")
        amount *= PAIR_MULTIPLIERS.get(pair, PAIR_MULTIPLIERS.get(f"{b}-{a}", 1.0))
    amount /= gas_divisor(gas_price_wei)
    if consensus_multiplier > 1:
        amount *= consensus_multiplier
    if confidence > 0.95:
        amount *= FIB_BOOST
    return max(eth_to_wei(amount), eth_to_wei(MIN_TRADE_ETH))


def is_legible(step: dict | None, trade_amount_wei: int, path: list[str]) -> tuple[bool, str]:
    """Check a bait step is readable by other bots. Returns (ok, reason)."""
    if not isinstance(step, dict) or not all(step.get(k) for k in ("from", "to", "action")):
        return False, "malformed_step"
    if trade_amount_wei < eth_to_wei(DUST_THRESHOLD_ETH):
        return False, "dust_amount"
    if len(path) != 2:
        return False, "path_length"
    if any(symbol not in TOKENS for symbol in path):
        return False, "token_not_whitelisted"
    return True, "ok"
