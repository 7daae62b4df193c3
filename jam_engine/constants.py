"""Weighting constants, the closed pattern set and Base token list."""

PHI = 1.618033988749895
PHI_INVERSE = 1 / PHI
PHI_SQUARED = PHI * PHI
PHI_CUBED = PHI * PHI * PHI
SQRT_PHI = PHI ** 0.5

EXPLORATION_BONUS = PHI_INVERSE
COOLDOWN_PENALTY = 1 - PHI_INVERSE

# Emission anchors (hour, minute) in UTC and minute offsets subdividing them.
CONSENSUS_TIMES = [(13, 21), (21, 1), (3, 33), (8, 1), (20, 8)]
SUBINTERVALS = [3, 5, 8, 13]

BASE_EMISSION_INTERVAL_MS = 540_000
CATEGORY_JAM = 1

AMPLIFIER = "AMPLIFIER"
MIRROR = "MIRROR"

PATTERNS = {
    "CLASSIC_ARBITRAGE": {
        "steps": [
            {"from": "WETH", "to": "USDC", "action": "SWAP", "actor": AMPLIFIER},
            {"from": "USDC", "to": "WETH", "action": "SWAP", "actor": MIRROR},
        ],
        "base_resonance": PHI,
        "clarity": 0.9,
        "incentive": 0.618,
    },
    "STABLE_ROTATION": {
        "steps": [
            {"from": "USDC", "to": "DAI", "action": "SWAP", "actor": AMPLIFIER},
            {"from": "DAI", "to": "USDC", "action": "SWAP", "actor": MIRROR},
        ],
        "base_resonance": PHI_INVERSE,
        "clarity": 0.7,
        "incentive": 0.382,
    },
    "ETH_DAI_FLOW": {
        "steps": [
            {"from": "WETH", "to": "DAI", "action": "SWAP", "actor": AMPLIFIER},
            {"from": "DAI", "to": "WETH", "action": "SWAP", "actor": MIRROR},
        ],
        "base_resonance": PHI_SQUARED,
        "clarity": 0.8,
        "incentive": 0.786,
    },
    "DEFI_GOVERNANCE": {
        "steps": [
            {"from": "USDC", "to": "COMP", "action": "SWAP", "actor": AMPLIFIER},
            {"from": "COMP", "to": "USDC", "action": "SWAP", "actor": MIRROR},
        ],
        "base_resonance": PHI_CUBED,
        "clarity": 0.5,
        "incentive": 1.0,
    },
}

# Base mainnet
CHAIN_ID = 8453
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

TOKENS = {
    "WETH": "0x4200000000000000000000000000000000000006",
    "USDC": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
    "DAI": "0x50c5725949a6f0c72e6c4a641f24049a917db0cb",
    "COMP": "0x9e1028f5f1d5ede59748ffcee5532509976840e0",
}
TOKEN_DECIMALS = {"WETH": 18, "USDC": 6, "DAI": 18, "COMP": 18}

# Trade sizing (ETH)
PHI_BASE_ETH = 0.00000618
MIN_TRADE_ETH = PHI_BASE_ETH / 1000
DUST_THRESHOLD_ETH = 0.0000001
FIB_BOOST = 1.44

PAIR_MULTIPLIERS = {
    "WETH-USDC": 1.0,
    "USDC-DAI": PHI_INVERSE,
    "WETH-DAI": PHI,
    "USDC-COMP": PHI_SQUARED,
    "WETH-COMP": PHI_CUBED,
}

# Attribution
ATTRIBUTION_WINDOW_BLOCKS = 50
MIN_SIMILARITY = 0.8
PHI_WINDOW_MIN = 1.618
PHI_WINDOW_MAX = 4.236
REINFORCE_SIMILARITY = 0.9
REINFORCE_MIN_YIELD_WEI = 1_618_033_988_749  # Φ / 10**6 ETH
PHI_RATIOS = [PHI, PHI_INVERSE, PHI_SQUARED, SQRT_PHI]
PHI_TOLERANCE = 0.001


def token_symbol(address: str) -> str | None:
    address = address.lower()
    for symbol, token in TOKENS.items():
        if token == address:
            return symbol
    return None
