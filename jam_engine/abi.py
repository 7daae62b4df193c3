"""Minimal contract ABIs, event topics and calldata helpers."""

from eth_abi import decode, encode
from web3 import Web3

SIGNAL_REGISTERED_TOPIC = Web3.to_hex(Web3.keccak(text="SignalRegistered(bytes32)"))

DMAP_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "description", "type": "string"},
            {"name": "categoryId", "type": "uint256"},
        ],
        "name": "registerSignal",
        "outputs": [{"name": "", "type": "bytes32"}],
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "name": "hash", "type": "bytes32"}],
        "name": "SignalRegistered",
        "type": "event",
    },
]

VAULT_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "signalHash", "type": "bytes32"},
            {"name": "frontrunner", "type": "address"},
            {"name": "yieldAmount", "type": "uint256"},
            {"name": "signature", "type": "bytes"},
        ],
        "name": "attestYield",
        "outputs": [],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "", "type": "address"}],
        "name": "authorizedTrappers",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "trapper", "type": "address"}],
        "name": "authorizeTrapper",
        "outputs": [],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [{"name": "signalHash", "type": "bytes32"}],
        "name": "emitSignal",
        "outputs": [],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "signalHash", "type": "bytes32"},
            {"name": "parentHash", "type": "bytes32"},
        ],
        "name": "emitRecursiveSignal",
        "outputs": [],
        "type": "function",
    },
]

ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

UNISWAP_V2_ROUTER_ABI = [
    {
        "constant": True,
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactETHForTokens",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "payable": True,
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactTokensForETH",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "type": "function",
    },
]

UNISWAP_V2_FACTORY_ABI = [
    {
        "constant": True,
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
        ],
        "name": "getPair",
        "outputs": [{"name": "pair", "type": "address"}],
        "type": "function",
    },
]

UNISWAP_V2_PAIR_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
]

# Calldata signatures. Tuple types use eth_abi's parenthesised form.
SIG_REGISTER_SIGNAL = ("registerSignal", ["string", "uint256"])
SIG_ATTEST_YIELD = ("attestYield", ["bytes32", "address", "uint256", "bytes"])
SIG_AUTHORIZE_TRAPPER = ("authorizeTrapper", ["address"])
SIG_EMIT_SIGNAL = ("emitSignal", ["bytes32"])
SIG_EMIT_RECURSIVE_SIGNAL = ("emitRecursiveSignal", ["bytes32", "bytes32"])
SIG_ERC20_TRANSFER = ("transfer", ["address", "uint256"])
SIG_SWAP_EXACT_ETH_FOR_TOKENS = (
    "swapExactETHForTokens", ["uint256", "address[]", "address", "uint256"])
SIG_SWAP_EXACT_TOKENS_FOR_ETH = (
    "swapExactTokensForETH", ["uint256", "uint256", "address[]", "address", "uint256"])
SIG_SOLIDLY_SWAP_EXACT_ETH_FOR_TOKENS = (
    "swapExactETHForTokens", ["uint256", "(address,address,bool)[]", "address", "uint256"])
SIG_SOLIDLY_SWAP_EXACT_TOKENS_FOR_ETH = (
    "swapExactTokensForETH", ["uint256", "uint256", "(address,address,bool)[]", "address", "uint256"])
SIG_EXACT_INPUT_SINGLE = (
    "exactInputSingle", ["(address,address,uint24,address,uint256,uint256,uint160)"])


def hex_str(value) -> str:
    """0x-prefixed hex for HexBytes/bytes values; strings pass through lowercased."""
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value)


def selector(sig: tuple[str, list[str]]) -> bytes:
    name, types = sig
    return Web3.keccak(text=f"{name}({','.join(types)})")[:4]


def encode_call(sig: tuple[str, list[str]], args: list) -> bytes:
    """ABI-encode a function call: 4-byte selector followed by the arguments."""
    return selector(sig) + encode(sig[1], args)


def decode_call(sig: tuple[str, list[str]], data: bytes) -> tuple | None:
    """Decode calldata for sig. Returns None if the selector does not match."""
    if len(data) < 4 or data[:4] != selector(sig):
        return None
    return decode(sig[1], data[4:])


def encode_attestation(signal_hash: bytes, frontrunner: str, amount: int) -> bytes:
    """abi.encode(bytes32, address, uint256) as signed by the vault owner."""
    return encode(
        ["bytes32", "address", "uint256"],
        [signal_hash, Web3.to_checksum_address(frontrunner), amount],
    )
