"""Heuristic bytecode audit of the signal's target contract."""

import math
import time

from web3 import Web3

from .constants import PHI, PHI_INVERSE, TOKENS
from .log import echo

CACHE_TTL = math.floor(3600 * PHI)
MIN_BYTECODE_SIZE = 100
PROXY_SIZE = 200
MAX_RISK = 2.0

OP_CREATE2 = 0xF5
OP_DELEGATECALL = 0xF4
OP_SELFDESTRUCT = 0xFF
OP_PUSH1 = 0x60
OP_PUSH32 = 0x7F

DEFAULT_HOOKS = ["swap", "swapExactETHForTokens", "swapExactTokensForTokens"]
KNOWN_SAFE = set(TOKENS.values())


def scan_opcodes(code: bytes) -> set[int]:
    """Opcodes present in code, skipping PUSH immediates."""
    seen = set()
    i = 0
    while i < len(code):
        op = code[i]
        seen.add(op)
        if OP_PUSH1 <= op <= OP_PUSH32:
            i += op - OP_PUSH1 + 1
        i += 1
    return seen


def assess(code: bytes) -> dict:
    size = len(code)
    ops = scan_opcodes(code)
    risk = {
        "has_create2": PHI_INVERSE * 1.5 if OP_CREATE2 in ops else 0.0,
        "has_delegatecall": PHI_INVERSE * 2 if OP_DELEGATECALL in ops else 0.0,
        "has_selfdestruct": 3.0 if OP_SELFDESTRUCT in ops else 0.0,
        "is_proxy_contract": 1.0 if size < PROXY_SIZE else 0.0,
    }
    total = sum(risk.values())
    if risk["has_selfdestruct"]:
        passed, reason = False, "Contract contains SELFDESTRUCT"
    elif size < MIN_BYTECODE_SIZE:
        passed, reason = False, f"Bytecode too small ({size} bytes)"
    elif total >= MAX_RISK:
        passed, reason = False, f"Risk score {total:.2f} exceeds threshold"
    else:
        passed, reason = True, "Validation passed"
    return {
        "audit_pass": passed,
        "reason": reason,
        "risk": risk,
        "risk_score": round(total, 3),
        "bytecode_size": size,
        "bait_hooks": DEFAULT_HOOKS if passed else [],
    }


class ContractAuditor:
    def __init__(self, rpc, clock=time.time):
        self.rpc = rpc
        self.clock = clock
        self._cache: dict[str, tuple[float, dict]] = {}

    def audit(self, address: str) -> dict:
        address = address.lower()
        cached = self._cache.get(address)
        if cached and self.clock() - cached[0] < CACHE_TTL:
            return cached[1]

        code = self.rpc.get_code(address)
        if not code:
            result = {"audit_pass": False, "reason": "No bytecode", "bait_hooks": [],
                      "bytecode_proof": None}
        else:
            proof = Web3.to_hex(Web3.keccak(code))
            if address in KNOWN_SAFE:
                result = {"audit_pass": True, "reason": "Known safe contract",
                          "bait_hooks": DEFAULT_HOOKS, "bytecode_size": len(code)}
            else:
                result = assess(code)
            result["bytecode_proof"] = proof
        echo(sub_audit="pass" if result["audit_pass"] else "fail", addr=address,
             reason=result["reason"])
        self._cache[address] = (self.clock(), result)
        return result
