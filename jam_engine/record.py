"""Signal record construction, canonical serialization and content hashing."""

import copy
import json

from web3 import Web3

from .constants import AMPLIFIER, MIRROR, PATTERNS

# Fields written after creation. They are outside the hash domain so later
# updates never change a record's identity.
MUTABLE_FIELDS = (
    "hash",
    "onchain_tx",
    "onchain_hash",
    "amplification_at",
    "amplification",
    "attested_at",
    "recursive_topology",
)


def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hashable_view(record: dict) -> dict:
    return {k: v for k, v in record.items() if k not in MUTABLE_FIELDS}


def content_hash(record: dict) -> str:
    return Web3.to_hex(Web3.keccak(text=canonical_json(hashable_view(record))))


def verify(record: dict) -> bool:
    return record.get("hash") == content_hash(record)


def build_record(pattern: str, parent: dict | None, resonance: float,
                 created_at: int, meta: dict) -> dict:
    """Assemble and hash a new record. parent is the stored predecessor or None."""
    steps = copy.deepcopy(PATTERNS[pattern]["steps"])
    for step in steps:
        step["hook"] = f"{step['from']}_{step['to']}_{step['action']}".lower()
    record = {
        "pattern": pattern,
        "steps": steps,
        "parent_hash": parent["hash"] if parent else None,
        "cascade_depth": parent["cascade_depth"] + 1 if parent else 1,
        "resonance": round(resonance, 3),
        "created_at": created_at,
        "meta": meta,
        "amplification_at": None,
        "attested_at": None,
        "onchain_tx": None,
        "recursive_topology": {"primary": 1, "alt": 0, "failed": 0},
    }
    record["hash"] = content_hash(record)
    return record


def compress(record: dict, timestamp: str) -> dict:
    """One line of the successful log."""
    meta = record.get("meta") or {}
    return {
        "timestamp": timestamp,
        "resonance": record.get("resonance"),
        "intent_class": meta.get("intent_class") or "STANDARD",
        "mev_tags": meta.get("tags") or [],
        "signal_hash": record.get("hash"),
    }


def split_steps(record: dict) -> tuple[dict | None, dict | None]:
    """Return the (amplifier, mirror) steps of a record."""
    amplifier = mirror = None
    for step in record.get("steps") or []:
        if step.get("actor") == AMPLIFIER and amplifier is None:
            amplifier = step
        elif step.get("actor") == MIRROR and mirror is None:
            mirror = step
    return amplifier, mirror


def is_reverse_pair(amplifier: dict | None, mirror: dict | None) -> bool:
    if not amplifier or not mirror:
        return False
    return amplifier.get("to") == mirror.get("from") and mirror.get("to") == amplifier.get("from")
