"""Emitter: periodic, single-writer signal emission on the registry contract."""

import json
import os
import random
import time

from web3 import Web3

from .abi import SIG_REGISTER_SIGNAL, SIGNAL_REGISTERED_TOPIC, encode_call, hex_str
from .constants import CATEGORY_JAM, PHI, PHI_INVERSE, PHI_SQUARED
from .errors import (
    AllEndpointsFailed, NonceUnavailable, ReceiptPending, ReceiptTimeout,
    classify_tx_error, metric_key,
)
from .log import echo, error, iso_now, warn
from .record import build_record, compress

BASE_GAS_LIMIT = 300_000
MAX_GAS_LIMIT = 1_000_000
MAX_SUBMIT_ATTEMPTS = 5
PRIORITY_CLAMP = Web3.to_wei(2, "gwei")
PRIORITY_CAP = Web3.to_wei(3, "gwei")
MAX_FEE_CAP = Web3.to_wei(70, "gwei")
CONFIRM_TIMEOUT = PHI * 30
INSUFFICIENT_FUNDS_PAUSE = 30
DEFAULT_INTENT = "STANDARD"

# Outcomes after which the reserved nonce has been used on chain.
NONCE_CONSUMED = ("success", "reverted_onchain")


def registered_hash(receipt, registry: str) -> str | None:
    """Signal hash from the SignalRegistered log in a registerSignal receipt."""
    for log in receipt.get("logs") or []:
        topics = log.get("topics") or []
        if (len(topics) >= 2
                and log["address"].lower() == registry.lower()
                and hex_str(topics[0]) == SIGNAL_REGISTERED_TOPIC):
            return hex_str(topics[1])
    return None


def gas_limit_for(depth: int, resonance: float) -> int:
    depth_multiplier = 1 + 0.1 * min(max(depth - 1, 0), 5)
    resonance_multiplier = min(max(resonance / PHI, 1.0), PHI)
    return min(int(BASE_GAS_LIMIT * depth_multiplier * resonance_multiplier), MAX_GAS_LIMIT)


class Emitter:
    def __init__(self, rpc, wallet, store, state, selector, dmap_address: str,
                 oracle=None, auditor=None, target_contract: str | None = None,
                 priority_baseline_gwei: float = 0.001,
                 clock=time.time, sleep=time.sleep, rand=random.random):
        self.rpc = rpc
        self.wallet = wallet
        self.nonces = wallet.nonces
        self.store = store
        self.state = state
        self.selector = selector
        self.dmap_address = Web3.to_checksum_address(dmap_address)
        self.oracle = oracle
        self.auditor = auditor
        self.target_contract = target_contract
        self.priority_baseline = Web3.to_wei(priority_baseline_gwei, "gwei")
        self.clock = clock
        self.sleep = sleep
        self.rand = rand
        self._market = None

    def tick(self) -> str:
        """One emission attempt. Returns the outcome name."""
        if not self.state.acquire_lock():
            echo(emit_status="skipped", reason="lock_held")
            return "locked"
        try:
            return self._reserve_and_emit()
        finally:
            self.state.release_lock()

    def _reserve_and_emit(self) -> str:
        try:
            nonce = self.nonces.get()
        except NonceUnavailable as e:
            warn(emit_status="skipped", reason="nonce_unavailable", msg=str(e))
            return "nonce_unavailable"
        self.nonces.increment()
        outcome = "error"
        try:
            outcome = self._emit(nonce)
            return outcome
        finally:
            if outcome not in NONCE_CONSUMED:
                self.nonces.rollback()

    def _audit(self) -> dict | None:
        """Audit metadata for the record, or None when a configured target fails."""
        if not self.target_contract or self.auditor is None:
            return {"audit_pass": False, "reason": "No target contract", "bait_hooks": [],
                    "target_contract": None, "bytecode_proof": None}
        try:
            result = self.auditor.audit(self.target_contract)
        except Exception as e:
            result = {"audit_pass": False, "reason": f"audit_error: {e}", "bait_hooks": []}
        self.state.record_analysis(result["audit_pass"], result["reason"])
        if not result["audit_pass"]:
            warn(emit_status="skipped", reason="audit_fail", detail=result["reason"])
            return None
        return {**result, "target_contract": self.target_contract}

    def _description(self, record: dict, attempt: int) -> str:
        uuid = f"{int(self.clock() * 1000)}_{int(self.rand() * 1_000_000)}_{os.getpid()}_{attempt}"
        return json.dumps({
            "type": "JAM",
            "pattern": record["pattern"],
            "cosmic": record["meta"]["intent_class"],
            "resonance": record["resonance"],
            "hash": record["hash"][:10],
            "uuid": uuid,
        }, separators=(",", ":"))

    def _emit(self, nonce: int) -> str:
        now = self.clock()
        state = self.state.read()
        selection = self.selector.select(state["metrics"]["pattern_stats"], now, self._market)
        if selection.veto:
            echo(emit_status="veto", reason=selection.reason, best=round(selection.score, 3))
            return "veto"
        pattern = selection.pattern

        if self.oracle is not None:
            self._market = self.oracle.snapshot()

        audit = self._audit()
        if audit is None:
            return "audit_fail"

        parent = None
        if state["last_hash"]:
            parent = self.store.get(state["last_hash"])
            if parent is None:
                warn(emit_parent="missing", last_hash=state["last_hash"])

        resonance = PHI * selection.multiplier
        depth = parent["cascade_depth"] + 1 if parent else 1
        meta = {
            "audit_pass": audit["audit_pass"],
            "audit_reason": audit["reason"],
            "bait_hooks": audit.get("bait_hooks") or [],
            "target_contract": audit.get("target_contract"),
            "bytecode_proof": audit.get("bytecode_proof"),
            "intent_class": DEFAULT_INTENT,
            "nonce": nonce,
            "selection_score": round(selection.score, 6),
            "timing_quality": selection.multiplier,
            "phi_alignment": selection.multiplier > 1,
            "tags": [
                f"VOICE:{pattern}",
                f"DEPTH:{depth}",
                f"STRENGTH:{selection.score:.3f}",
                f"VECTOR:{nonce}-{int(selection.multiplier * 1000)}",
            ],
            "market": self._market,
        }
        record = build_record(pattern, parent, resonance, int(now), meta)
        if not self.store.put(record["hash"], record):
            return "store_failed"
        self.state.record_attempt(pattern)
        echo(emit_status="record", hash=record["hash"], pattern=pattern,
             depth=record["cascade_depth"], resonance=record["resonance"],
             audit_pass=meta["audit_pass"])

        gas_limit = gas_limit_for(record["cascade_depth"], record["resonance"])
        base_fee = self.rpc.base_fee()
        priority = min(int(self.priority_baseline * PHI), PRIORITY_CLAMP)
        max_fee = min(int(base_fee * PHI_INVERSE) + priority, MAX_FEE_CAP)
        balance = self.rpc.get_balance(self.wallet.address)
        required = int(PHI_SQUARED * gas_limit * max_fee)
        if balance < required:
            warn(emit_status="skipped", reason="insufficient_balance",
                 balance=balance, required=required, hash=record["hash"])
            return "insufficient_balance"

        tx_hash, outcome = self._submit(record, nonce, gas_limit, base_fee, priority)
        if tx_hash is None:
            self.state.record_emission_failure()
            return outcome
        self.nonces.add_pending(tx_hash)

        receipt, label = self._confirm(tx_hash)
        if receipt is not None:
            self.nonces.remove_pending(tx_hash)
            if receipt["status"] != 1:
                self.state.record_error(metric_key("reverted"))
                self.state.record_emission_failure()
                error(emit_status="reverted", tx=tx_hash, hash=record["hash"])
                return "reverted_onchain"
        self._commit(record, tx_hash, receipt, label)
        return "success"

    def _submit(self, record: dict, nonce: int, gas_limit: int, base_fee: int,
                priority: int) -> tuple[str | None, str]:
        """registerSignal with fee escalation. Returns (tx_hash, outcome)."""
        nonce_retried = False
        for attempt in range(1, MAX_SUBMIT_ATTEMPTS + 1):
            max_fee = min(int(base_fee * PHI_INVERSE) + priority, MAX_FEE_CAP)
            data = encode_call(SIG_REGISTER_SIGNAL, [self._description(record, attempt), CATEGORY_JAM])
            try:
                raw, _ = self.wallet.build(self.dmap_address, data, gas=gas_limit, nonce=nonce,
                                           max_fee=max_fee, priority_fee=priority)
                tx_hash = self.rpc.send_raw_transaction(raw)
                echo(emit_status="broadcast", tx=tx_hash, nonce=nonce, attempt=attempt,
                     priority_gwei=priority / 1e9, max_fee_gwei=max_fee / 1e9)
                return tx_hash, "broadcast"
            except Exception as e:
                kind = classify_tx_error(e)
                self.state.record_error(metric_key(kind))
                warn(emit_status="submit_error", attempt=attempt, kind=kind, msg=str(e)[:160])
                if kind == "insufficient_funds":
                    self.sleep(INSUFFICIENT_FUNDS_PAUSE)
                    return None, "insufficient_funds"
                if kind == "reverted":
                    return None, "reverted"
                if kind == "nonce":
                    if nonce_retried:
                        return None, "nonce_error"
                    nonce_retried = True
                    self.nonces.reset()
                    nonce = self.nonces.get()
                    self.nonces.increment()
                elif kind == "underpriced":
                    priority = int(priority * PHI)
                else:
                    priority = int(priority * 1.2)
                priority = min(priority, PRIORITY_CAP)
            if attempt < MAX_SUBMIT_ATTEMPTS:
                self.sleep(PHI * attempt + self.rand() * 0.5)
        return None, "failed"

    def _confirm(self, tx_hash: str):
        """(receipt, None) when known, else (None, reason) for an optimistic success."""
        try:
            return self.rpc.wait_for_receipt(tx_hash, timeout=CONFIRM_TIMEOUT), None
        except ReceiptTimeout:
            warn(emit_confirm="timeout", tx=tx_hash)
        except ReceiptPending:
            return None, "indexing"
        except AllEndpointsFailed:
            return None, "rpc_failure"
        try:
            receipt = self.rpc.get_transaction_receipt(tx_hash)
        except ReceiptPending:
            return None, "indexing"
        except AllEndpointsFailed:
            return None, "rpc_failure"
        if receipt is None:
            return None, "error_recovery"
        return receipt, None

    def _commit(self, record: dict, tx_hash: str, receipt, label: str | None):
        now = self.clock()
        patch = {"onchain_tx": tx_hash}
        onchain_hash = registered_hash(receipt, self.dmap_address) if receipt is not None else None
        if onchain_hash:
            patch["onchain_hash"] = onchain_hash
            self.store.link(onchain_hash, record["hash"])
        self.store.update(record["hash"], patch)
        record.update(patch)

        self.store.append_successful(compress(record, iso_now(now)))
        self.state.commit_emission(record["hash"], record["pattern"], self.nonces.nonce)
        block_number = receipt["blockNumber"] if receipt is not None else label
        self.store.write_beacon({
            "hash": record["hash"],
            "record": record,
            "tx": tx_hash,
            "block_number": block_number,
            "confirmed_timestamp": int(now),
        })
        echo(emit_status="success", hash=record["hash"], tx=tx_hash, pattern=record["pattern"],
             block_number=block_number)

    def run(self, interval: float, count: int | None = None):
        """Tick forever (or count times); a tick never overlaps the next."""
        ticks = 0
        emitted = 0
        try:
            while count is None or ticks < count:
                ticks += 1
                try:
                    if self.tick() == "success":
                        emitted += 1
                except Exception as e:
                    error(emit_status="tick_error", tick=ticks, msg=str(e)[:200])
                if count is None or ticks < count:
                    self.sleep(interval)
        except KeyboardInterrupt:
            pass
        finally:
            self.state.release_if_held()
        echo(emitter_summary="stopped", ticks=ticks, emitted=emitted)
