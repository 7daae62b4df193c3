"""Attributor: correlates later swaps with amplified signals and attests the yield."""

import time

from web3 import Web3

from . import abi
from .constants import (
    ATTRIBUTION_WINDOW_BLOCKS, BASE_EMISSION_INTERVAL_MS, MIN_SIMILARITY, PHI_RATIOS,
    PHI_TOLERANCE, PHI_WINDOW_MAX, PHI_WINDOW_MIN, REINFORCE_MIN_YIELD_WEI, REINFORCE_SIMILARITY,
)
from .dex import ROUTER_WHITELIST, decode_swap_path
from .log import echo, error, iso_now
from .signer import sign_attestation

POLL_INTERVAL = 12
SCAN_DEPTH = 5
YIELD_NUMERATOR = 161  # floor(PHI * 100)
PHI_BONUS = 0.2
ATTEST_GAS = 200_000
AUTHORIZE_GAS = 100_000
CONFIRM_TIMEOUT = 120
# Audited records still waiting for a bait after a few emitter ticks are dropped.
UNAMPLIFIED_TTL = 3 * BASE_EMISSION_INTERVAL_MS // 1000


def phi_aligned(value_eth: float) -> bool:
    return any(abs(value_eth - ratio) < PHI_TOLERANCE for ratio in PHI_RATIOS)


def in_phi_window(delta: float) -> bool:
    return PHI_WINDOW_MIN <= delta <= PHI_WINDOW_MAX


def record_pattern(record: dict) -> dict:
    steps = record.get("steps") or []
    return {
        "token_paths": [f"{s['from']}>{s['to']}" for s in steps],
        "actions": ",".join(s.get("action", "") for s in steps),
        "has_phi_ratio": bool((record.get("meta") or {}).get("phi_alignment")),
    }


def extract_pattern(tx) -> dict:
    """Observable features of a transaction."""
    pattern = {"token_path": "", "actions": "", "has_phi_ratio": False}
    to = (tx.get("to") or "").lower()
    if to in ROUTER_WHITELIST:
        pattern["actions"] = "SWAP"
        path = decode_swap_path(bytes(tx.get("input") or b""))
        if path:
            pattern["token_path"] = ">".join(path)
        value_eth = float(Web3.from_wei(tx.get("value") or 0, "ether"))
        pattern["has_phi_ratio"] = phi_aligned(value_eth)
    return pattern


def similarity(signal: dict, observed: dict) -> float:
    """Score over the factors both sides carry, plus a bonus for shared phi alignment."""
    score = 0.0
    factors = 0
    if signal["token_paths"] and observed["token_path"]:
        factors += 1
        if observed["token_path"] in signal["token_paths"]:
            score += 1
    if signal["actions"] and observed["actions"]:
        factors += 1
        if observed["actions"] in signal["actions"]:
            score += 1
    if signal["has_phi_ratio"] and observed["has_phi_ratio"]:
        score += PHI_BONUS
    return score / factors if factors else 0.0


def is_similar(score: float) -> bool:
    return score >= MIN_SIMILARITY


def transaction_yield(tx, receipt) -> int:
    gas_price = receipt.get("effectiveGasPrice") or tx.get("gasPrice") or 0
    return receipt["gasUsed"] * gas_price * YIELD_NUMERATOR // 100


class Attributor:
    def __init__(self, rpc, wallet, store, state, vault_address: str,
                 own_addresses: list[str] | None = None, clock=time.time, sleep=time.sleep):
        self.rpc = rpc
        self.wallet = wallet
        self.store = store
        self.state = state
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.own = {a.lower() for a in (own_addresses or [])} | {wallet.address.lower()}
        self.clock = clock
        self.sleep = sleep
        self.active: dict[str, dict] = {}
        self._records: dict[str, dict] = {}
        self._versions: dict[str, tuple[int, int]] = {}
        self.seen: set[tuple[str, str]] = set()
        self.attributed_yields: dict[str, int] = {}
        self.recent: list[dict] = []
        self.scans = 0

    def ensure_authorized(self) -> bool:
        me = self.wallet.address
        if self.rpc.contract_call(self.vault_address, abi.VAULT_ABI, "authorizedTrappers", me):
            echo(authorization="ok", trapper=me)
            return True
        echo(authorization="pending", action="self_authorize")
        data = abi.encode_call(abi.SIG_AUTHORIZE_TRAPPER, [Web3.to_checksum_address(me)])
        self.wallet.transact(self.vault_address, data=data, gas=AUTHORIZE_GAS, timeout=CONFIRM_TIMEOUT)
        echo(authorization="granted", trapper=me)
        return True

    def load_history(self):
        """Seed de-duplication and running totals from the attribution log."""
        for event in self.store.list_attributions():
            signal_hash = event.get("signal_hash")
            tx_hash = event.get("tx_hash")
            if not signal_hash or not tx_hash:
                continue
            self.seen.add((signal_hash, tx_hash))
            self.attributed_yields[signal_hash] = (
                self.attributed_yields.get(signal_hash, 0) + int(event.get("yield_amount") or 0))
        echo(attribution_history=len(self.seen), signals=len(self.attributed_yields))

    def refresh(self, head: int) -> int:
        """Re-read records changed on disk and keep the audited ones still inside the block window.

        Amplifications written by other processes show up as changed files.
        """
        versions = self.store.record_versions()
        for jam_hash in set(self._versions) - set(versions):
            del self._versions[jam_hash]
            self._records.pop(jam_hash, None)
        for jam_hash, version in versions.items():
            if self._versions.get(jam_hash) == version:
                continue
            self._versions[jam_hash] = version
            record = self.store.get(jam_hash)
            # aliases resolve to a record stored under another name
            if record is None or record.get("hash") != jam_hash:
                continue
            if (record.get("meta") or {}).get("audit_pass"):
                self._records[jam_hash] = record
            else:
                self._records.pop(jam_hash, None)

        now = self.clock()
        for jam_hash, record in list(self._records.items()):
            block = (record.get("amplification") or {}).get("block")
            if block is None:
                # never amplified; a later rewrite of the file brings it back
                if now - (record.get("created_at") or 0) > UNAMPLIFIED_TTL:
                    del self._records[jam_hash]
            elif head - block > ATTRIBUTION_WINDOW_BLOCKS:
                del self._records[jam_hash]

        added = len(set(self._records) - set(self.active))
        self.active = dict(self._records)
        if added:
            echo(signals_loaded=added, active=len(self.active))
        return added

    def scan_once(self) -> int:
        """Check blocks [head-5, head]. Returns the number of new attestations."""
        self.scans += 1
        head = self.rpc.block_number()
        self.refresh(head)
        attested = 0
        for number in range(max(head - SCAN_DEPTH, 0), head + 1):
            block = self.rpc.get_block(number, full=True)
            if not block:
                continue
            for tx in block.get("transactions") or []:
                if isinstance(tx, (str, bytes)):
                    continue
                if (tx.get("from") or "").lower() in self.own:
                    continue
                try:
                    attested += self.check_transaction(tx, block)
                except Exception as e:
                    error(attribution_status="tx_error", tx=abi.hex_str(tx["hash"]), msg=str(e)[:200])
        return attested

    def check_transaction(self, tx, block) -> int:
        tx_hash = abi.hex_str(tx["hash"])
        receipt = self.rpc.get_transaction_receipt(tx_hash)
        if receipt is None or receipt["status"] != 1:
            return 0
        observed = extract_pattern(tx)
        block_number = block["number"]
        attested = 0
        for signal_hash, record in self.active.items():
            amplification = record.get("amplification") or {}
            if block_number - amplification.get("block", block_number) > ATTRIBUTION_WINDOW_BLOCKS:
                continue
            if not record.get("amplification_at"):
                continue
            delta = block["timestamp"] - record["amplification_at"]
            if not in_phi_window(delta):
                continue
            echo(attribution_candidate="time_aligned", delta=delta, hash=signal_hash[:10])
            score = similarity(record_pattern(record), observed)
            if not is_similar(score):
                continue
            if (signal_hash, tx_hash) in self.seen:
                continue
            amount = transaction_yield(tx, receipt)
            if amount <= 0:
                continue
            try:
                self.attest(record, tx, tx_hash, amount, score, block_number)
            except Exception as e:
                # not marked seen, so the next scan tries this pair again
                error(attribution_status="attest_failed", hash=signal_hash[:10], tx=tx_hash,
                      msg=str(e)[:200])
                continue
            attested += 1
        return attested

    def attest(self, record: dict, tx, tx_hash: str, amount: int, score: float, block_number: int):
        signal_hash = record["hash"]
        onchain = record.get("onchain_hash") or signal_hash
        signal_bytes = bytes.fromhex(onchain[2:])
        counterparty = Web3.to_checksum_address(tx["from"])
        signature = sign_attestation(signal_bytes, counterparty, amount, self.wallet.account.key)
        data = abi.encode_call(abi.SIG_ATTEST_YIELD, [signal_bytes, counterparty, amount, signature])
        receipt = self.wallet.transact(self.vault_address, data=data, gas=ATTEST_GAS,
                                       timeout=CONFIRM_TIMEOUT)
        self.seen.add((signal_hash, tx_hash))

        timestamp = iso_now(self.clock())
        event = {
            "timestamp": timestamp,
            "signal_hash": signal_hash,
            "counterparty": counterparty,
            "yield_amount": amount,
            "similarity": round(score, 4),
            "tx_hash": tx_hash,
            "attest_tx": abi.hex_str(receipt["transactionHash"]),
            "pattern": record.get("pattern"),
            "block": block_number,
        }
        self.store.append_attribution(event)
        self.store.append_interaction(signal_hash, counterparty, amount, timestamp)
        self.attributed_yields[signal_hash] = self.attributed_yields.get(signal_hash, 0) + amount
        self.recent = (self.recent + [event])[-10:]

        reinforced = score > REINFORCE_SIMILARITY and amount > REINFORCE_MIN_YIELD_WEI
        self.state.record_attribution(record.get("pattern"), reinforced)
        echo(yield_attributed=float(Web3.from_wei(amount, "ether")), signal=signal_hash[:10],
             bot=counterparty[:10], similarity=round(score, 2))
        if reinforced:
            echo(signal_reinforced=signal_hash[:10], trigger="high_yield", similarity=round(score, 2))

    def stats(self) -> dict:
        return {
            "active_signals": len(self.active),
            "attributions": len(self.seen),
            "total_yield": sum(self.attributed_yields.values()),
            "yields": dict(self.attributed_yields),
            "recent": list(self.recent),
        }

    def run(self, interval: float = POLL_INTERVAL, count: int | None = None):
        self.ensure_authorized()
        self.load_history()
        scans = 0
        try:
            while count is None or scans < count:
                scans += 1
                try:
                    self.scan_once()
                except Exception as e:
                    error(attribution_status="scan_error", msg=str(e)[:200])
                if count is None or scans < count:
                    self.sleep(interval)
        except KeyboardInterrupt:
            pass
        stats = self.stats()
        echo(attributor_summary="stopped", scans=scans, attributions=stats["attributions"],
             total_yield=stats["total_yield"])
