"""Amplifier: public bait on the DEX cascade, private capture through the builder."""

import time
from datetime import datetime, timezone

from web3 import Web3

from . import abi
from .abi import hex_str
from .builder import INCLUDED, REVERTED
from .constants import PHI, PHI_INVERSE, ZERO_ADDRESS
from .dex import (
    DEXES, DexKind, calculate_trade_amount, cascade, encode_reverse_swap, encode_swap,
    is_legible, token_address,
)
from .errors import RPCError, TransactionReverted
from .log import echo, error, iso_now, warn
from .record import is_reverse_pair, split_steps
from .selector import window_multiplier

POLL_INTERVAL = 12
AMPLIFY_DELAY = 10
LOOKBACK_BLOCKS = 1000
RETRY_DELAYS = [1, 5, 30]
BAIT_GAS = 300_000
CAPTURE_GAS = 200_000
BRIBE_GAS = 21_000
DEADLINE_SECONDS = 300
BRIBE_SHARE = 0.80
CONFIRM_TIMEOUT = PHI * 30
MIN_RESONANCE = 1.0
CAPTURE_FAILED = "Capture reverted or not included"
MIRROR_EMPTY = "Mirror holds no capture token"


class Amplifier:
    def __init__(self, rpc, wallet, mirror, store, builder, dmap_address: str,
                 emitter_address: str, vault_address: str | None = None,
                 max_gas_gwei: float | None = None, confidence: float = 0.9,
                 echo_chain=None, hint=None, recursive_signals: bool = False,
                 amplify_delay: float = AMPLIFY_DELAY, clock=time.time, sleep=time.sleep):
        self.rpc = rpc
        self.wallet = wallet
        self.mirror = mirror
        self.store = store
        self.builder = builder
        self.dmap_address = Web3.to_checksum_address(dmap_address)
        self.emitter_address = emitter_address.lower()
        self.vault_address = vault_address.lower() if vault_address else None
        self.max_gas_wei = Web3.to_wei(max_gas_gwei, "gwei") if max_gas_gwei else None
        self.confidence = confidence
        self.echo_chain = echo_chain
        self.hint = hint
        self.recursive_signals = recursive_signals
        self.amplify_delay = amplify_delay
        self.clock = clock
        self.sleep = sleep
        self.is_amplifying = False
        self.last_processed: int | None = None

    # -- event polling --

    def poll_once(self) -> int:
        """Handle SignalRegistered events in (last_processed, head]. Returns how many were seen."""
        head = self.rpc.block_number()
        if self.last_processed is None:
            self.last_processed = max(head - LOOKBACK_BLOCKS, 0)
            echo(amplifier_status="startup_scan", from_block=self.last_processed + 1, to_block=head)
        if head <= self.last_processed:
            return 0
        logs = self.rpc.get_logs({
            "address": self.dmap_address,
            "topics": [abi.SIGNAL_REGISTERED_TOPIC],
            "fromBlock": self.last_processed + 1,
            "toBlock": head,
        })
        for log in logs:
            signal_hash = hex_str(log["topics"][1])
            self.handle_signal(signal_hash, log)
        self.last_processed = head
        return len(logs)

    def handle_signal(self, signal_hash: str, log) -> str | None:
        if self.is_amplifying:
            warn(amplifier_status="busy", hash=signal_hash)
            return None
        self.is_amplifying = True
        try:
            for attempt, delay in enumerate([0] + RETRY_DELAYS):
                if delay:
                    self.sleep(delay)
                try:
                    return self.amplify(signal_hash, log)
                except Exception as e:
                    error(amplifier_status="error", hash=signal_hash, attempt=attempt + 1,
                          msg=str(e)[:200])
            error(amplifier_status="gave_up", hash=signal_hash)
            return "error"
        finally:
            self.is_amplifying = False

    # -- one signal --

    def _from_our_emitter(self, log) -> bool:
        tx = self.rpc.get_transaction(log["transactionHash"])
        if tx["from"].lower() != self.emitter_address:
            return False
        to = (tx.get("to") or "").lower()
        if self.vault_address and to == self.vault_address:
            data = bytes(tx.get("input") or b"")
            return data[:4] in (abi.selector(abi.SIG_EMIT_SIGNAL),
                                abi.selector(abi.SIG_EMIT_RECURSIVE_SIGNAL))
        return True

    def amplify(self, signal_hash: str, log) -> str:
        """Run the bait/capture sequence for one signal. Returns the outcome name."""
        if not self._from_our_emitter(log):
            echo(amplifier_status="skipped", reason="foreign_emitter", hash=signal_hash)
            return "foreign"

        self.sleep(self.amplify_delay)

        record = self.store.get(signal_hash)
        if record is None:
            warn(amplifier_status="skipped", reason="record_missing", hash=signal_hash)
            return "missing"
        if not (record.get("meta") or {}).get("audit_pass"):
            echo(amplifier_status="skipped", reason="audit_fail", hash=signal_hash)
            return "audit_fail"
        if record.get("amplification_at"):
            echo(amplifier_status="skipped", reason="already_amplified", hash=signal_hash)
            return "already_amplified"

        amp_step, mirror_step = split_steps(record)
        if not is_reverse_pair(amp_step, mirror_step) or (record.get("resonance") or 0) < MIN_RESONANCE:
            warn(amplifier_status="skipped", reason="invalid_reverse_pattern", hash=signal_hash)
            return "invalid_pattern"

        gas_price = self.rpc.gas_price()
        if self.max_gas_wei and gas_price > self.max_gas_wei:
            warn(amplifier_status="skipped", reason="gas_ceiling", gas_gwei=gas_price / 1e9)
            return "gas_ceiling"

        pair = f"{amp_step['from']}-{amp_step['to']}"
        multiplier = window_multiplier(datetime.fromtimestamp(self.clock(), tz=timezone.utc))
        trade_amount = calculate_trade_amount(self.confidence, gas_price, pair, multiplier)
        path = [amp_step["from"], amp_step["to"]]
        legible, reason = is_legible(amp_step, trade_amount, path)
        if not legible:
            warn(amplifier_status="skipped", reason="not_legible", detail=reason, hash=signal_hash)
            return "not_legible"

        order = cascade(record["resonance"], record.get("cascade_depth", 1),
                        record.get("recursive_topology"),
                        (record.get("meta") or {}).get("phi_relations"))
        echo(amplifier_status="start", hash=signal_hash, pair=pair, trade_amount=trade_amount,
             cascade=",".join(order))

        self._prefund_mirror(mirror_step["from"])
        balance_before = self.rpc.get_balance(self.wallet.address)

        for dex_id in order:
            dex = DEXES[dex_id]
            try:
                bait = self._bait(dex, amp_step, trade_amount, gas_price)
            except Exception as e:
                warn(bait_status="failed", dex=dex_id, msg=str(e)[:160])
                continue
            outcome = self._capture(record, signal_hash, dex, amp_step, mirror_step, bait,
                                    trade_amount, balance_before)
            self._side_channels(record, bait)
            return outcome

        self.store.append_profit({
            "timestamp": iso_now(self.clock()),
            "signal_hash": signal_hash,
            "trade_amount": trade_amount,
            "success": False,
            "reason": "All DEXes failed",
        })
        error(amplifier_status="failed", reason="all_dexes_failed", hash=signal_hash)
        return "all_dexes_failed"

    def _prefund_mirror(self, token_symbol: str):
        try:
            token = token_address(token_symbol)
            held = self.rpc.contract_call(token, abi.ERC20_ABI, "balanceOf", self.wallet.address)
            if held > 0:
                data = abi.encode_call(abi.SIG_ERC20_TRANSFER,
                                       [Web3.to_checksum_address(self.mirror.address), held])
                self.wallet.transact(token, data=data, gas=80_000, timeout=CONFIRM_TIMEOUT)
                echo(prefund_status="sent", token=token_symbol, amount=held)
        except Exception as e:
            warn(prefund_status="failed", token=token_symbol, msg=str(e)[:160])

    def _bait(self, dex, step: dict, trade_amount: int, gas_price: int) -> dict:
        """Public swap on dex. Returns the landed receipt and block; raises on failure."""
        latest = self.rpc.get_block("latest")
        deadline = latest["timestamp"] + DEADLINE_SECONDS
        amount_out_min = trade_amount * 95 // 100 // 1000
        data = encode_swap(dex.kind, dex, step["from"], step["to"], trade_amount,
                           amount_out_min, self.wallet.address, deadline)
        tx_hash = self.wallet.send(dex.router, data=data, value=trade_amount, gas=BAIT_GAS,
                                   gas_price=gas_price)
        echo(bait_status="sent", dex=dex.id, tx=tx_hash, amount=trade_amount)
        receipt = self.rpc.wait_for_receipt(tx_hash, timeout=CONFIRM_TIMEOUT)
        self.wallet.nonces.remove_pending(tx_hash)
        if receipt["status"] != 1:
            raise TransactionReverted(f"bait reverted on {dex.id}: {tx_hash}")
        block = self.rpc.get_block(receipt["blockNumber"])
        return {"tx": tx_hash, "receipt": receipt, "block": block, "dex": dex.id}

    def _capture(self, record, signal_hash, dex, amp_step, mirror_step, bait,
                 trade_amount, balance_before) -> str:
        """Everything after the bait landed. The bait is never repeated from here.

        Every exit writes exactly one profit entry.
        """
        receipt, block = bait["receipt"], bait["block"]
        confirmation_block = receipt["blockNumber"]
        confirmed_ts = block["timestamp"]
        self.store.update(record["hash"], {
            "amplification_at": confirmed_ts,
            "amplification": {"block": confirmation_block, "tx": bait["tx"], "dex": dex.id},
        })
        self.store.write_beacon({"hash": record["hash"], "confirmed_timestamp": confirmed_ts,
                                 "block_number": confirmation_block, "tx": bait["tx"]})
        echo(bait_status="confirmed", dex=dex.id, block=confirmation_block, timestamp=confirmed_ts)

        profit_entry = {
            "timestamp": iso_now(self.clock()),
            "signal_hash": signal_hash,
            "bait_tx": bait["tx"],
            "trade_amount": trade_amount,
            "dex": dex.id,
        }
        try:
            state = self._submit_capture(dex, amp_step, mirror_step, receipt, block, profit_entry)
        except Exception as e:
            state = "error"
            profit_entry["detail"] = str(e)[:200]
            error(capture_status="error", hash=signal_hash, msg=str(e)[:200])

        try:
            profit = self.rpc.get_balance(self.wallet.address) - balance_before
        except RPCError as e:
            warn(capture_balance="unreadable", msg=str(e)[:160])
            profit = 0
        profit_entry["profit"] = profit
        profit_entry["profit_ratio"] = profit / trade_amount if trade_amount else 0.0
        if state == INCLUDED:
            profit_entry["success"] = True
            self.wallet.nonces.reset()
            echo(capture_status="included", target=confirmation_block + 1, profit=profit)
        else:
            profit_entry["success"] = False
            profit_entry["reason"] = MIRROR_EMPTY if state == "mirror_empty" else CAPTURE_FAILED
            profit_entry.setdefault("detail", state)
            warn(capture_status=state, target=confirmation_block + 1, hash=signal_hash)
        self.store.append_profit(profit_entry)
        if state == INCLUDED:
            return "captured"
        return "mirror_empty" if state == "mirror_empty" else "capture_failed"

    def _submit_capture(self, dex, amp_step, mirror_step, receipt, block, profit_entry) -> str:
        """Build and send the capture bundle for block B+1. Returns the inclusion state."""
        token = token_address(amp_step["to"])
        mirror_balance = self.rpc.contract_call(token, abi.ERC20_ABI, "balanceOf", self.mirror.address)
        if mirror_balance == 0:
            echo(capture_status="skipped", reason="mirror_empty", token=amp_step["to"])
            return "mirror_empty"

        capture_path = [token_address(mirror_step["from"]), token_address(mirror_step["to"])]
        try:
            amounts = self.rpc.contract_call(dex.router, abi.UNISWAP_V2_ROUTER_ABI, "getAmountsOut",
                                             mirror_balance, capture_path)
            expected = max(amounts[-1], 0)
        except Exception as e:
            warn(capture_quote="failed", dex=dex.id, msg=str(e)[:160])
            expected = 0
        min_out = expected * 95 // 100

        effective_price = receipt.get("effectiveGasPrice") or self.rpc.gas_price()
        capture_gas_price = effective_price * 2
        gas_cost = CAPTURE_GAS * capture_gas_price
        bribe = int(BRIBE_SHARE * max(expected - gas_cost, 0))
        target_block = receipt["blockNumber"] + 1
        deadline = block["timestamp"] + DEADLINE_SECONDS

        kind = dex.kind if dex.kind is DexKind.SOLIDLY else DexKind.UNI_V2
        capture_data = encode_reverse_swap(kind, mirror_step["from"], mirror_step["to"],
                                           mirror_balance, min_out, self.wallet.address, deadline)
        self.mirror.nonces.reset()
        capture_raw, capture_hash = self.mirror.build(dex.router, capture_data, gas=CAPTURE_GAS,
                                                      gas_price=capture_gas_price)
        bundle = [capture_raw]
        if bribe > 0:
            miner = block.get("miner") or ZERO_ADDRESS
            bribe_raw, _ = self.wallet.build(miner, b"", value=bribe, gas=BRIBE_GAS,
                                             gas_price=capture_gas_price)
            bundle.append(bribe_raw)

        profit_entry["gas_cost"] = gas_cost
        profit_entry["bribe"] = bribe
        self.builder.send_bundle(bundle, target_block)
        state = self.builder.wait_for_inclusion(self.rpc, capture_hash, target_block)
        if state == REVERTED:
            profit_entry["detail"] = "reverted"
        return state

    def _side_channels(self, record: dict, bait: dict):
        meta = {"confirmed_timestamp": bait["block"]["timestamp"], "bait_tx": bait["tx"],
                "block_number": bait["receipt"]["blockNumber"]}
        if self.echo_chain is not None:
            result = self.echo_chain.publish(record, meta)
            topology = dict(record.get("recursive_topology") or {"primary": 1, "alt": 0, "failed": 0})
            if result:
                topology["alt"] = topology.get("alt", 0) + 1
            else:
                topology["failed"] = topology.get("failed", 0) + 1
            self.store.update(record["hash"], {"recursive_topology": topology})
        if self.hint is not None:
            try:
                self.hint.publish(record, meta)
            except Exception as e:
                warn(honeypot_hint="failed", msg=str(e)[:160])
        if self.recursive_signals and self.vault_address and record.get("parent_hash"):
            try:
                onchain = record.get("onchain_hash") or record["hash"]
                data = abi.encode_call(abi.SIG_EMIT_RECURSIVE_SIGNAL, [
                    bytes.fromhex(onchain[2:]), bytes.fromhex(record["parent_hash"][2:]),
                ])
                tx_hash = self.wallet.send(self.vault_address, data=data, gas=150_000)
                echo(recursive_signal=tx_hash, depth=record.get("cascade_depth"),
                     resonance=round(record["resonance"] * PHI_INVERSE, 3))
            except Exception as e:
                warn(recursive_signal="failed", msg=str(e)[:160])

    def run(self, interval: float = POLL_INTERVAL, count: int | None = None):
        polls = 0
        try:
            while count is None or polls < count:
                polls += 1
                try:
                    self.poll_once()
                except Exception as e:
                    error(amplifier_status="poll_error", msg=str(e)[:200])
                if count is None or polls < count:
                    self.sleep(interval)
        except KeyboardInterrupt:
            pass
        echo(amplifier_summary="stopped", polls=polls, last_block=self.last_processed)
