"""Builder relay client: signed eth_sendBundle for one target block."""

import json
import time

import requests
from web3 import Web3

from .errors import BundleRejected
from .log import echo, warn
from .signer import flashbots_signature

INCLUDED = "included"
REVERTED = "reverted"
NOT_INCLUDED = "not_included"


class BuilderRelay:
    def __init__(self, url: str, auth_account, session: requests.Session | None = None,
                 timeout: float = 10, sleep=time.sleep, clock=time.time):
        self.url = url
        self.auth_account = auth_account
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sleep = sleep
        self.clock = clock
        self._id = 0

    def send_bundle(self, raw_txs: list[bytes], target_block: int) -> dict:
        """Submit the bundle. Returns the relay's result; raises BundleRejected on an error object."""
        self._id += 1
        body = json.dumps({
            "jsonrpc": "2.0",
            "id": self._id,
            "method": "eth_sendBundle",
            "params": [{
                "txs": [Web3.to_hex(raw) for raw in raw_txs],
                "blockNumber": hex(target_block),
            }],
        })
        headers = {
            "Content-Type": "application/json",
            "X-Flashbots-Signature": flashbots_signature(body, self.auth_account),
        }
        response = self.session.post(self.url, data=body, headers=headers, timeout=self.timeout)
        try:
            payload = response.json()
        except ValueError:
            response.raise_for_status()
            raise BundleRejected(f"non-JSON relay response: {response.text[:200]}")
        if "error" in payload:
            raise BundleRejected(str(payload["error"]))
        response.raise_for_status()
        echo(bundle_submitted=target_block, txs=len(raw_txs), result=str(payload.get("result"))[:80])
        return payload.get("result") or {}

    def wait_for_inclusion(self, rpc, capture_tx: str, target_block: int,
                           timeout: float = 60, poll: float = 2) -> str:
        """Terminal state of the capture tx once target_block has passed."""
        deadline = self.clock() + timeout
        while rpc.block_number() < target_block:
            if self.clock() >= deadline:
                warn(bundle_wait="timeout", target=target_block)
                return NOT_INCLUDED
            self.sleep(poll)
        receipt = rpc.get_transaction_receipt(capture_tx)
        if receipt is None or receipt["blockNumber"] != target_block:
            return NOT_INCLUDED
        return INCLUDED if receipt["status"] == 1 else REVERTED
