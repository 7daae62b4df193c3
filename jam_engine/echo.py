"""Best-effort side-channel publishers for confirmed signals."""

import json
import time

import requests

from .abi import hex_str
from .constants import ZERO_ADDRESS
from .log import echo, warn

PINATA_URL = "https://api.pinata.cloud/pinning/pinJSONToIPFS"
HINT_FUNCTIONS = ["registerSignal", "attestYield", "emitSignal"]


def echo_payload(record: dict, meta: dict) -> dict:
    """Compressed form of a record for other ledgers."""
    return {
        "h": record["hash"],
        "p": record.get("pattern"),
        "r": record.get("resonance"),
        "d": record.get("cascade_depth"),
        "t": meta.get("confirmed_timestamp"),
        "tx": meta.get("bait_tx"),
    }


class CalldataAnchor:
    """Zero-value transaction to the zero address carrying the payload as calldata."""

    name = "ETH"

    def __init__(self, wallet, gas: int = 60_000, timeout: float = 60):
        self.wallet = wallet
        self.gas = gas
        self.timeout = timeout

    def publish(self, record: dict, meta: dict) -> dict:
        data = json.dumps(echo_payload(record, meta), separators=(",", ":")).encode()
        receipt = self.wallet.transact(ZERO_ADDRESS, data=data, gas=self.gas, timeout=self.timeout)
        return {"chain": self.name, "txid": hex_str(receipt["transactionHash"])}


class IpfsPin:
    name = "IPFS"

    def __init__(self, api_key: str, session: requests.Session | None = None, timeout: float = 30):
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def publish(self, record: dict, meta: dict) -> dict:
        response = self.session.post(
            PINATA_URL,
            json={
                "pinataContent": echo_payload(record, meta),
                "pinataMetadata": {"name": f"jam-{record['hash'][:10]}"},
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return {"chain": self.name, "cid": response.json()["IpfsHash"]}


class EchoChain:
    """Try publishers in order; the first success wins. Never raises."""

    def __init__(self, publishers: list, retries: int = 3, delay: float = 2.0, sleep=time.sleep):
        self.publishers = publishers
        self.retries = retries
        self.delay = delay
        self.sleep = sleep

    def publish(self, record: dict, meta: dict) -> dict | None:
        for publisher in self.publishers:
            for k in range(self.retries):
                try:
                    result = publisher.publish(record, meta)
                except Exception as e:
                    warn(echo_status="failed", chain=publisher.name, attempt=k + 1, msg=str(e)[:160])
                    if k < self.retries - 1:
                        self.sleep(self.delay * 2 ** k)
                    continue
                echo(echo_status="published", chain=publisher.name, hash=record["hash"][:10])
                return result
        warn(echo_status="exhausted", hash=record["hash"][:10])
        return None


class HoneypotHint:
    """Zero-value hint transaction pointing other bots at a honeypot contract."""

    name = "HINT"

    def __init__(self, wallet, honeypot_address: str, gas: int = 50_000):
        self.wallet = wallet
        self.honeypot_address = honeypot_address
        self.gas = gas

    def publish(self, record: dict, meta: dict) -> str:
        hint = {
            "target": self.honeypot_address,
            "signal": record["hash"],
            "pattern": "REGISTER_THEN_PROFIT",
            "functions": HINT_FUNCTIONS,
            "expected_yield": 1000 + (record.get("cascade_depth") or 1) * 618,
        }
        data = json.dumps(hint, separators=(",", ":")).encode()
        tx_hash = self.wallet.send(self.honeypot_address, data=data, gas=self.gas)
        echo(honeypot_hint=tx_hash, target=self.honeypot_address)
        return tx_hash
