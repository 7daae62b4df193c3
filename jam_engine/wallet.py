"""Signing identity: builds, signs and submits transactions through the RPC client."""

from web3 import Web3

from .errors import TransactionReverted
from .log import echo
from .nonce import NonceManager


class Wallet:
    def __init__(self, rpc, account, label: str = "primary", nonces: NonceManager | None = None):
        self.rpc = rpc
        self.account = account
        self.address = account.address
        self.label = label
        self.nonces = nonces or NonceManager(rpc, account.address)

    def build(self, to: str, data: bytes = b"", value: int = 0, gas: int = 300_000,
              nonce: int | None = None, gas_price: int | None = None,
              max_fee: int | None = None, priority_fee: int | None = None) -> tuple[bytes, str]:
        """Sign a transaction without sending it. Returns (raw, tx_hash).

        gas_price selects a legacy transaction; otherwise EIP-1559 fees are
        used, defaulting to base fee + priority.
        """
        if nonce is None:
            nonce = self.nonces.get()
        tx = {
            "chainId": self.rpc.chain_id(),
            "nonce": nonce,
            "to": Web3.to_checksum_address(to),
            "value": value,
            "gas": gas,
            "data": data,
        }
        if gas_price is not None:
            tx["gasPrice"] = gas_price
        else:
            if priority_fee is None:
                priority_fee = Web3.to_wei(0.001, "gwei")
            if max_fee is None:
                max_fee = self.rpc.base_fee() * 2 + priority_fee
            tx["maxFeePerGas"] = max_fee
            tx["maxPriorityFeePerGas"] = min(priority_fee, max_fee)
            tx["type"] = 2
        signed = self.account.sign_transaction(tx)
        return bytes(signed.raw_transaction), Web3.to_hex(signed.hash)

    def send(self, to: str, data: bytes = b"", value: int = 0, gas: int = 300_000, **fees) -> str:
        """Sign with the managed nonce and broadcast. Returns the tx hash."""
        raw, tx_hash = self.build(to, data, value, gas, **fees)
        sent = self.rpc.send_raw_transaction(raw)
        self.nonces.increment()
        self.nonces.add_pending(sent)
        return sent or tx_hash

    def transact(self, to: str, data: bytes = b"", value: int = 0, gas: int = 300_000,
                 timeout: float = 120, **fees):
        """Send and wait for the receipt. Raises TransactionReverted on status 0."""
        tx_hash = self.send(to, data, value, gas, **fees)
        receipt = self.rpc.wait_for_receipt(tx_hash, timeout=timeout)
        self.nonces.remove_pending(tx_hash)
        if receipt["status"] != 1:
            raise TransactionReverted(f"Transaction reverted. Hash: {tx_hash}")
        echo(tx_confirmed=tx_hash, wallet=self.label, block=receipt["blockNumber"],
             gas_used=receipt["gasUsed"])
        return receipt
