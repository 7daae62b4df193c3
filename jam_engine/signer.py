"""Attestation and builder-relay message signing."""

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3

from .abi import encode_attestation


def _sign_hash(msg_bytes: bytes, private_key) -> bytes:
    """keccak256 + EIP-191 sign."""
    msg_hash = Web3.keccak(msg_bytes)
    signable = encode_defunct(primitive=msg_hash)
    signed = Account.sign_message(signable, private_key=private_key)
    return bytes(signed.signature)


def attestation_hash(signal_hash: bytes, frontrunner: str, amount: int) -> bytes:
    return Web3.keccak(encode_attestation(signal_hash, frontrunner, amount))


def sign_attestation(signal_hash: bytes, frontrunner: str, amount: int, private_key) -> bytes:
    """Signature the vault verifies for attestYield(signalHash, frontrunner, amount, sig)."""
    return _sign_hash(encode_attestation(signal_hash, frontrunner, amount), private_key)


def recover_attestation_signer(signal_hash: bytes, frontrunner: str, amount: int,
                               signature: bytes) -> str:
    signable = encode_defunct(primitive=attestation_hash(signal_hash, frontrunner, amount))
    return Account.recover_message(signable, signature=signature)


def flashbots_signature(body: str, account) -> str:
    """X-Flashbots-Signature header value: '<address>:<sig over keccak(body) hex>'."""
    digest = Web3.to_hex(Web3.keccak(text=body))
    signed = account.sign_message(encode_defunct(text=digest))
    return f"{account.address}:{Web3.to_hex(signed.signature)}"
