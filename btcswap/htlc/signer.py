"""
secp256k1 signing key for HTLC spends.

One signing capability per party: a private key given as hex or WIF.
"""

import hashlib
import secrets
from typing import Tuple

import base58
from ecdsa import SigningKey, VerifyingKey, SECP256k1, BadSignatureError
from ecdsa.util import sigencode_der_canonize, sigdecode_der

from ..errors import ValidationError
from .address import get_network, p2pkh_address, p2wpkh_address, hash160
from .tx import SIGHASH_ALL


def decode_wif(wif: str) -> Tuple[bytes, bool]:
    """Decode WIF to (private key bytes, compressed)."""
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError:
        raise ValidationError("Invalid WIF")

    if decoded[0] not in (0x80, 0xef):  # Mainnet or Testnet
        raise ValidationError(f"Invalid WIF prefix: {decoded[0]:#x}")
    if len(decoded) == 34 and decoded[-1] == 0x01:
        return decoded[1:33], True
    if len(decoded) == 33:
        return decoded[1:33], False
    raise ValidationError("Invalid WIF length")


def encode_wif(privkey: bytes, network="testnet", compressed: bool = True) -> str:
    payload = bytes([get_network(network).wif]) + privkey
    if compressed:
        payload += b"\x01"
    return base58.b58encode_check(payload).decode("ascii")


def encode_signature(der_signature: bytes, hashtype: int = SIGHASH_ALL) -> bytes:
    """Append the sighash type byte, as expected inside scripts."""
    return der_signature + bytes([hashtype])


def verify_signature(pubkey: bytes, der_signature: bytes, sighash: bytes) -> bool:
    """Check a DER signature over a 32-byte sighash."""
    try:
        vk = VerifyingKey.from_string(pubkey, curve=SECP256k1)
        return vk.verify_digest(der_signature, sighash, sigdecode=sigdecode_der)
    except (BadSignatureError, ValueError, AssertionError):
        return False


class PrivateKeySigner:
    """ECDSA signer producing low-S DER signatures (RFC6979 nonces)."""

    def __init__(self, privkey: bytes):
        if len(privkey) != 32:
            raise ValidationError("Private key must be 32 bytes")
        try:
            self._key = SigningKey.from_string(privkey, curve=SECP256k1)
        except (ValueError, AssertionError) as e:
            raise ValidationError(f"Invalid private key: {e}")
        self._pubkey = self._key.get_verifying_key().to_string("compressed")

    @classmethod
    def from_hex(cls, privkey_hex: str) -> "PrivateKeySigner":
        try:
            return cls(bytes.fromhex(privkey_hex))
        except ValueError as e:
            raise ValidationError(f"Invalid private key hex: {e}")

    @classmethod
    def from_wif(cls, wif: str) -> "PrivateKeySigner":
        privkey, compressed = decode_wif(wif)
        if not compressed:
            raise ValidationError("Uncompressed WIF keys are not supported")
        return cls(privkey)

    @classmethod
    def generate(cls) -> "PrivateKeySigner":
        while True:
            candidate = secrets.token_bytes(32)
            if 0 < int.from_bytes(candidate, "big") < SECP256k1.order:
                return cls(candidate)

    @property
    def public_key(self) -> bytes:
        """33-byte compressed public key."""
        return self._pubkey

    @property
    def pubkey_hash(self) -> bytes:
        return hash160(self._pubkey)

    def address(self, network="testnet") -> str:
        """P2PKH address of this key."""
        return p2pkh_address(self._pubkey, network)

    def segwit_address(self, network="testnet") -> str:
        """P2WPKH address of this key."""
        return p2wpkh_address(self._pubkey, network)

    def sign(self, sighash: bytes) -> bytes:
        """Sign a 32-byte sighash. Returns DER without the hashtype byte."""
        if len(sighash) != 32:
            raise ValidationError("Sighash must be 32 bytes")
        return self._key.sign_digest_deterministic(
            sighash, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
        )
