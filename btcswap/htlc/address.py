"""
Bitcoin address encoding for btcswap.

Supports P2PKH / P2SH (base58check) and P2WPKH / P2WSH (bech32, witness v0).
"""

import hashlib
from dataclasses import dataclass
from typing import Tuple

import base58
import bech32

from ..errors import InvalidAddress, ValidationError


@dataclass(frozen=True)
class NetworkParams:
    """Address version bytes for one network."""
    name: str
    p2pkh: int
    p2sh: int
    hrp: str
    wif: int


NETWORKS = {
    "mainnet": NetworkParams("mainnet", p2pkh=0x00, p2sh=0x05, hrp="bc", wif=0x80),
    "testnet": NetworkParams("testnet", p2pkh=0x6f, p2sh=0xc4, hrp="tb", wif=0xef),
    "signet": NetworkParams("signet", p2pkh=0x6f, p2sh=0xc4, hrp="tb", wif=0xef),
    "regtest": NetworkParams("regtest", p2pkh=0x6f, p2sh=0xc4, hrp="bcrt", wif=0xef),
}


def get_network(network) -> NetworkParams:
    """Resolve a network name (or params) to NetworkParams."""
    if isinstance(network, NetworkParams):
        return network
    params = NETWORKS.get(network)
    if params is None:
        raise ValidationError(f"Unknown network: {network!r}")
    return params


def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return hashlib.new("ripemd160", sha256(data)).digest()


# =============================================================================
# Output scripts
# =============================================================================

def p2pkh_script(pubkey_hash: bytes) -> bytes:
    # OP_DUP OP_HASH160 <20> OP_EQUALVERIFY OP_CHECKSIG
    return bytes([0x76, 0xa9, 0x14]) + pubkey_hash + bytes([0x88, 0xac])


def p2sh_script(script_hash: bytes) -> bytes:
    # OP_HASH160 <20> OP_EQUAL
    return bytes([0xa9, 0x14]) + script_hash + bytes([0x87])


def witness_v0_script(program: bytes) -> bytes:
    # OP_0 <20|32>
    return bytes([0x00, len(program)]) + program


# =============================================================================
# Encoding
# =============================================================================

def _base58_address(version: int, payload: bytes) -> str:
    return base58.b58encode_check(bytes([version]) + payload).decode("ascii")


def _bech32_address(hrp: str, program: bytes) -> str:
    address = bech32.encode(hrp, 0, program)
    if address is None:
        raise ValidationError("Could not bech32-encode witness program")
    return address


def p2pkh_address(pubkey: bytes, network="testnet") -> str:
    return _base58_address(get_network(network).p2pkh, hash160(pubkey))


def p2wpkh_address(pubkey: bytes, network="testnet") -> str:
    return _bech32_address(get_network(network).hrp, hash160(pubkey))


def p2sh_address(script: bytes, network="testnet") -> str:
    """Legacy script-hash address committing to HASH160(script)."""
    return _base58_address(get_network(network).p2sh, hash160(script))


def p2wsh_address(script: bytes, network="testnet") -> str:
    """Witness script-hash address committing to SHA256(script)."""
    return _bech32_address(get_network(network).hrp, sha256(script))


# =============================================================================
# Decoding
# =============================================================================

def decode_address(address: str, network="testnet") -> Tuple[str, bytes]:
    """
    Decode an address for the given network.

    Returns:
        (kind, payload) where kind is one of p2pkh, p2sh, p2wpkh, p2wsh

    Raises:
        InvalidAddress: empty, malformed or wrong-network address
    """
    params = get_network(network)
    if not address or not isinstance(address, str):
        raise InvalidAddress("Address is empty")

    if address.lower().startswith(params.hrp + "1"):
        version, program = bech32.decode(params.hrp, address)
        if version is None:
            raise InvalidAddress(f"Invalid bech32 address: {address}")
        program = bytes(program)
        if version == 0 and len(program) == 20:
            return "p2wpkh", program
        if version == 0 and len(program) == 32:
            return "p2wsh", program
        raise InvalidAddress(f"Unsupported witness program v{version}: {address}")

    try:
        raw = base58.b58decode_check(address)
    except ValueError:
        raise InvalidAddress(f"Invalid address: {address}")
    if len(raw) != 21:
        raise InvalidAddress(f"Invalid address length: {address}")

    version, payload = raw[0], raw[1:]
    if version == params.p2pkh:
        return "p2pkh", payload
    if version == params.p2sh:
        return "p2sh", payload
    raise InvalidAddress(f"Address {address} is not valid on {params.name}")


def decode_pubkey_hash(address: str, network="testnet") -> bytes:
    """Return the 20-byte public-key hash behind a P2PKH or P2WPKH address."""
    kind, payload = decode_address(address, network)
    if kind not in ("p2pkh", "p2wpkh"):
        raise InvalidAddress(f"{address} is not a public-key-hash address")
    return payload


def address_to_output_script(address: str, network="testnet") -> bytes:
    """scriptPubKey paying to address."""
    kind, payload = decode_address(address, network)
    if kind == "p2pkh":
        return p2pkh_script(payload)
    if kind == "p2sh":
        return p2sh_script(payload)
    return witness_v0_script(payload)
