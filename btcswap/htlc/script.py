"""
HTLC script construction for btcswap.

HTLC Script Structure (both variants):
    OP_IF
        OP_SHA256 <secret_hash> OP_EQUALVERIFY
        OP_DUP OP_HASH160 <redeemer_pkh>
    OP_ELSE
        <expiry> OP_CHECKSEQUENCEVERIFY OP_DROP     (relative lock)
        <expiry> OP_CHECKLOCKTIMEVERIFY OP_DROP     (absolute lock)
        OP_DUP OP_HASH160 <initiator_pkh>
    OP_ENDIF
    OP_EQUALVERIFY OP_CHECKSIG

To redeem (with secret):
    <signature> <pubkey> <secret> OP_TRUE

To refund (after expiry):
    <signature> <pubkey> OP_FALSE

The P2SH variant commits to HASH160(script) and spends through scriptSig;
the P2WSH variant commits to SHA256(script) and spends through the witness.
"""

import struct
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from ..core import Expiry, as_expiry, to_bytes32
from ..errors import ValidationError
from .address import decode_pubkey_hash, get_network, p2sh_address, p2wsh_address

log = logging.getLogger(__name__)


# Bitcoin Script opcodes
OP_0 = 0x00
OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_1 = 0x51
OP_TRUE = 0x51
OP_16 = 0x60
OP_IF = 0x63
OP_ELSE = 0x67
OP_ENDIF = 0x68
OP_DROP = 0x75
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_SHA256 = 0xa8
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKLOCKTIMEVERIFY = 0xb1
OP_CHECKSEQUENCEVERIFY = 0xb2

OPCODES = {
    "OP_0": OP_0,
    "OP_FALSE": OP_FALSE,
    "OP_1NEGATE": OP_1NEGATE,
    "OP_TRUE": OP_TRUE,
    "OP_IF": OP_IF,
    "OP_ELSE": OP_ELSE,
    "OP_ENDIF": OP_ENDIF,
    "OP_DROP": OP_DROP,
    "OP_DUP": OP_DUP,
    "OP_EQUAL": OP_EQUAL,
    "OP_EQUALVERIFY": OP_EQUALVERIFY,
    "OP_SHA256": OP_SHA256,
    "OP_HASH160": OP_HASH160,
    "OP_CHECKSIG": OP_CHECKSIG,
    "OP_CHECKLOCKTIMEVERIFY": OP_CHECKLOCKTIMEVERIFY,
    "OP_CHECKSEQUENCEVERIFY": OP_CHECKSEQUENCEVERIFY,
}
OPCODES.update({f"OP_{n}": OP_1 + n - 1 for n in range(1, 17)})


class Variant(Enum):
    """Address derivation / spending serialization for the HTLC."""
    P2SH = "p2sh"       # legacy: HASH160 commitment, scriptSig spend
    P2WSH = "p2wsh"     # witness: SHA256 commitment, witness spend


def as_variant(variant: Union[str, Variant]) -> Variant:
    if isinstance(variant, Variant):
        return variant
    try:
        return Variant(str(variant).lower())
    except ValueError:
        raise ValidationError(f"Unknown script variant: {variant!r}")


# =============================================================================
# Encoding
# =============================================================================

def push_data(data: bytes) -> bytes:
    """Create push data opcode for Bitcoin script."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    elif length <= 0xff:
        return bytes([OP_PUSHDATA1, length]) + data
    elif length <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack('<H', length) + data
    else:
        return bytes([OP_PUSHDATA4]) + struct.pack('<I', length) + data


def push_minimal(data: bytes) -> bytes:
    """Push data using the smallest encoding (OP_0, OP_1..OP_16, OP_1NEGATE)."""
    if len(data) == 0:
        return bytes([OP_0])
    if len(data) == 1 and 1 <= data[0] <= 16:
        return bytes([OP_1 + data[0] - 1])
    if data == b"\x81":
        return bytes([OP_1NEGATE])
    return push_data(data)


def encode_script_number(n: int) -> bytes:
    """Minimal little-endian script number with sign bit."""
    if n == 0:
        return b""
    negative = n < 0
    abs_n = abs(n)
    result = []
    while abs_n:
        result.append(abs_n & 0xff)
        abs_n >>= 8
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80
    return bytes(result)


def decode_script_number(data: bytes) -> int:
    """Inverse of encode_script_number."""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def push_int(n: int) -> bytes:
    """Push integer to script (for timelocks)."""
    return push_minimal(encode_script_number(n))


def compile_asm(asm: str) -> bytes:
    """
    Compile whitespace-separated script mnemonics.

    OP_* tokens map to opcodes; anything else must be hex and is pushed
    with the minimal encoding.
    """
    script = b""
    for token in asm.split():
        if token in OPCODES:
            script += bytes([OPCODES[token]])
            continue
        try:
            data = bytes.fromhex(token)
        except ValueError:
            raise ValidationError(f"Invalid script token: {token!r}")
        script += push_minimal(data)
    return script


# =============================================================================
# Decoding
# =============================================================================

def iter_script(script: bytes) -> Iterator[Tuple[int, Optional[bytes]]]:
    """
    Walk a script.

    Yields (opcode, data) where data is the pushed bytes for push opcodes
    (including OP_0 and OP_1..OP_16) and None for everything else.
    """
    pos = 0
    end = len(script)
    while pos < end:
        op = script[pos]
        pos += 1
        if op == OP_0:
            yield op, b""
            continue
        if op < OP_PUSHDATA1:
            length = op
        elif op == OP_PUSHDATA1:
            length = script[pos]
            pos += 1
        elif op == OP_PUSHDATA2:
            length = struct.unpack('<H', script[pos:pos + 2])[0]
            pos += 2
        elif op == OP_PUSHDATA4:
            length = struct.unpack('<I', script[pos:pos + 4])[0]
            pos += 4
        elif op == OP_1NEGATE:
            yield op, b"\x81"
            continue
        elif OP_1 <= op <= OP_16:
            yield op, bytes([op - OP_1 + 1])
            continue
        else:
            yield op, None
            continue
        if pos + length > end:
            raise ValidationError("Script push runs past end of script")
        yield op, script[pos:pos + length]
        pos += length


def decode_pushes(script: bytes) -> List[bytes]:
    """Return the pushed items of a push-only script (e.g. a scriptSig)."""
    items = []
    for op, data in iter_script(script):
        if data is None:
            raise ValidationError(f"Script is not push-only (opcode {op:#x})")
        items.append(data)
    return items


def extract_secret(stack: List[bytes]) -> Optional[bytes]:
    """
    Extract the revealed secret from an HTLC spending stack.

    Expected stack for redeem (trailing script optional):
        [0] <signature>
        [1] <pubkey>
        [2] <secret>
        [3] <01> (selects IF branch)
        [4] <script>

    Returns None for refunds and anything else.
    """
    if len(stack) not in (4, 5):
        return None
    if stack[3] != b"\x01":
        log.debug("Not a redeem stack (refund branch)")
        return None
    secret = stack[2]
    if len(secret) != 32:
        return None
    return secret


# =============================================================================
# ScriptBuilder
# =============================================================================

@dataclass(frozen=True)
class HtlcScript:
    """Compiled HTLC script and the address funding it."""
    script: bytes
    address: str
    variant: Variant
    expiry: Expiry
    network: str

    @property
    def script_hex(self) -> str:
        return self.script.hex()


def build_htlc_asm(secret_hash: bytes, redeemer_pkh: bytes,
                   initiator_pkh: bytes, expiry: Expiry) -> str:
    lock_op = "OP_CHECKSEQUENCEVERIFY" if expiry.is_relative else "OP_CHECKLOCKTIMEVERIFY"
    return f"""
        OP_IF
            OP_SHA256
            {secret_hash.hex()}
            OP_EQUALVERIFY
            OP_DUP
            OP_HASH160
            {redeemer_pkh.hex()}
        OP_ELSE
            {encode_script_number(expiry.value).hex()}
            {lock_op}
            OP_DROP
            OP_DUP
            OP_HASH160
            {initiator_pkh.hex()}
        OP_ENDIF
        OP_EQUALVERIFY
        OP_CHECKSIG
    """


def build_htlc_script(secret_hash: Union[str, bytes], redeemer_address: str,
                      initiator_address: str, expiry: Union[int, Expiry],
                      network: str = "testnet",
                      variant: Union[str, Variant] = Variant.P2WSH) -> HtlcScript:
    """
    Build the HTLC script and its funding address.

    Pure and deterministic: identical inputs always give identical bytes.

    Args:
        secret_hash: SHA256 of the secret (32 bytes, hex or bytes)
        redeemer_address: P2PKH/P2WPKH address allowed to spend with the secret
        initiator_address: P2PKH/P2WPKH address allowed to refund after expiry
        expiry: Relative confirmation count (int) or Expiry
        network: mainnet, testnet, signet or regtest
        variant: P2WSH (default) or P2SH

    Raises:
        InvalidAddress: either address is empty or undecodable on network
        ValidationError: malformed secret hash or expiry
    """
    params = get_network(network)
    variant = as_variant(variant)
    expiry = as_expiry(expiry)
    hash_bytes = to_bytes32(secret_hash, "secret hash")

    redeemer_pkh = decode_pubkey_hash(redeemer_address, params)
    initiator_pkh = decode_pubkey_hash(initiator_address, params)

    script = compile_asm(build_htlc_asm(hash_bytes, redeemer_pkh, initiator_pkh, expiry))

    if variant == Variant.P2SH:
        address = p2sh_address(script, params)
    else:
        address = p2wsh_address(script, params)

    return HtlcScript(
        script=script,
        address=address,
        variant=variant,
        expiry=expiry,
        network=params.name,
    )
