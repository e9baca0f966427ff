"""
Minimal Bitcoin transaction model for HTLC spends.

Only what redeem/refund/funding transactions need: serialization with and
without witness, txid, and the two signature hash algorithms (legacy and
BIP143 witness v0).
"""

import copy
import hashlib
import struct
from dataclasses import dataclass, field
from typing import List

# Sighash types
SIGHASH_ALL = 0x01

SEQUENCE_FINAL = 0xffffffff
SEQUENCE_LOCKTIME_ENABLED = 0xfffffffe


def double_sha256(data: bytes) -> bytes:
    """Double SHA256 hash."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def var_int(n: int) -> bytes:
    """Encode variable length integer (compact size)."""
    if n < 0xfd:
        return bytes([n])
    elif n <= 0xffff:
        return bytes([0xfd]) + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return bytes([0xfe]) + struct.pack('<I', n)
    else:
        return bytes([0xff]) + struct.pack('<Q', n)


def var_bytes(data: bytes) -> bytes:
    return var_int(len(data)) + data


def txid_to_bytes(tx_id: str) -> bytes:
    """Display txid (big-endian hex) to internal byte order."""
    return bytes.fromhex(tx_id)[::-1]


@dataclass
class TxIn:
    tx_id: str
    vout: int
    sequence: int = SEQUENCE_FINAL
    script_sig: bytes = b""
    witness: List[bytes] = field(default_factory=list)

    def outpoint(self) -> bytes:
        return txid_to_bytes(self.tx_id) + struct.pack('<I', self.vout)

    def serialize(self, script_sig: bytes = None) -> bytes:
        script = self.script_sig if script_sig is None else script_sig
        return self.outpoint() + var_bytes(script) + struct.pack('<I', self.sequence)


@dataclass
class TxOut:
    value: int              # sats
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack('<Q', self.value) + var_bytes(self.script_pubkey)


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    def add_input(self, tx_id: str, vout: int, sequence: int = SEQUENCE_FINAL) -> TxIn:
        txin = TxIn(tx_id=tx_id, vout=vout, sequence=sequence)
        self.inputs.append(txin)
        return txin

    def add_output(self, script_pubkey: bytes, value: int) -> TxOut:
        txout = TxOut(value=value, script_pubkey=script_pubkey)
        self.outputs.append(txout)
        return txout

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize the transaction.

        Non-segwit: [version] [inputs] [outputs] [locktime]
        Segwit:     [version] [0x00 0x01] [inputs] [outputs] [witness] [locktime]
        """
        segwit = include_witness and self.has_witness

        tx = struct.pack('<I', self.version)
        if segwit:
            tx += bytes([0x00, 0x01])

        tx += var_int(len(self.inputs))
        for txin in self.inputs:
            tx += txin.serialize()

        tx += var_int(len(self.outputs))
        for txout in self.outputs:
            tx += txout.serialize()

        if segwit:
            for txin in self.inputs:
                tx += var_int(len(txin.witness))
                for item in txin.witness:
                    tx += var_bytes(item)

        tx += struct.pack('<I', self.locktime)
        return tx

    def to_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        """Transaction id (display byte order, witness excluded)."""
        return double_sha256(self.serialize(include_witness=False))[::-1].hex()

    def total_output(self) -> int:
        return sum(txout.value for txout in self.outputs)

    # =========================================================================
    # Signature hashes
    # =========================================================================

    def legacy_sighash(self, index: int, script_code: bytes,
                       hashtype: int = SIGHASH_ALL) -> bytes:
        """
        Pre-segwit signature hash (SIGHASH_ALL).

        Every scriptSig is blanked except the signed input, which carries
        script_code (the redeem script for P2SH, the scriptPubKey for P2PKH).
        """
        if hashtype != SIGHASH_ALL:
            raise ValueError(f"Unsupported sighash type: {hashtype:#x}")
        if index >= len(self.inputs):
            raise IndexError(f"Input index {index} out of range")

        tx = copy.deepcopy(self)
        for i, txin in enumerate(tx.inputs):
            txin.script_sig = script_code if i == index else b""
            txin.witness = []

        preimage = tx.serialize(include_witness=False) + struct.pack('<I', hashtype)
        return double_sha256(preimage)

    def witness_v0_sighash(self, index: int, script_code: bytes, value: int,
                           hashtype: int = SIGHASH_ALL) -> bytes:
        """
        Calculate BIP143 sighash for witness v0 (SIGHASH_ALL).

        https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
        """
        if hashtype != SIGHASH_ALL:
            raise ValueError(f"Unsupported sighash type: {hashtype:#x}")
        txin = self.inputs[index]

        hash_prevouts = double_sha256(b"".join(i.outpoint() for i in self.inputs))
        hash_sequence = double_sha256(
            b"".join(struct.pack('<I', i.sequence) for i in self.inputs)
        )
        hash_outputs = double_sha256(b"".join(o.serialize() for o in self.outputs))

        preimage = struct.pack('<I', self.version)
        preimage += hash_prevouts
        preimage += hash_sequence
        preimage += txin.outpoint()
        preimage += var_bytes(script_code)
        preimage += struct.pack('<Q', value)
        preimage += struct.pack('<I', txin.sequence)
        preimage += hash_outputs
        preimage += struct.pack('<I', self.locktime)
        preimage += struct.pack('<I', hashtype)

        return double_sha256(preimage)
