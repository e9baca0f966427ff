#!/usr/bin/env python3
"""
Transaction and Signer Tests

Serialization, txid, both sighash algorithms, and the ECDSA signer.

Usage:
    python -m pytest tests/test_tx.py
"""

import sys
import os
import unittest

# Add package to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from ecdsa import SECP256k1
from ecdsa.util import sigdecode_der

from btcswap.errors import ValidationError
from btcswap.htlc.signer import (
    PrivateKeySigner,
    decode_wif,
    encode_signature,
    encode_wif,
    verify_signature,
)
from btcswap.htlc.tx import (
    SEQUENCE_FINAL,
    Transaction,
    double_sha256,
    var_int,
)

PREV_TXID = "11" * 32
P2PKH_SCRIPT = bytes.fromhex("76a914" + "ab" * 20 + "88ac")


def _tx() -> Transaction:
    tx = Transaction(version=2)
    tx.add_input(PREV_TXID, 1)
    tx.add_output(P2PKH_SCRIPT, 50_000)
    return tx


class TestVarInt(unittest.TestCase):

    def test_boundaries(self):
        self.assertEqual(var_int(0), b"\x00")
        self.assertEqual(var_int(0xfc), b"\xfc")
        self.assertEqual(var_int(0xfd), b"\xfd\xfd\x00")
        self.assertEqual(var_int(0xffff), b"\xfd\xff\xff")
        self.assertEqual(var_int(0x10000), b"\xfe\x00\x00\x01\x00")
        self.assertEqual(var_int(0x100000000), b"\xff" + (0x100000000).to_bytes(8, "little"))


class TestTransaction(unittest.TestCase):

    def test_legacy_layout(self):
        raw = _tx().serialize()
        self.assertEqual(raw[:4], b"\x02\x00\x00\x00")
        self.assertEqual(raw[4], 1)                          # input count
        self.assertEqual(raw[5:37], bytes.fromhex(PREV_TXID)[::-1])
        self.assertEqual(raw[37:41], b"\x01\x00\x00\x00")    # vout
        self.assertEqual(raw[41], 0)                         # empty scriptSig
        self.assertEqual(raw[42:46], b"\xff\xff\xff\xff")    # sequence
        self.assertEqual(raw[-4:], b"\x00\x00\x00\x00")      # locktime
        self.assertEqual(len(raw), 4 + 1 + 41 + 1 + 8 + 1 + 25 + 4)

    def test_witness_layout_and_txid(self):
        tx = _tx()
        txid_before = tx.txid()
        tx.inputs[0].witness = [b"\x01" * 71, b"\x02" * 33]

        raw = tx.serialize()
        self.assertEqual(raw[4:6], b"\x00\x01")
        self.assertNotEqual(raw, tx.serialize(include_witness=False))
        self.assertEqual(tx.txid(), txid_before)

    def test_txid_is_reversed_double_sha(self):
        tx = _tx()
        expected = double_sha256(tx.serialize(include_witness=False))[::-1].hex()
        self.assertEqual(tx.txid(), expected)

    def test_locktime_serialized(self):
        tx = _tx()
        tx.locktime = 1_700_003_600
        self.assertEqual(tx.serialize()[-4:], (1_700_003_600).to_bytes(4, "little"))


class TestSighash(unittest.TestCase):

    def test_legacy_ignores_existing_script_sigs(self):
        tx = _tx()
        tx.add_input("22" * 32, 0)
        before = tx.legacy_sighash(0, P2PKH_SCRIPT)

        tx.inputs[0].script_sig = b"\x51"
        tx.inputs[1].script_sig = b"\x52"
        self.assertEqual(tx.legacy_sighash(0, P2PKH_SCRIPT), before)
        self.assertNotEqual(tx.legacy_sighash(1, P2PKH_SCRIPT), before)

    def test_legacy_commits_to_script_code(self):
        tx = _tx()
        self.assertNotEqual(
            tx.legacy_sighash(0, P2PKH_SCRIPT),
            tx.legacy_sighash(0, P2PKH_SCRIPT + b"\x75"),
        )

    def test_legacy_does_not_mutate(self):
        tx = _tx()
        tx.inputs[0].script_sig = b"\x51"
        tx.legacy_sighash(0, P2PKH_SCRIPT)
        self.assertEqual(tx.inputs[0].script_sig, b"\x51")

    def test_witness_commits_to_value_and_sequence(self):
        tx = _tx()
        base = tx.witness_v0_sighash(0, P2PKH_SCRIPT, 100_000)
        self.assertNotEqual(tx.witness_v0_sighash(0, P2PKH_SCRIPT, 100_001), base)

        tx.inputs[0].sequence = 6
        self.assertNotEqual(tx.witness_v0_sighash(0, P2PKH_SCRIPT, 100_000), base)

    def test_witness_ignores_witness_data(self):
        tx = _tx()
        base = tx.witness_v0_sighash(0, P2PKH_SCRIPT, 100_000)
        tx.inputs[0].witness = [b"\x01"]
        self.assertEqual(tx.witness_v0_sighash(0, P2PKH_SCRIPT, 100_000), base)

    def test_unsupported_hashtype(self):
        with self.assertRaises(ValueError):
            _tx().legacy_sighash(0, P2PKH_SCRIPT, hashtype=0x02)


class TestSigner(unittest.TestCase):

    def setUp(self):
        self.signer = PrivateKeySigner.from_hex("00" * 31 + "01")
        self.sighash = double_sha256(b"btcswap")

    def test_sign_and_verify(self):
        der = self.signer.sign(self.sighash)
        self.assertTrue(verify_signature(self.signer.public_key, der, self.sighash))
        self.assertFalse(verify_signature(self.signer.public_key, der, double_sha256(b"other")))

    def test_deterministic_low_s(self):
        der = self.signer.sign(self.sighash)
        self.assertEqual(der, self.signer.sign(self.sighash))
        _, s = sigdecode_der(der, SECP256k1.order)
        self.assertLessEqual(s, SECP256k1.order // 2)

    def test_encode_signature_appends_hashtype(self):
        der = self.signer.sign(self.sighash)
        self.assertEqual(encode_signature(der), der + b"\x01")

    def test_rejects_bad_sighash_length(self):
        with self.assertRaises(ValidationError):
            self.signer.sign(b"\x00" * 31)

    def test_rejects_bad_keys(self):
        with self.assertRaises(ValidationError):
            PrivateKeySigner(b"\x01" * 31)
        with self.assertRaises(ValidationError):
            PrivateKeySigner(b"\x00" * 32)
        with self.assertRaises(ValidationError):
            PrivateKeySigner.from_hex("not hex")

    def test_wif_vectors(self):
        mainnet = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
        testnet = "cMahea7zqjxrtgAbB7LSGbcQUr1uX1ojuat9jZodMN87JcbXMTcA"
        key = (1).to_bytes(32, "big")

        self.assertEqual(decode_wif(mainnet), (key, True))
        self.assertEqual(decode_wif(testnet), (key, True))
        self.assertEqual(encode_wif(key, "mainnet"), mainnet)
        self.assertEqual(encode_wif(key, "testnet"), testnet)
        self.assertEqual(
            PrivateKeySigner.from_wif(testnet).public_key,
            self.signer.public_key,
        )

    def test_invalid_wif(self):
        with self.assertRaises(ValidationError):
            decode_wif("KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWm")

    def test_generate(self):
        a = PrivateKeySigner.generate()
        b = PrivateKeySigner.generate()
        self.assertEqual(len(a.public_key), 33)
        self.assertNotEqual(a.public_key, b.public_key)

    def test_sequence_default(self):
        self.assertEqual(_tx().inputs[0].sequence, SEQUENCE_FINAL)


if __name__ == "__main__":
    unittest.main()
