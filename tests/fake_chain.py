"""
In-memory ledger for btcswap tests.

FakeChain accepts real serialized-model transactions and enforces what the
swap relies on from Bitcoin:
- inputs exist and are spent at most once
- the relay fee floor ("min relay fee not met, X < Y")
- nLockTime finality and BIP68 relative locks
- P2PKH, P2SH and P2WSH script execution, with ECDSA signatures checked
  against the legacy / BIP143 sighash

Rejections are raised as ChainReject with node-style messages; FakeProvider
translates them exactly like the real backends do.

Median-time-past is the clock minus mtp_lag. With block_time set, blocks are
mined as the clock passes each interval, so waits measured in blocks end.
"""

import copy
import time
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from btcswap.core import LOCKTIME_THRESHOLD, Utxo
from btcswap.errors import ValidationError, rejection_from_message
from btcswap.chains.provider import Provider, select_utxos
from btcswap.htlc.address import address_to_output_script, hash160, sha256
from btcswap.htlc.script import (
    OP_CHECKLOCKTIMEVERIFY,
    OP_CHECKSEQUENCEVERIFY,
    OP_CHECKSIG,
    OP_DROP,
    OP_DUP,
    OP_ELSE,
    OP_ENDIF,
    OP_EQUAL,
    OP_EQUALVERIFY,
    OP_HASH160,
    OP_IF,
    OP_SHA256,
    decode_pushes,
    decode_script_number,
    extract_secret,
    iter_script,
)
from btcswap.htlc.signer import verify_signature
from btcswap.htlc.tx import SEQUENCE_FINAL, SIGHASH_ALL, Transaction

SEQUENCE_DISABLE_FLAG = 1 << 31
SEQUENCE_TYPE_FLAG = 1 << 22
SEQUENCE_MASK = 0xffff

SCRIPT_FAILED = "mandatory-script-verify-flag-failed"


class ChainReject(Exception):
    """Transaction rejected by the fake ledger."""


class ScriptFailure(Exception):
    pass


@dataclass
class Output:
    tx_id: str
    vout: int
    value: int
    script_pubkey: bytes


def _cast_bool(value: bytes) -> bool:
    for i, b in enumerate(value):
        if b != 0:
            # Negative zero is false
            return not (i == len(value) - 1 and b == 0x80)
    return False


class FakeClock:
    """Clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1_700_000_000):
        self.now = start

    def time(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.now += seconds

    def advance(self, seconds: float):
        self.now += seconds


class FakeChain:
    """Single-node ledger. Every method is thread-safe."""

    def __init__(self, network: str = "regtest", min_relay_fee: int = 300,
                 clock: Callable[[], float] = time.time, auto_mine: bool = True,
                 block_time: Optional[float] = None, mtp_lag: float = 0):
        self.network = network
        self.min_relay_fee = min_relay_fee
        self.clock = clock
        self.auto_mine = auto_mine
        self.block_time = block_time
        self.mtp_lag = mtp_lag
        self._next_block_at = clock() + block_time if block_time else None

        self.height = 100
        self.outputs: Dict[Tuple[str, int], Output] = {}
        self.unspent: Dict[Tuple[str, int], Output] = {}
        self.txs: Dict[str, Transaction] = {}
        self.tx_height: Dict[str, Optional[int]] = {}
        self.history: List[str] = []
        self.broadcasts: List[str] = []

        self._faucet_counter = 0
        self._lock = threading.RLock()

    # =========================================================================
    # Blocks
    # =========================================================================

    def mine(self, blocks: int = 1):
        with self._lock:
            for _ in range(blocks):
                self.height += 1
                for tx_id, height in self.tx_height.items():
                    if height is None:
                        self.tx_height[tx_id] = self.height

    def _tick(self):
        if self.block_time is None:
            return
        while self.clock() >= self._next_block_at:
            self.mine()
            self._next_block_at += self.block_time

    def tip(self) -> int:
        with self._lock:
            self._tick()
            return self.height

    def median_time_past(self) -> float:
        return self.clock() - self.mtp_lag

    def confirmations(self, tx_id: str) -> int:
        with self._lock:
            height = self.tx_height.get(tx_id)
            if height is None:
                return 0
            return self.height - height + 1

    def faucet(self, address: str, value: int) -> str:
        """Credit address out of thin air (one confirmation)."""
        with self._lock:
            self._faucet_counter += 1
            tx = Transaction(version=1, locktime=self._faucet_counter)
            tx.add_output(address_to_output_script(address, self.network), value)
            tx_id = tx.txid()
            self._apply(tx_id, tx)
            self.height += 1
            self.tx_height[tx_id] = self.height
            return tx_id

    # =========================================================================
    # Acceptance
    # =========================================================================

    def submit(self, tx: Transaction) -> str:
        with self._lock:
            self._tick()
            tx = copy.deepcopy(tx)
            tx_id = tx.txid()
            if tx_id in self.txs:
                raise ChainReject("transaction already in block chain")

            self._check_final(tx)

            input_total = 0
            for txin in tx.inputs:
                prev = self.unspent.get((txin.tx_id, txin.vout))
                if prev is None:
                    raise ChainReject("bad-txns-inputs-missingorspent")
                input_total += prev.value
            self._check_sequence_locks(tx)

            fee = input_total - tx.total_output()
            if fee < 0:
                raise ChainReject("bad-txns-in-belowout")
            if fee < self.min_relay_fee:
                raise ChainReject(f"min relay fee not met, {fee} < {self.min_relay_fee}")

            for index, txin in enumerate(tx.inputs):
                prev = self.unspent[(txin.tx_id, txin.vout)]
                try:
                    self._verify_input(tx, index, prev)
                except (ScriptFailure, ValidationError, IndexError) as e:
                    raise ChainReject(f"{SCRIPT_FAILED} ({e})")

            for txin in tx.inputs:
                del self.unspent[(txin.tx_id, txin.vout)]
            self._apply(tx_id, tx)
            self.broadcasts.append(tx_id)
            if self.auto_mine:
                self.height += 1
                self.tx_height[tx_id] = self.height
            else:
                self.tx_height[tx_id] = None
            return tx_id

    def _apply(self, tx_id: str, tx: Transaction):
        self.txs[tx_id] = tx
        self.history.append(tx_id)
        for vout, txout in enumerate(tx.outputs):
            out = Output(tx_id, vout, txout.value, txout.script_pubkey)
            self.outputs[(tx_id, vout)] = out
            self.unspent[(tx_id, vout)] = out

    def _check_final(self, tx: Transaction):
        if tx.locktime == 0:
            return
        if tx.locktime < LOCKTIME_THRESHOLD:
            reached = tx.locktime <= self.height + 1
        else:
            reached = tx.locktime <= self.median_time_past()
        if reached:
            return
        if all(txin.sequence == SEQUENCE_FINAL for txin in tx.inputs):
            return
        raise ChainReject("non-final")

    def _check_sequence_locks(self, tx: Transaction):
        if tx.version < 2:
            return
        for txin in tx.inputs:
            if txin.sequence & SEQUENCE_DISABLE_FLAG:
                continue
            if txin.sequence & SEQUENCE_TYPE_FLAG:
                raise ChainReject("non-BIP68-final (time-based locks unsupported)")
            required = txin.sequence & SEQUENCE_MASK
            if required and self.confirmations(txin.tx_id) < required:
                raise ChainReject("non-BIP68-final")

    # =========================================================================
    # Script execution
    # =========================================================================

    def _verify_input(self, tx: Transaction, index: int, prev: Output):
        txin = tx.inputs[index]
        spk = prev.script_pubkey

        if len(spk) == 34 and spk[0] == 0x00 and spk[1] == 0x20:
            if not txin.witness:
                raise ScriptFailure("witness program without witness")
            script = txin.witness[-1]
            if sha256(script) != spk[2:]:
                raise ScriptFailure("witness program hash mismatch")
            stack = list(txin.witness[:-1])
            sighash = lambda: tx.witness_v0_sighash(index, script, prev.value)
            stack = self._run(script, stack, tx, index, sighash)
            if len(stack) != 1 or not _cast_bool(stack[0]):
                raise ScriptFailure("witness script did not leave a single true element")
            return

        if len(spk) == 23 and spk[0] == 0xa9 and spk[-1] == 0x87:
            pushes = decode_pushes(txin.script_sig)
            if not pushes:
                raise ScriptFailure("empty scriptSig")
            script = pushes[-1]
            if hash160(script) != spk[2:22]:
                raise ScriptFailure("redeem script hash mismatch")
            sighash = lambda: tx.legacy_sighash(index, script)
            stack = self._run(script, pushes[:-1], tx, index, sighash)
        elif len(spk) == 25 and spk[:3] == bytes([0x76, 0xa9, 0x14]):
            sighash = lambda: tx.legacy_sighash(index, spk)
            stack = self._run(spk, decode_pushes(txin.script_sig), tx, index, sighash)
        else:
            raise ScriptFailure("unsupported output type")

        if not stack or not _cast_bool(stack[-1]):
            raise ScriptFailure("false top stack element")

    def _run(self, script: bytes, stack: List[bytes], tx: Transaction, index: int,
             sighash: Callable[[], bytes]) -> List[bytes]:
        txin = tx.inputs[index]
        branches: List[bool] = []

        for op, data in iter_script(script):
            executing = all(branches)

            if op == OP_IF:
                branches.append(_cast_bool(stack.pop()) if executing else False)
                continue
            if op == OP_ELSE:
                if not branches:
                    raise ScriptFailure("OP_ELSE without OP_IF")
                branches[-1] = not branches[-1]
                continue
            if op == OP_ENDIF:
                if not branches:
                    raise ScriptFailure("OP_ENDIF without OP_IF")
                branches.pop()
                continue
            if not executing:
                continue

            if data is not None:
                stack.append(data)
            elif op == OP_SHA256:
                stack.append(sha256(stack.pop()))
            elif op == OP_HASH160:
                stack.append(hash160(stack.pop()))
            elif op == OP_DUP:
                stack.append(stack[-1])
            elif op == OP_DROP:
                stack.pop()
            elif op in (OP_EQUAL, OP_EQUALVERIFY):
                equal = stack.pop() == stack.pop()
                if op == OP_EQUALVERIFY:
                    if not equal:
                        raise ScriptFailure("OP_EQUALVERIFY failed")
                else:
                    stack.append(b"\x01" if equal else b"")
            elif op == OP_CHECKSIG:
                pubkey = stack.pop()
                sig = stack.pop()
                ok = bool(sig) and sig[-1] == SIGHASH_ALL and \
                    verify_signature(pubkey, sig[:-1], sighash())
                stack.append(b"\x01" if ok else b"")
            elif op == OP_CHECKLOCKTIMEVERIFY:
                self._check_cltv(tx, txin, decode_script_number(stack[-1]))
            elif op == OP_CHECKSEQUENCEVERIFY:
                self._check_csv(tx, txin, decode_script_number(stack[-1]))
            else:
                raise ScriptFailure(f"unsupported opcode {op:#x}")

        if branches:
            raise ScriptFailure("unbalanced conditional")
        return stack

    @staticmethod
    def _check_cltv(tx, txin, locktime: int):
        if locktime < 0:
            raise ScriptFailure("negative locktime")
        if (locktime < LOCKTIME_THRESHOLD) != (tx.locktime < LOCKTIME_THRESHOLD):
            raise ScriptFailure("locktime type mismatch")
        if tx.locktime < locktime:
            raise ScriptFailure("locktime requirement not satisfied")
        if txin.sequence == SEQUENCE_FINAL:
            raise ScriptFailure("input is final")

    @staticmethod
    def _check_csv(tx, txin, sequence: int):
        if sequence < 0:
            raise ScriptFailure("negative sequence")
        if sequence & SEQUENCE_DISABLE_FLAG:
            return
        if tx.version < 2:
            raise ScriptFailure("CSV requires version 2")
        if txin.sequence & SEQUENCE_DISABLE_FLAG:
            raise ScriptFailure("relative lock disabled on input")
        if (sequence & SEQUENCE_TYPE_FLAG) != (txin.sequence & SEQUENCE_TYPE_FLAG):
            raise ScriptFailure("relative lock type mismatch")
        if (txin.sequence & SEQUENCE_MASK) < (sequence & SEQUENCE_MASK):
            raise ScriptFailure("relative lock not satisfied")

    # =========================================================================
    # Queries
    # =========================================================================

    def unspent_for(self, script_pubkey: bytes) -> List[Utxo]:
        with self._lock:
            self._tick()
            return [
                Utxo(out.tx_id, out.vout, out.value, self.confirmations(out.tx_id))
                for out in self.unspent.values()
                if out.script_pubkey == script_pubkey
            ]

    def funding_for(self, script_pubkey: bytes, confirmations: int) -> Optional[str]:
        with self._lock:
            self._tick()
            for tx_id in self.history:
                tx = self.txs[tx_id]
                pays = any(o.script_pubkey == script_pubkey for o in tx.outputs)
                spends = any(
                    self.outputs[(i.tx_id, i.vout)].script_pubkey == script_pubkey
                    for i in tx.inputs
                )
                if pays and not spends and self.confirmations(tx_id) >= confirmations:
                    return tx_id
            return None

    def secret_for(self, script_pubkey: bytes) -> Optional[bytes]:
        with self._lock:
            self._tick()
            for tx_id in self.history:
                for txin in self.txs[tx_id].inputs:
                    if self.outputs[(txin.tx_id, txin.vout)].script_pubkey != script_pubkey:
                        continue
                    stack = txin.witness or decode_pushes(txin.script_sig)
                    secret = extract_secret(stack)
                    if secret is not None:
                        return secret
            return None

    def balance(self, address: str) -> int:
        script = address_to_output_script(address, self.network)
        return sum(u.value for u in self.unspent_for(script))


class FakeProvider(Provider):
    """Provider over a FakeChain, translating rejections like a real backend."""

    def __init__(self, chain: FakeChain, signer, min_fee: int = None,
                 max_fee_retries: int = 1):
        super().__init__(signer, network=chain.network, min_fee=min_fee,
                         max_fee_retries=max_fee_retries)
        self.chain = chain

    def _script(self, address: str) -> bytes:
        return address_to_output_script(address, self.network)

    def get_unspent(self, address, min_value=None):
        return select_utxos(self.chain.unspent_for(self._script(address)), min_value)

    def get_balance(self, address):
        return sum(u.value for u in self.get_unspent(address))

    def funding_transactions(self, address, confirmations):
        return self.chain.funding_for(self._script(address), confirmations)

    def get_secret(self, address):
        secret = self.chain.secret_for(self._script(address))
        return secret.hex() if secret is not None else None

    def get_transaction(self, tx_id):
        tx = self.chain.txs.get(tx_id)
        if tx is None:
            return None
        return {
            "txid": tx_id,
            "confirmations": self.chain.confirmations(tx_id),
            "vin": [{"txid": i.tx_id, "vout": i.vout} for i in tx.inputs],
            "vout": [{"value": o.value, "scriptpubkey": o.script_pubkey.hex()} for o in tx.outputs],
        }

    def get_block_height(self):
        return self.chain.tip()

    def broadcast(self, tx):
        try:
            return self.chain.submit(tx)
        except ChainReject as e:
            raise rejection_from_message(str(e))
