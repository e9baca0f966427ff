"""
Bitcoin swap leg for btcswap.

A BTCSwapLeg is one party's view of one HTLC: it funds the script address,
waits for the counterparty's funding, spends with the secret or refunds
after expiry, and watches the chain for the secret being revealed.

Redeem spend (IF branch):
    <signature> <pubkey> <secret> OP_TRUE

Refund spend (ELSE branch, after expiry):
    <signature> <pubkey> OP_FALSE

followed by the HTLC script itself, as the last witness item (P2WSH) or
the last scriptSig push (P2SH).
"""

import logging
from typing import List, Optional, Union

from ..config import SwapConfig
from ..core import (
    AtomicSwapLeg,
    DUST_THRESHOLD,
    Expiry,
    LegState,
    TERMINAL_LEG_STATES,
    Utxo,
    to_bytes32,
    verify_preimage,
)
from ..errors import (
    BroadcastError,
    FeeTooLowError,
    PrematureRefund,
    RejectReason,
    StateError,
    ValidationError,
)
from ..chains.provider import Provider
from ..swap.watcher import Watcher
from .address import address_to_output_script, sha256
from .script import Variant, build_htlc_script, push_data, push_minimal
from .signer import encode_signature
from .tx import SEQUENCE_FINAL, SEQUENCE_LOCKTIME_ENABLED, Transaction

log = logging.getLogger(__name__)


class BTCSwapLeg(AtomicSwapLeg):
    """
    HTLC leg on Bitcoin.

    The same parameters must be used by both parties so that they derive the
    same script address: recipient_address can redeem with the secret,
    refund_address gets the funds back after expiry.
    """

    def __init__(self, provider: Provider, secret_hash: Union[str, bytes],
                 recipient_address: str, refund_address: str, amount: int,
                 expiry: Union[int, Expiry], confirmations: Optional[int] = None,
                 poll_interval_ms: Optional[int] = None,
                 variant: Union[str, Variant, None] = None,
                 config: SwapConfig = None, watcher: Watcher = None):
        self.config = config or SwapConfig()
        self.provider = provider
        self.network = provider.network

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= DUST_THRESHOLD:
            raise ValidationError(f"Amount must be an integer above {DUST_THRESHOLD} sats, got {amount!r}")
        self.amount = amount

        self.secret_hash = to_bytes32(secret_hash, "secret hash")
        self.recipient_address = recipient_address
        self.refund_address = refund_address
        self.confirmations = self.config.confirmations if confirmations is None else confirmations
        self.poll_interval_ms = poll_interval_ms or self.config.poll_interval_ms
        self.max_fee_retries = self.config.max_fee_retries
        self.watcher = watcher or Watcher()

        self.htlc = build_htlc_script(
            self.secret_hash,
            recipient_address,
            refund_address,
            expiry,
            network=self.network,
            variant=variant or self.config.variant,
        )

        self.state = LegState.CREATED
        self.init_tx_id: Optional[str] = None
        self.funding_tx_id: Optional[str] = None
        self.redeem_tx_id: Optional[str] = None
        self.refund_tx_id: Optional[str] = None

        # Tip height when an unfunded relative leg was first checked
        self._unfunded_since: Optional[int] = None

    @property
    def script_address(self) -> str:
        return self.htlc.address

    @property
    def expiry(self) -> Expiry:
        return self.htlc.expiry

    @property
    def _interval(self) -> float:
        return self.poll_interval_ms / 1000

    def __repr__(self):
        return (f"BTCSwapLeg(address={self.script_address}, amount={self.amount}, "
                f"state={self.state.value})")

    # =========================================================================
    # Funding
    # =========================================================================

    def initiate(self) -> str:
        """
        Fund the HTLC address with amount.

        Not idempotent: each call broadcasts a new funding transaction.

        Returns:
            Funding transaction ID
        """
        tx_id = self.provider.send(self.script_address, self.amount)
        self.init_tx_id = tx_id
        if self.state == LegState.CREATED:
            self.state = LegState.INITIATED
        log.info(f"Funded HTLC {self.script_address} with {self.amount} sats: {tx_id}")
        return tx_id

    def wait_for_initiate(self) -> bool:
        """
        Wait until the HTLC is funded with enough confirmations.

        Returns:
            True once funding is observed, False if the HTLC expired first
        """
        tx_id = self.watcher.wait(
            lambda: self.provider.funding_transactions(self.script_address, self.confirmations),
            self.is_expired,
            self._interval,
            what=f"funding of {self.script_address}",
        )
        if tx_id is None:
            return False

        self.funding_tx_id = tx_id
        if self.state == LegState.CREATED:
            self.state = LegState.INITIATED
        log.info(f"HTLC {self.script_address} funded by {tx_id}")
        return True

    # =========================================================================
    # Expiry
    # =========================================================================

    def is_expired(self) -> bool:
        """
        True once the refund branch is spendable.

        Relative: the funding transaction has at least `expiry` confirmations.
        Before any funding is seen the lock is counted from the tip at the
        first check, so a wait on a leg nobody funds still ends.
        Absolute: the clock reached `expiry`.
        """
        if not self.expiry.is_relative:
            return self.watcher.clock() >= self.expiry.value

        address = self.script_address
        if self.provider.funding_transactions(address, self.expiry.value) is not None:
            return True
        if self.init_tx_id or self.funding_tx_id or self.provider.funding_transactions(address, 0):
            return False

        tip = self.provider.get_block_height()
        if self._unfunded_since is None:
            self._unfunded_since = tip
        return tip - self._unfunded_since >= self.expiry.value

    def wait_for_expiry(self) -> None:
        self.watcher.wait(
            self.is_expired,
            lambda: False,
            self._interval,
            what=f"expiry of {self.script_address}",
        )

    # =========================================================================
    # Spending
    # =========================================================================

    def redeem(self, secret: Union[str, bytes], fee: Optional[int] = None) -> str:
        """
        Spend the HTLC to recipient_address by revealing the secret.

        Args:
            secret: 32-byte preimage of secret_hash (hex or bytes)
            fee: Fee in sats (default: provider.MIN_FEE)

        Returns:
            Redeem transaction ID
        """
        self._check_not_terminal("redeem")
        if self.funding_tx_id is None:
            raise StateError("Cannot redeem before funding is observed (call wait_for_initiate)")

        secret_bytes = to_bytes32(secret, "secret")
        if sha256(secret_bytes) != self.secret_hash:
            raise ValidationError("Secret does not match secret hash")

        tx_id = self._spend(self.funding_tx_id, self.recipient_address, fee, secret_bytes)
        self.redeem_tx_id = tx_id
        self.state = LegState.REDEEMED
        log.info(f"Redeemed HTLC {self.script_address}: {tx_id}")
        return tx_id

    def refund(self, fee: Optional[int] = None) -> str:
        """
        Spend the expired HTLC back to refund_address.

        Raises:
            StateError: initiate() was never called or the leg is terminal
            PrematureRefund: the HTLC has not expired yet
        """
        self._check_not_terminal("refund")
        if self.init_tx_id is None:
            raise StateError("Cannot refund an HTLC this leg never funded")
        if not self.is_expired():
            raise PrematureRefund(
                f"HTLC {self.script_address} not expired yet ({self.expiry.kind.value} "
                f"expiry {self.expiry.value})"
            )

        tx_id = self._spend(self.init_tx_id, self.refund_address, fee, None)
        self.refund_tx_id = tx_id
        self.state = LegState.REFUNDED
        log.info(f"Refunded HTLC {self.script_address}: {tx_id}")
        return tx_id

    def wait_for_redeem(self) -> Optional[str]:
        """
        Wait for the counterparty to redeem and reveal the secret.

        Returns:
            Secret (hex), or None if the HTLC expired first
        """
        secret = self.watcher.wait(
            self._revealed_secret,
            self.is_expired,
            self._interval,
            what=f"redeem of {self.script_address}",
        )
        if secret is None:
            return None

        if self.state not in TERMINAL_LEG_STATES:
            self.state = LegState.REDEEMED
        log.info(f"Secret revealed at {self.script_address}")
        return secret

    def _revealed_secret(self) -> Optional[str]:
        secret = self.provider.get_secret(self.script_address)
        if secret is None:
            return None
        if not verify_preimage(secret, self.secret_hash):
            log.warning(f"Ignoring value revealed at {self.script_address}: does not match secret hash")
            return None
        return secret

    def _check_not_terminal(self, operation: str):
        if self.state in TERMINAL_LEG_STATES:
            raise StateError(f"Cannot {operation}: leg already {self.state.value}")

    # =========================================================================
    # Transaction construction
    # =========================================================================

    def _funding_output(self, funding_tx_id: str) -> Utxo:
        for utxo in self.provider.get_unspent(self.script_address):
            if utxo.tx_id == funding_tx_id:
                return utxo
        raise BroadcastError(
            f"Funding output {funding_tx_id} at {self.script_address} is missing or already spent",
            reason=RejectReason.ALREADY_SPENT,
        )

    def _spend(self, funding_tx_id: str, destination: str, fee: Optional[int],
               secret: Optional[bytes]) -> str:
        """Build, sign and broadcast, retrying once per allowed fee bump."""
        utxo = self._funding_output(funding_tx_id)
        fee = self.provider.MIN_FEE if fee is None else fee

        attempt = 0
        while True:
            tx = self.build_spend(utxo, destination, fee, secret)
            try:
                return self.provider.broadcast(tx)
            except FeeTooLowError as e:
                if attempt >= self.max_fee_retries:
                    raise
                attempt += 1
                log.warning(f"Fee {fee} too low for {self.script_address}, retrying with {e.min_fee}")
                fee = e.min_fee

    def build_spend(self, utxo: Utxo, destination: str, fee: int,
                    secret: Optional[bytes] = None) -> Transaction:
        """
        Build a signed transaction spending the HTLC output.

        With a secret this is a redeem (IF branch); without one it is a
        refund (ELSE branch) carrying the timelock in nSequence or nLockTime.
        """
        value = utxo.value - fee
        if value <= DUST_THRESHOLD:
            raise ValidationError(
                f"Output {value} sats after fee {fee} is below dust threshold"
            )

        tx = Transaction(version=2)
        if secret is not None:
            sequence = SEQUENCE_FINAL
        elif self.expiry.is_relative:
            sequence = self.expiry.value
        else:
            sequence = SEQUENCE_LOCKTIME_ENABLED
            tx.locktime = self.expiry.value

        txin = tx.add_input(utxo.tx_id, utxo.vout, sequence)
        tx.add_output(address_to_output_script(destination, self.network), value)

        script = self.htlc.script
        if self.htlc.variant == Variant.P2WSH:
            sighash = tx.witness_v0_sighash(0, script, utxo.value)
        else:
            sighash = tx.legacy_sighash(0, script)

        signature = encode_signature(self.provider.sign(sighash))
        pubkey = bytes.fromhex(self.provider.get_public_key())

        if secret is not None:
            stack: List[bytes] = [signature, pubkey, secret, b"\x01"]
        else:
            stack = [signature, pubkey, b""]

        if self.htlc.variant == Variant.P2WSH:
            txin.witness = stack + [script]
        else:
            txin.script_sig = b"".join(push_minimal(item) for item in stack) + push_data(script)

        return tx
