"""
Provider interface for btcswap.

A provider is the only thing a swap leg talks to: it looks up UTXOs and
funding/spending transactions, broadcasts, and signs with the party's key.
Backends implement the abstract lookups; funding (send) is shared.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core import DEFAULT_MIN_FEE, DUST_THRESHOLD, Utxo
from ..errors import FeeTooLowError, InsufficientFundsError, ValidationError
from ..htlc.address import address_to_output_script, get_network, p2pkh_script
from ..htlc.script import push_data
from ..htlc.signer import PrivateKeySigner, encode_signature
from ..htlc.tx import Transaction

log = logging.getLogger(__name__)


def select_utxos(utxos: List[Utxo], min_value: Optional[int]) -> List[Utxo]:
    """
    Pick UTXOs in order until min_value is covered.

    Raises:
        InsufficientFundsError: total value is below min_value
    """
    if not min_value:
        return list(utxos)

    total = sum(u.value for u in utxos)
    if total < min_value:
        raise InsufficientFundsError(
            f"Insufficient funds. Needed {min_value} sats, but only have {total} sats"
        )

    selected = []
    acc = 0
    for utxo in utxos:
        selected.append(utxo)
        acc += utxo.value
        if acc >= min_value:
            break
    return selected


class Provider(ABC):
    """
    Block-data and signing capability consumed by swap legs.

    Errors are raised rather than returned: ProviderError for lookups,
    BroadcastError / FeeTooLowError for rejected transactions.
    """

    MIN_FEE: int = DEFAULT_MIN_FEE

    def __init__(self, signer: PrivateKeySigner, network: str = "testnet",
                 min_fee: Optional[int] = None, max_fee_retries: int = 1):
        self.signer = signer
        self.network = get_network(network).name
        self.max_fee_retries = max_fee_retries
        if min_fee is not None:
            self.MIN_FEE = min_fee

    @property
    def address(self) -> str:
        """P2PKH address controlled by the signer (funding source)."""
        return self.signer.address(self.network)

    # =========================================================================
    # Lookups (backend specific)
    # =========================================================================

    @abstractmethod
    def get_unspent(self, address: str, min_value: Optional[int] = None) -> List[Utxo]:
        """UTXOs at address, trimmed to cover min_value when given."""

    @abstractmethod
    def get_balance(self, address: str) -> int:
        """Total unspent value at address (sats)."""

    @abstractmethod
    def funding_transactions(self, address: str, confirmations: int) -> Optional[str]:
        """Id of a tx paying address with >= confirmations, or None."""

    @abstractmethod
    def get_secret(self, address: str) -> Optional[str]:
        """Hex secret revealed by a tx spending from address, or None."""

    @abstractmethod
    def get_transaction(self, tx_id: str) -> Optional[Dict[str, Any]]:
        """Decoded tx as the backend reports it (txid, vin, vout), or None if unknown."""

    @abstractmethod
    def get_block_height(self) -> int:
        """Height of the current chain tip."""

    @abstractmethod
    def broadcast(self, tx: Transaction) -> str:
        """Submit tx. Returns its id."""

    # =========================================================================
    # Signing
    # =========================================================================

    def sign(self, sig_hash: bytes) -> bytes:
        """DER signature over sig_hash (no hashtype byte)."""
        return self.signer.sign(sig_hash)

    def get_public_key(self) -> str:
        """Compressed public key, hex."""
        return self.signer.public_key.hex()

    # =========================================================================
    # Funding
    # =========================================================================

    def send(self, address: str, amount: int, fee: Optional[int] = None) -> str:
        """
        Pay amount sats from the signer's P2PKH address to address.

        A fee-floor rejection is retried with the fee the ledger asked for,
        at most max_fee_retries times.

        Returns:
            Transaction ID (txid)
        """
        fee = self.MIN_FEE if fee is None else fee
        attempt = 0
        while True:
            tx = self.build_payment(address, amount, fee)
            try:
                tx_id = self.broadcast(tx)
            except FeeTooLowError as e:
                if attempt >= self.max_fee_retries:
                    raise
                attempt += 1
                log.warning(f"Payment fee {fee} too low, retrying with {e.min_fee}")
                fee = e.min_fee
                continue
            log.info(f"Sent {amount} sats to {address}, txid={tx_id}")
            return tx_id

    def build_payment(self, address: str, amount: int, fee: int) -> Transaction:
        """Build and sign a P2PKH-funded payment with change back to self."""
        if amount <= DUST_THRESHOLD:
            raise ValidationError(f"Amount {amount} below dust threshold")

        utxos = self.get_unspent(self.address, amount + fee)
        total = sum(u.value for u in utxos)
        if total < amount + fee:
            raise InsufficientFundsError(
                f"Insufficient balance. Balance: {total} sat, needed {amount + fee} sat"
            )

        own_script = p2pkh_script(self.signer.pubkey_hash)

        tx = Transaction(version=2)
        for utxo in utxos:
            tx.add_input(utxo.tx_id, utxo.vout)
        tx.add_output(address_to_output_script(address, self.network), amount)

        change = total - amount - fee
        if change > DUST_THRESHOLD:
            tx.add_output(own_script, change)

        pubkey = self.signer.public_key
        for i, txin in enumerate(tx.inputs):
            sig = encode_signature(self.sign(tx.legacy_sighash(i, own_script)))
            txin.script_sig = push_data(sig) + push_data(pubkey)

        return tx
