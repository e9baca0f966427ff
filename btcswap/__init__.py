"""
btcswap - Bitcoin HTLC Atomic Swap Engine

Builds HTLC scripts and funding addresses, signs redeem/refund spends, and
runs the two-party polling state machine that swaps BTC against a mirrored
leg on another ledger.

Usage:
    from btcswap import BTCSwapLeg, EsploraProvider, PrivateKeySigner, SwapExecutor
    from btcswap import Expiry, generate_secret

    secret, secret_hash = generate_secret()
    provider = EsploraProvider(PrivateKeySigner.from_wif(wif))

    # Our HTLC: counterparty redeems with the secret, we refund after expiry
    native = BTCSwapLeg(provider, secret_hash, their_address, provider.address,
                        amount=100000, expiry=Expiry.blocks(144))

    outcome = SwapExecutor().execute_as_initiator(native, foreign_leg, secret)
"""

from .core import (
    AtomicSwapLeg,
    Expiry,
    LegState,
    LockKind,
    SwapState,
    Utxo,
    generate_secret,
    verify_preimage,
    btc_to_sats,
    sats_to_btc,
)
from .config import SwapConfig
from .errors import (
    SwapError,
    ValidationError,
    InvalidAddress,
    ProviderError,
    MalformedResponseError,
    InsufficientFundsError,
    BroadcastError,
    FeeTooLowError,
    RejectReason,
    StateError,
    PrematureRefund,
    WatchCancelled,
)

from .htlc import BTCSwapLeg, HtlcScript, PrivateKeySigner, Variant, build_htlc_script
from .chains import Provider, EsploraProvider, BitcoinCoreProvider, BTCConfig
from .swap import SwapExecutor, SwapOutcome, Watcher

__version__ = "0.1.0"
__all__ = [
    # Core types
    "AtomicSwapLeg",
    "Expiry",
    "LegState",
    "LockKind",
    "SwapState",
    "Utxo",
    "SwapConfig",
    # Utilities
    "generate_secret",
    "verify_preimage",
    "btc_to_sats",
    "sats_to_btc",
    # Errors
    "SwapError",
    "ValidationError",
    "InvalidAddress",
    "ProviderError",
    "MalformedResponseError",
    "InsufficientFundsError",
    "BroadcastError",
    "FeeTooLowError",
    "RejectReason",
    "StateError",
    "PrematureRefund",
    "WatchCancelled",
    # HTLC
    "BTCSwapLeg",
    "HtlcScript",
    "PrivateKeySigner",
    "Variant",
    "build_htlc_script",
    # Providers
    "Provider",
    "EsploraProvider",
    "BitcoinCoreProvider",
    "BTCConfig",
    # Swap
    "SwapExecutor",
    "SwapOutcome",
    "Watcher",
]
