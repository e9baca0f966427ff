"""
HTLC (Hash Time-Locked Contract) on Bitcoin.

HTLCs enable trustless atomic swaps by ensuring:
1. Funds can only be redeemed with knowledge of a secret (preimage)
2. Funds can be refunded after expiry if not redeemed

Two script variants share one template:
- P2WSH: witness spend, bech32 address (default)
- P2SH: legacy scriptSig spend, base58 address
"""

from .script import HtlcScript, Variant, build_htlc_script, extract_secret
from .signer import PrivateKeySigner
from .tx import Transaction
from .btc import BTCSwapLeg

__all__ = [
    "HtlcScript",
    "Variant",
    "build_htlc_script",
    "extract_secret",
    "PrivateKeySigner",
    "Transaction",
    "BTCSwapLeg",
]
