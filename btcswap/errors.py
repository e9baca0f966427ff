"""
Error types for btcswap.

Provider backends translate ledger rejections into these types exactly once,
so callers never have to pattern-match on node error strings.
"""

import re
from enum import Enum
from typing import Optional


class RejectReason(Enum):
    """Machine-readable reason for a broadcast rejection."""
    FEE_TOO_LOW = "fee_too_low"
    ALREADY_SPENT = "already_spent"
    NON_FINAL = "non_final"           # timelock not reached yet
    SCRIPT_FAILED = "script_failed"
    UNKNOWN = "unknown"


class SwapError(Exception):
    """Base class for all btcswap errors."""


class ValidationError(SwapError, ValueError):
    """Malformed swap parameter. Fatal, never retried."""


class InvalidAddress(ValidationError):
    """Address is empty, undecodable or not usable on the network."""


class ProviderError(SwapError):
    """
    Block-data provider failure.

    Retryable errors (network, indexer hiccups) are swallowed by polling
    loops; everything else propagates.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class MalformedResponseError(ProviderError):
    """Provider answered with something we cannot interpret."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class InsufficientFundsError(ProviderError):
    """Not enough spendable value to fund a transaction."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class BroadcastError(ProviderError):
    """Ledger rejected a transaction. Message is kept verbatim."""

    def __init__(self, message: str, reason: RejectReason = RejectReason.UNKNOWN):
        super().__init__(message, retryable=False)
        self.reason = reason


class FeeTooLowError(BroadcastError):
    """Rejected for paying less than the relay fee floor."""

    def __init__(self, message: str, min_fee: int):
        super().__init__(message, reason=RejectReason.FEE_TOO_LOW)
        self.min_fee = min_fee


class StateError(SwapError):
    """Operation invoked out of sequence."""


class PrematureRefund(StateError):
    """Refund attempted before the HTLC expired."""


class WatchCancelled(StateError):
    """A polling wait was cancelled before it resolved."""


# =============================================================================
# Rejection translation
# =============================================================================

# "min relay fee not met, 110 < 141" / "mempool min fee not met, 110 < 141"
_FEE_RE = re.compile(r"(?:min relay|mempool min) fee not met,?\s*(\d+)\s*<\s*(\d+)")

_REASON_MARKERS = [
    (RejectReason.ALREADY_SPENT, (
        "bad-txns-inputs-missingorspent",
        "missing-inputs",
        "missingorspent",
        "already in block chain",
        "txn-mempool-conflict",
    )),
    (RejectReason.NON_FINAL, ("non-bip68-final", "non-final")),
    (RejectReason.SCRIPT_FAILED, ("script-verify-flag-failed", "script failed")),
]


def parse_min_fee(message: str) -> Optional[int]:
    """Return the required fee (sats) from a fee-floor rejection, if any."""
    match = _FEE_RE.search(message)
    if not match:
        return None
    return int(match.group(2))


def rejection_from_message(message: str) -> BroadcastError:
    """Translate raw rejection text into a structured BroadcastError."""
    min_fee = parse_min_fee(message)
    if min_fee is not None:
        return FeeTooLowError(message, min_fee)

    lowered = message.lower()
    for reason, markers in _REASON_MARKERS:
        if any(m in lowered for m in markers):
            return BroadcastError(message, reason=reason)
    return BroadcastError(message)
