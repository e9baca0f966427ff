"""
Core types and interfaces for btcswap.
"""

import hashlib
import secrets
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Union

from .errors import ValidationError


class LegState(Enum):
    """Lifecycle of a single swap leg."""
    CREATED = "created"         # Parameters fixed, nothing on-chain
    INITIATED = "initiated"     # Funding broadcast or observed
    REDEEMED = "redeemed"       # Spent with the secret (terminal)
    REFUNDED = "refunded"       # Spent back to the initiator (terminal)


TERMINAL_LEG_STATES = (LegState.REDEEMED, LegState.REFUNDED)


class SwapState(Enum):
    """Outcome of a two-leg swap run."""
    COMPLETED = "completed"     # Foreign leg redeemed
    REFUNDED = "refunded"       # Native leg refunded after expiry
    ABORTED = "aborted"         # Counterpart never funded, nothing at risk


class LockKind(Enum):
    """How the refund branch of the HTLC is time-locked."""
    RELATIVE = "relative"       # OP_CHECKSEQUENCEVERIFY, confirmations since funding
    ABSOLUTE = "absolute"       # OP_CHECKLOCKTIMEVERIFY, unix timestamp


# nLockTime values below this are block heights, not timestamps
LOCKTIME_THRESHOLD = 500_000_000

# BIP68 relative locks only carry 16 bits of blocks
MAX_RELATIVE_BLOCKS = 0xffff


@dataclass(frozen=True)
class Expiry:
    """Refund deadline of an HTLC."""
    value: int
    kind: LockKind = LockKind.RELATIVE

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, int) or self.value <= 0:
            raise ValidationError(f"Expiry must be a positive integer, got {self.value!r}")
        if self.kind == LockKind.RELATIVE and self.value > MAX_RELATIVE_BLOCKS:
            raise ValidationError(
                f"Relative expiry {self.value} exceeds {MAX_RELATIVE_BLOCKS} blocks"
            )
        if self.kind == LockKind.ABSOLUTE and self.value < LOCKTIME_THRESHOLD:
            raise ValidationError(
                f"Absolute expiry must be a unix timestamp, got {self.value}"
            )

    @classmethod
    def blocks(cls, count: int) -> "Expiry":
        return cls(count, LockKind.RELATIVE)

    @classmethod
    def at(cls, timestamp: int) -> "Expiry":
        return cls(int(timestamp), LockKind.ABSOLUTE)

    @property
    def is_relative(self) -> bool:
        return self.kind == LockKind.RELATIVE


def as_expiry(expiry: Union[int, Expiry]) -> Expiry:
    """Accept a bare int as a relative (confirmation count) expiry."""
    if isinstance(expiry, Expiry):
        return expiry
    return Expiry(expiry, LockKind.RELATIVE)


@dataclass
class Utxo:
    """Unspent output candidate for funding or spending."""
    tx_id: str
    vout: int
    value: int              # sats
    confirmations: int = 0


# =============================================================================
# Leg interface
# =============================================================================

class AtomicSwapLeg(ABC):
    """
    One party's fund-and-spend lifecycle on one ledger.

    The orchestrator only talks to legs through this interface, so the
    mirrored leg may live on any ledger.
    """

    @abstractmethod
    def initiate(self) -> str:
        """Fund the HTLC. Returns the funding tx id."""

    @abstractmethod
    def wait_for_initiate(self) -> bool:
        """Block until the HTLC is funded (True) or expired (False)."""

    @abstractmethod
    def redeem(self, secret: Union[str, bytes], fee: Optional[int] = None) -> str:
        """Spend the HTLC with the secret. Returns the redeem tx id."""

    @abstractmethod
    def refund(self) -> str:
        """Spend the expired HTLC back to the initiator."""

    @abstractmethod
    def wait_for_redeem(self) -> Optional[str]:
        """Block until the secret is revealed (hex) or the HTLC expires (None)."""

    def wait_for_expiry(self) -> None:
        """Block until the refund path opens. Legs without a clock return at once."""


# =============================================================================
# HTLC Utilities
# =============================================================================

def strip_hex_prefix(value: str) -> str:
    return value[2:] if value[:2].lower() == "0x" else value


def to_bytes32(value: Union[str, bytes], name: str = "value") -> bytes:
    """Parse a 32-byte value given as hex (optionally 0x-prefixed) or bytes."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        try:
            raw = bytes.fromhex(strip_hex_prefix(value or ""))
        except (ValueError, TypeError):
            raise ValidationError(f"{name} is not valid hex")
    if len(raw) != 32:
        raise ValidationError(f"{name} must be 32 bytes, got {len(raw)}")
    return raw


def generate_secret() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hash.

    Returns:
        (secret_hex, secret_hash_hex)
    """
    secret = secrets.token_bytes(32)
    return secret.hex(), hashlib.sha256(secret).hexdigest()


def verify_preimage(preimage: Union[str, bytes], secret_hash: Union[str, bytes]) -> bool:
    """True if SHA256(preimage) == secret_hash. Malformed input is just False."""
    try:
        preimage_bytes = to_bytes32(preimage, "preimage")
        expected = to_bytes32(secret_hash, "secret hash")
    except ValidationError:
        return False
    return hashlib.sha256(preimage_bytes).digest() == expected


def sats_to_btc(sats: int) -> float:
    """Convert satoshis to BTC."""
    return sats / 100_000_000


def btc_to_sats(btc: float) -> int:
    """Convert BTC to satoshis."""
    return int(round(btc * 100_000_000))


# =============================================================================
# Constants
# =============================================================================

# Default fee floor in sats, used when a provider does not override it
DEFAULT_MIN_FEE = 300

# Outputs at or below this are non-standard
DUST_THRESHOLD = 546

# Minimum gap between the two legs' absolute expiries
EXPIRY_CASCADE_MIN_GAP_SECONDS = 1800
