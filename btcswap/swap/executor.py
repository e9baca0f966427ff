"""
Swap Executor for btcswap.

Sequences two legs of an atomic swap: the native leg (our HTLC, which the
counterparty redeems) and the foreign leg (their HTLC, which we redeem).
The foreign leg can live on any ledger that implements AtomicSwapLeg.

Initiator (knows the secret):
1. Fund native HTLC
2. Wait for counterparty to fund foreign HTLC
3. Redeem foreign HTLC (reveals secret), or refund native after expiry

Counterparty:
1. Wait for initiator to fund foreign HTLC (abort if never funded)
2. Fund native HTLC
3. Wait for initiator to redeem native HTLC and reveal the secret
4. Redeem foreign HTLC with it, or refund native after expiry
"""

import time
import logging
from typing import Optional, Callable, Union
from dataclasses import dataclass

from ..config import SwapConfig
from ..core import AtomicSwapLeg, Expiry, LockKind, SwapState, strip_hex_prefix, verify_preimage
from ..errors import BroadcastError, RejectReason, ValidationError
from .watcher import Watcher

log = logging.getLogger(__name__)


@dataclass
class SwapOutcome:
    """Result (and running progress) of one swap execution."""
    role: str                                   # "initiator" or "counterparty"
    state: Optional[SwapState] = None           # None while running
    step: str = "started"

    native_funding_tx_id: Optional[str] = None
    foreign_redeem_tx_id: Optional[str] = None
    refund_tx_id: Optional[str] = None
    secret: Optional[str] = None

    started_at: int = 0
    completed_at: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "state": self.state.value if self.state else None,
            "step": self.step,
            "native_funding_tx_id": self.native_funding_tx_id,
            "foreign_redeem_tx_id": self.foreign_redeem_tx_id,
            "refund_tx_id": self.refund_tx_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def _absolute_expiry(leg: AtomicSwapLeg) -> Optional[int]:
    expiry = getattr(leg, "expiry", None)
    if isinstance(expiry, Expiry) and expiry.kind == LockKind.ABSOLUTE:
        return expiry.value
    return None


def validate_expiry_cascade(later: AtomicSwapLeg, earlier: AtomicSwapLeg,
                            min_gap: int) -> None:
    """
    Check that `later` expires at least min_gap seconds after `earlier`.

    The leg redeemed second (with a secret learned from the other ledger)
    must outlive the leg redeemed first. Only checked when both legs use
    absolute expiries; confirmation counts are not comparable across ledgers.

    Raises:
        ValidationError: cascade violated
    """
    t_later = _absolute_expiry(later)
    t_earlier = _absolute_expiry(earlier)
    if t_later is None or t_earlier is None:
        return
    if t_later - t_earlier < min_gap:
        raise ValidationError(
            f"Expiry cascade violated: {t_later} - {t_earlier} = {t_later - t_earlier}s "
            f"(min {min_gap}s)"
        )


class SwapExecutor:
    """
    Drives one party through an atomic swap.

    Args:
        config: SwapConfig (expiry_gap_seconds and poll_interval_ms are used here)
        on_state_change: Called with the SwapOutcome after every step
        watcher: Paces refund retries while the ledger still considers the
            timelock unmet
    """

    def __init__(self, config: SwapConfig = None,
                 on_state_change: Optional[Callable[[SwapOutcome], None]] = None,
                 clock: Callable[[], float] = time.time,
                 watcher: Watcher = None):
        self.config = config or SwapConfig()
        self.on_state_change = on_state_change
        self.clock = clock
        self.watcher = watcher or Watcher(clock=clock)

    def _refund(self, native: AtomicSwapLeg) -> str:
        """
        Refund once the native leg has expired.

        Nodes judge absolute locks by median-time-past, which trails the
        local clock, so a NON_FINAL rejection means "not yet" and is retried.
        """
        native.wait_for_expiry()
        return self.watcher.wait(
            lambda: self._try_refund(native),
            lambda: False,
            self.config.poll_interval_ms / 1000,
            what="refund to become final",
        )

    @staticmethod
    def _try_refund(native: AtomicSwapLeg) -> Optional[str]:
        try:
            return native.refund()
        except BroadcastError as e:
            if e.reason != RejectReason.NON_FINAL:
                raise
            log.info(f"Refund not final yet, retrying: {e}")
            return None

    def _step(self, outcome: SwapOutcome, step: str, state: SwapState = None):
        outcome.step = step
        if state is not None:
            outcome.state = state
            outcome.completed_at = int(self.clock())
        log.info(f"Swap ({outcome.role}): {step}")
        if self.on_state_change:
            self.on_state_change(outcome)

    def execute_as_initiator(self, native: AtomicSwapLeg, foreign: AtomicSwapLeg,
                             secret: Union[str, bytes]) -> SwapOutcome:
        """
        Run the initiator side.

        Args:
            native: Our HTLC, redeemable by the counterparty
            foreign: Counterparty's HTLC, redeemable by us with the secret
            secret: Preimage of the shared secret hash

        Returns:
            SwapOutcome with state COMPLETED or REFUNDED
        """
        secret_hex = secret.hex() if isinstance(secret, bytes) else strip_hex_prefix(secret)
        secret_hash = getattr(native, "secret_hash", None)
        if secret_hash is not None and not verify_preimage(secret_hex, secret_hash):
            raise ValidationError("Secret does not match the native leg's secret hash")
        validate_expiry_cascade(native, foreign, self.config.expiry_gap_seconds)

        outcome = SwapOutcome(role="initiator", started_at=int(self.clock()))

        outcome.native_funding_tx_id = native.initiate()
        self._step(outcome, "native_funded")

        if foreign.wait_for_initiate():
            self._step(outcome, "foreign_funded")
            outcome.foreign_redeem_tx_id = foreign.redeem(secret_hex)
            outcome.secret = secret_hex
            self._step(outcome, "foreign_redeemed", SwapState.COMPLETED)
            return outcome

        log.warning("Counterparty never funded, refunding native leg after expiry")
        outcome.refund_tx_id = self._refund(native)
        self._step(outcome, "native_refunded", SwapState.REFUNDED)
        return outcome

    def execute_as_counterparty(self, native: AtomicSwapLeg,
                                foreign: AtomicSwapLeg) -> SwapOutcome:
        """
        Run the counterparty side.

        Args:
            native: Our HTLC, redeemable by the initiator with the secret
            foreign: Initiator's HTLC, redeemable by us once the secret is out

        Returns:
            SwapOutcome with state COMPLETED, REFUNDED or ABORTED
        """
        validate_expiry_cascade(foreign, native, self.config.expiry_gap_seconds)

        outcome = SwapOutcome(role="counterparty", started_at=int(self.clock()))

        if not foreign.wait_for_initiate():
            log.warning("Initiator never funded, aborting (nothing at risk)")
            self._step(outcome, "aborted", SwapState.ABORTED)
            return outcome
        self._step(outcome, "foreign_funded")

        outcome.native_funding_tx_id = native.initiate()
        self._step(outcome, "native_funded")

        secret = native.wait_for_redeem()
        if secret:
            outcome.secret = secret
            self._step(outcome, "secret_revealed")
            outcome.foreign_redeem_tx_id = foreign.redeem(secret)
            self._step(outcome, "foreign_redeemed", SwapState.COMPLETED)
            return outcome

        log.warning("Initiator never redeemed, refunding native leg")
        outcome.refund_tx_id = self._refund(native)
        self._step(outcome, "native_refunded", SwapState.REFUNDED)
        return outcome
