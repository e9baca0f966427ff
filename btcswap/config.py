"""
Runtime configuration for btcswap.

Defaults work against Bitcoin testnet; every field can be overridden from
BTCSWAP_* environment variables.
"""

import os
import logging
from dataclasses import dataclass, fields
from typing import Optional, Mapping

from .core import DEFAULT_MIN_FEE, EXPIRY_CASCADE_MIN_GAP_SECONDS
from .errors import ValidationError

log = logging.getLogger(__name__)

ENV_PREFIX = "BTCSWAP_"


@dataclass
class SwapConfig:
    """Swap configuration."""
    network: str = "testnet"            # mainnet, testnet, signet, regtest
    variant: str = "p2wsh"              # p2wsh (witness) or p2sh (legacy)

    # Polling
    confirmations: int = 1
    poll_interval_ms: int = 1000

    # Fees (sats)
    min_fee: int = DEFAULT_MIN_FEE
    max_fee_retries: int = 1

    # Orchestration
    expiry_gap_seconds: int = EXPIRY_CASCADE_MIN_GAP_SECONDS

    # Esplora backend
    esplora_url: str = "https://mempool.space/testnet/api"
    http_timeout: float = 10.0

    def __post_init__(self):
        if self.confirmations < 0:
            raise ValidationError("confirmations must be >= 0")
        if self.poll_interval_ms <= 0:
            raise ValidationError("poll_interval_ms must be > 0")
        if self.max_fee_retries < 0:
            raise ValidationError("max_fee_retries must be >= 0")
        if self.min_fee < 0:
            raise ValidationError("min_fee must be >= 0")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SwapConfig":
        """Build config from BTCSWAP_<FIELD> variables, e.g. BTCSWAP_NETWORK."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            try:
                overrides[f.name] = f.type(raw) if f.type in (int, float) else raw
            except ValueError:
                raise ValidationError(f"{ENV_PREFIX}{f.name.upper()}={raw!r} is not a valid {f.type.__name__}")
        if overrides:
            log.debug(f"Config overrides from environment: {sorted(overrides)}")
        return cls(**overrides)
