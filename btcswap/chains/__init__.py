"""
Block-data providers for btcswap.

Each provider implements the same interface:
- Querying balances and UTXOs
- Finding funding transactions and revealed secrets
- Signing and broadcasting transactions
"""

from .provider import Provider
from .esplora import EsploraProvider
from .btc import BitcoinCoreProvider, BTCConfig

__all__ = ["Provider", "EsploraProvider", "BitcoinCoreProvider", "BTCConfig"]
