"""Swap orchestration for btcswap."""

from .watcher import Watcher
from .executor import SwapExecutor, SwapOutcome

__all__ = ["Watcher", "SwapExecutor", "SwapOutcome"]
