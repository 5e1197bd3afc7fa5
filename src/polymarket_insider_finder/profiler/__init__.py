"""Wallet profiling layer - per-wallet rollup statistics."""

from polymarket_insider_finder.profiler.aggregator import WalletAggregator, WalletRollup

__all__ = [
    "WalletAggregator",
    "WalletRollup",
]
