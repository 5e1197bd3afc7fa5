"""Market state layer - time-indexed price/volume history and resolutions."""

from polymarket_insider_finder.market.tracker import (
    MarketObservation,
    MarketResolution,
    MarketStateTracker,
    PriceWindow,
    TradePrint,
)

__all__ = [
    "MarketObservation",
    "MarketResolution",
    "MarketStateTracker",
    "PriceWindow",
    "TradePrint",
]
