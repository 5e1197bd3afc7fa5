"""Inbound event models - trades, resolutions, and market observations."""

from polymarket_insider_finder.ingestor.models import (
    MarketObservationEvent,
    ResolutionEvent,
    TradeEvent,
)
from polymarket_insider_finder.ingestor.reader import read_jsonl

__all__ = [
    "MarketObservationEvent",
    "ResolutionEvent",
    "TradeEvent",
    "read_jsonl",
]
