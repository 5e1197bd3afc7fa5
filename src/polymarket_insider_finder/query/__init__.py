"""Query layer - filtered, ranked wallet listings and wallet detail."""

from polymarket_insider_finder.query.service import (
    WalletQuery,
    WalletQueryService,
    empty_detail_response,
    empty_list_response,
)

__all__ = [
    "WalletQuery",
    "WalletQueryService",
    "empty_detail_response",
    "empty_list_response",
]
