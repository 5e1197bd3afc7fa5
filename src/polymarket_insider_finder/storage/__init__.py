"""Storage layer - Database schemas, repositories and the wallet store."""

from polymarket_insider_finder.storage.database import DatabaseManager, to_async_url
from polymarket_insider_finder.storage.models import (
    Base,
    InsiderBadgeModel,
    InsiderTradeModel,
    InsiderWalletModel,
    MarketObservationModel,
    MarketResolutionModel,
    ScanRunModel,
    TradeProcessingErrorModel,
)
from polymarket_insider_finder.storage.repos import (
    BadgeRepository,
    InsiderBadgeDTO,
    InsiderTradeDTO,
    InsiderWalletDTO,
    TradeRepository,
    WalletRepository,
)
from polymarket_insider_finder.storage.store import (
    InsiderWalletStore,
    TradeResolution,
    WalletCommit,
    WalletCommitResult,
)

__all__ = [
    "BadgeRepository",
    "Base",
    "DatabaseManager",
    "InsiderBadgeDTO",
    "InsiderBadgeModel",
    "InsiderTradeDTO",
    "InsiderTradeModel",
    "InsiderWalletDTO",
    "InsiderWalletModel",
    "InsiderWalletStore",
    "MarketObservationModel",
    "MarketResolutionModel",
    "ScanRunModel",
    "TradeProcessingErrorModel",
    "TradeRepository",
    "TradeResolution",
    "WalletCommit",
    "WalletCommitResult",
    "WalletRepository",
    "to_async_url",
]
