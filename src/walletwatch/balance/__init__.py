"""Balance refresh and multi-chain aggregation."""

from walletwatch.balance.aggregator import ServiceBundle, WalletBalanceAggregator
from walletwatch.balance.fetcher import BalanceFetcher, RefreshPolicy
from walletwatch.balance.tickers import CoinGeckoTickerSource

__all__ = [
    "BalanceFetcher",
    "CoinGeckoTickerSource",
    "RefreshPolicy",
    "ServiceBundle",
    "WalletBalanceAggregator",
]
