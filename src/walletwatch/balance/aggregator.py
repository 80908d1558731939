"""Wallet balance aggregation across chains.

The aggregator owns one ServiceBundle per active chain, drives periodic
balance refreshes and publishes the aggregate WalletBalance plus lazily
created per-token balance observables.

Recomputation is triggered by:
- the refresh timer
- price ticker updates
- fetcher completion (did_add_token / did_update)
- the auto-detector's "tokens changed" signal
- explicit forced refreshes
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walletwatch.balance.fetcher import BalanceFetcher, RefreshPolicy
from walletwatch.balance.tickers import CoinGeckoTickerSource
from walletwatch.chains import get_chain, get_partner_contracts
from walletwatch.config import Settings, get_settings
from walletwatch.detection.classifier import ContractClassifier
from walletwatch.detection.engine import TokenAutoDetector
from walletwatch.detection.history import ExplorerHistoryProvider
from walletwatch.models import (
    AssignedToken,
    BalanceView,
    ChainId,
    ChangeKind,
    TokenKey,
    WalletBalance,
    normalize_address,
)
from walletwatch.observable import Subscribable
from walletwatch.rpc.client import EvmRpcClient
from walletwatch.storage.checkpoints import CheckpointStore
from walletwatch.storage.token_store import ObservationToken, TokenChange, TokenStore
from walletwatch.storage.transactions import TransactionStore

logger = logging.getLogger(__name__)


class WalletBalanceAggregatorDelegate(Protocol):
    """Receives aggregator events."""

    def did_add_token(self, aggregator: "WalletBalanceAggregator") -> None:
        ...

    def did_update(self, aggregator: "WalletBalanceAggregator") -> None:
        ...


@dataclass
class ServiceBundle:
    """Per-chain services for one wallet."""

    chain: ChainId
    token_store: TokenStore
    balance_fetcher: BalanceFetcher
    transaction_store: TransactionStore
    detector: TokenAutoDetector

    @classmethod
    def create(
        cls,
        chain: ChainId,
        wallet: str,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
    ) -> "ServiceBundle":
        """Build the services for a chain from the registry and settings."""
        config = get_chain(chain)
        rpc_url = settings.get_rpc_url(chain) or (config.rpc_url if config else "")
        if not rpc_url:
            raise ValueError(f"No RPC URL configured for chain {chain}")

        rpc = EvmRpcClient(rpc_url, timeout=settings.http_timeout)
        token_store = TokenStore(session_factory, wallet, chain)
        transaction_store = TransactionStore(session_factory, wallet, chain)

        history = None
        if config is not None and config.explorer_api_url:
            history = ExplorerHistoryProvider(
                config.explorer_api_url,
                api_key=settings.get_explorer_api_key(chain),
                timeout=settings.http_timeout,
            )

        detector = TokenAutoDetector(
            chain=chain,
            wallet=wallet,
            rpc=rpc,
            classifier=ContractClassifier(rpc, wallet, chain, token_store, transaction_store),
            token_store=token_store,
            transaction_store=transaction_store,
            checkpoints=CheckpointStore(session_factory),
            history=history,
            partner_contracts=get_partner_contracts(chain, settings.extra_partner_contracts),
            auto_fetch_disabled=settings.auto_fetch_disabled,
        )
        fetcher = BalanceFetcher(
            chain,
            wallet,
            rpc,
            token_store,
            transaction_store,
            min_refresh_interval=settings.min_refresh_interval_seconds,
        )
        return cls(chain, token_store, fetcher, transaction_store, detector)

    async def open(self) -> None:
        if not self.token_store.is_open:
            await self.token_store.open()

    def teardown(self) -> None:
        """Detach from the aggregator and discard in-flight detection."""
        self.detector.abandon()
        self.detector.on_tokens_changed = None
        self.balance_fetcher.delegate = None


class WalletBalanceAggregator:
    """Aggregate balance of one wallet over a set of chains."""

    def __init__(
        self,
        wallet: str,
        servers: Iterable[ChainId],
        session_factory: async_sessionmaker[AsyncSession],
        tickers: Optional[CoinGeckoTickerSource] = None,
        settings: Optional[Settings] = None,
        delegate: Optional[WalletBalanceAggregatorDelegate] = None,
        bundle_factory: Optional[Callable[[ChainId], ServiceBundle]] = None,
    ):
        """Initialize the aggregator and create a bundle per chain.

        Args:
            wallet: Wallet address
            servers: Active chain ids
            session_factory: Database session factory shared by all stores
            tickers: Price-ticker source (CoinGecko by default)
            settings: Settings (global settings by default)
            delegate: Optional owner receiving did_add_token / did_update
            bundle_factory: Builds a ServiceBundle for a chain
        """
        self.wallet = normalize_address(wallet)
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.tickers = tickers or CoinGeckoTickerSource(
            self.settings.coingecko_api_url, timeout=self.settings.http_timeout
        )
        self.delegate = delegate
        self.refresh_interval = self.settings.refresh_interval_seconds
        self._bundle_factory = bundle_factory or (
            lambda chain: ServiceBundle.create(chain, self.wallet, session_factory, self.settings)
        )

        self.bundles: dict[ChainId, ServiceBundle] = {}
        self._balance: Subscribable[WalletBalance] = Subscribable()
        self._token_subscriptions: dict[TokenKey, tuple[ObservationToken, Subscribable[BalanceView]]] = {}
        self._lock = asyncio.Lock()
        self._timer: Optional[asyncio.Task] = None
        self._cycle: Optional[asyncio.Task] = None
        self._pending: set[asyncio.Task] = set()
        self._cached_balance: Optional[WalletBalance] = None
        self._cache_key: Optional[tuple] = None

        for chain in dict.fromkeys(servers):
            self._add_bundle(chain)
        self._ticker_subscription = self.tickers.subscribe(self._on_tickers_changed)

    # ------------------------------------------------------------------
    # Bundles
    # ------------------------------------------------------------------

    def _add_bundle(self, chain: ChainId) -> ServiceBundle:
        bundle = self._bundle_factory(chain)
        bundle.balance_fetcher.delegate = self
        bundle.detector.on_tokens_changed = self._on_tokens_changed
        bundle.detector.current_wallet = lambda: self.wallet
        self.bundles[chain] = bundle
        return bundle

    def _remove_bundle(self, chain: ChainId) -> None:
        bundle = self.bundles.pop(chain)
        bundle.teardown()
        for key in [key for key in self._token_subscriptions if key.chain == chain]:
            self._release_token_subscription(key)
        logger.info(f"Removed chain {chain} from wallet {self.wallet}")

    def bundle(self, chain: ChainId) -> Optional[ServiceBundle]:
        return self.bundles.get(chain)

    def token_store(self, chain: ChainId) -> Optional[TokenStore]:
        bundle = self.bundles.get(chain)
        return bundle.token_store if bundle else None

    def transaction_store(self, chain: ChainId) -> Optional[TransactionStore]:
        bundle = self.bundles.get(chain)
        return bundle.transaction_store if bundle else None

    @property
    def servers(self) -> list[ChainId]:
        return list(self.bundles)

    async def open(self) -> None:
        """Open the token store of every bundle."""
        for bundle in list(self.bundles.values()):
            await bundle.open()

    async def update_servers(self, servers: Iterable[ChainId]) -> None:
        """Reconcile bundles to exactly ``servers``.

        Bundles for chains that stay keep their identity and caches.
        """
        servers = list(dict.fromkeys(servers))
        removed = [chain for chain in self.bundles if chain not in servers]
        for chain in removed:
            self._remove_bundle(chain)

        added = [self._add_bundle(chain) for chain in servers if chain not in self.bundles]
        for bundle in added:
            await bundle.open()
            if self.is_running:
                bundle.detector.start()

        if removed or added:
            logger.info(f"Active chains for {self.wallet}: {servers}")
            await self._recompute()

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def start(self) -> None:
        """Arm the refresh timer and refresh immediately.

        Calling start() while running only resets the timer.
        """
        if self.is_running:
            self._timer.cancel()
            self._timer = asyncio.create_task(self._run_timer(immediate=False))
            return

        await self.open()
        for bundle in self.bundles.values():
            bundle.detector.start()
        if self.settings.ticker_refresh_seconds > 0:
            self.tickers.start(self.ticker_keys, self.settings.ticker_refresh_seconds)
        self._timer = asyncio.create_task(self._run_timer(immediate=True))
        logger.info(
            f"Balance aggregator started for {self.wallet} on chains {self.servers} "
            f"(interval: {self.refresh_interval}s)"
        )

    async def stop(self) -> None:
        """Cancel the refresh timer."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        await self.tickers.stop()

    async def _run_timer(self, immediate: bool) -> None:
        if immediate:
            self._tick()
        while True:
            await asyncio.sleep(self.refresh_interval)
            self._tick()

    def _tick(self) -> None:
        if self._cycle is not None and not self._cycle.done():
            logger.debug("Previous balance refresh still running, skipping tick")
            return
        self._cycle = asyncio.create_task(self._refresh_cycle())

    async def _refresh_cycle(self) -> None:
        try:
            for bundle in list(self.bundles.values()):
                bundle.detector.start()
            await self._refresh_all(RefreshPolicy.ALL, force=False)
        except Exception as e:
            logger.error(f"Balance refresh cycle error: {e}")

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def _refresh_all(self, policy: RefreshPolicy, force: bool) -> None:
        bundles = list(self.bundles.values())
        results = await asyncio.gather(
            *(bundle.balance_fetcher.refresh_balance(policy, force) for bundle in bundles),
            return_exceptions=True,
        )
        for bundle, result in zip(bundles, results):
            if isinstance(result, BaseException):
                logger.error(f"[{bundle.chain}] Balance refresh failed: {result}")
        await self._recompute()

    async def refresh_eth_balance(self) -> None:
        """Force a native-currency refresh on every chain."""
        await self._refresh_all(RefreshPolicy.NATIVE_ONLY, force=True)

    async def refresh_token_balances(self) -> None:
        """Force a token refresh on every chain."""
        await self._refresh_all(RefreshPolicy.TOKENS_ONLY, force=True)

    # ------------------------------------------------------------------
    # Aggregate balance
    # ------------------------------------------------------------------

    def current_balance(self) -> WalletBalance:
        """Aggregate balance from the current store contents.

        Returns the same object while no store or ticker has changed.
        """
        cache_key = (
            tuple(
                (chain, id(bundle), bundle.token_store.version)
                for chain, bundle in sorted(self.bundles.items())
            ),
            self.tickers.version,
        )
        if self._cached_balance is not None and cache_key == self._cache_key:
            return self._cached_balance

        values = frozenset(
            AssignedToken(token, self.tickers.ticker(token.key))
            for bundle in self.bundles.values()
            for token in bundle.token_store.enabled_tokens()
        )
        self._cached_balance = WalletBalance(self.wallet, values)
        self._cache_key = cache_key
        return self._cached_balance

    @property
    def tokens(self) -> list[AssignedToken]:
        return list(self.current_balance().values)

    def subscribe_wallet_balance(self) -> Subscribable[WalletBalance]:
        if self._balance.value is None:
            self._balance.value = self.current_balance()
        return self._balance

    async def _recompute(self, added: bool = False, updated: bool = False) -> None:
        async with self._lock:
            balance = self.current_balance()
            if balance is not self._balance.value:
                self._balance.value = balance
            if self.delegate is None:
                return
            try:
                if added:
                    self.delegate.did_add_token(self)
                if updated:
                    self.delegate.did_update(self)
            except Exception as e:
                logger.error(f"Aggregator delegate error: {e}")

    def _request_recompute(self, added: bool = False, updated: bool = False) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, balance recompute deferred")
            return
        task = loop.create_task(self._recompute(added=added, updated=updated))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def wait_for_pending(self) -> None:
        """Wait for scheduled recomputations to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Per-token balances
    # ------------------------------------------------------------------

    def subscribe_token_balance(self, contract: str, chain: ChainId) -> Subscribable[BalanceView]:
        """Observable balance view of one token.

        The first call creates a store observer; later calls share it. An
        unknown chain or token gets an uncached observable holding None.
        """
        key = TokenKey.of(contract, chain)
        cached = self._token_subscriptions.get(key)
        if cached is not None:
            return cached[1]

        bundle = self.bundles.get(chain)
        token = bundle.token_store.token_by_contract(key.contract) if bundle else None
        if token is None:
            return Subscribable()

        subscribable: Subscribable[BalanceView] = Subscribable(
            BalanceView.from_token(token, self.tickers.ticker(key))
        )

        def on_change(change: TokenChange) -> None:
            if change.kind == ChangeKind.DELETED:
                subscribable.value = None
            elif change.kind == ChangeKind.BALANCE_CHANGED:
                subscribable.value = BalanceView.from_token(change.token, self.tickers.ticker(key))

        observation = bundle.token_store.observe(key.contract, on_change)
        self._token_subscriptions[key] = (observation, subscribable)
        return subscribable

    def unsubscribe_token_balance(self, contract: str, chain: ChainId) -> None:
        key = TokenKey.of(contract, chain)
        if key in self._token_subscriptions:
            self._release_token_subscription(key)

    def _release_token_subscription(self, key: TokenKey) -> None:
        observation, subscribable = self._token_subscriptions.pop(key)
        observation.invalidate()
        subscribable.unsubscribe_all()

    def _refresh_token_views(self) -> None:
        for key, (_, subscribable) in list(self._token_subscriptions.items()):
            bundle = self.bundles.get(key.chain)
            token = bundle.token_store.token_by_contract(key.contract) if bundle else None
            view = BalanceView.from_token(token, self.tickers.ticker(key)) if token else None
            if view != subscribable.value:
                subscribable.value = view

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def did_add_token(self, fetcher: BalanceFetcher) -> None:
        self._request_recompute(added=True)

    def did_update(self, fetcher: BalanceFetcher) -> None:
        self._request_recompute(updated=True)

    def _on_tokens_changed(self) -> None:
        self._request_recompute(added=True)

    def _on_tickers_changed(self, version: Optional[int]) -> None:
        self._refresh_token_views()
        self._request_recompute()

    def ticker_keys(self) -> list[TokenKey]:
        return [
            token.key
            for bundle in self.bundles.values()
            for token in bundle.token_store.enabled_tokens()
            if token.type.is_fungible
        ]

    async def close(self) -> None:
        """Stop refreshing and release every bundle and subscription."""
        await self.stop()
        if self._cycle is not None:
            self._cycle.cancel()
            try:
                await self._cycle
            except asyncio.CancelledError:
                pass
            self._cycle = None
        for chain in list(self.bundles):
            self._remove_bundle(chain)
        self._ticker_subscription.cancel()
        self._balance.unsubscribe_all()
        await self.wait_for_pending()
