"""Tests for the wallet balance aggregator."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from conftest import USDT, WALLET, make_token
from walletwatch.balance.aggregator import ServiceBundle, WalletBalanceAggregator
from walletwatch.balance.fetcher import BalanceFetcher
from walletwatch.balance.tickers import CoinGeckoTickerSource
from walletwatch.config import Settings
from walletwatch.detection.classifier import ContractClassifier
from walletwatch.detection.engine import TokenAutoDetector
from walletwatch.detection.history import ExplorerHistoryProvider, InteractionHistory
from walletwatch.models import NATIVE_CONTRACT, CommitRecord, Ticker, TokenKey, TokenType
from walletwatch.rpc.client import EvmRpcClient
from walletwatch.storage.checkpoints import CheckpointStore
from walletwatch.storage.token_store import TokenStore
from walletwatch.storage.transactions import TransactionStore

ONE_ETH = 10**18


def bundle_factory(session_factory, native_balances: dict):
    """Build bundles backed by the test database and mocked network calls."""

    def build(chain: int) -> ServiceBundle:
        rpc = AsyncMock(spec=EvmRpcClient)
        rpc.get_balance.return_value = native_balances.get(chain, 0)
        rpc.balance_of.return_value = 0

        history = AsyncMock(spec=ExplorerHistoryProvider)
        history.contracts_interacted_since.return_value = InteractionHistory()
        classifier = AsyncMock(spec=ContractClassifier)
        classifier.build_commit_record.return_value = CommitRecord.add_token(
            make_token(chain=chain, value="3000000")
        )

        token_store = TokenStore(session_factory, WALLET, chain)
        transaction_store = TransactionStore(session_factory, WALLET, chain)
        detector = TokenAutoDetector(
            chain=chain,
            wallet=WALLET,
            rpc=rpc,
            classifier=classifier,
            token_store=token_store,
            transaction_store=transaction_store,
            checkpoints=CheckpointStore(session_factory),
            history=history,
        )
        fetcher = BalanceFetcher(
            chain, WALLET, rpc, token_store, transaction_store, min_refresh_interval=0
        )
        return ServiceBundle(chain, token_store, fetcher, transaction_store, detector)

    return build


@pytest.fixture
def settings() -> Settings:
    return Settings(
        refresh_interval_seconds=3600,
        ticker_refresh_seconds=0,
        auto_fetch_disabled=False,
    )


@pytest.fixture
def tickers() -> CoinGeckoTickerSource:
    return CoinGeckoTickerSource(transport=httpx.MockTransport(lambda request: httpx.Response(404)))


@pytest_asyncio.fixture
async def aggregator(session_factory, settings, tickers):
    """Aggregator over Ethereum and BSC; 1 ETH on Ethereum."""
    aggregator = WalletBalanceAggregator(
        WALLET,
        [1, 56],
        session_factory,
        tickers=tickers,
        settings=settings,
        bundle_factory=bundle_factory(session_factory, {1: ONE_ETH}),
    )
    await aggregator.open()
    yield aggregator
    await aggregator.close()


class TestCurrentBalance:
    """Tests for the aggregate balance."""

    @pytest.mark.asyncio
    async def test_native_balance_without_ticker(self, session_factory, settings, tickers):
        """1 ETH on Ethereum with no ticker: amount 1, no fiat value."""
        aggregator = WalletBalanceAggregator(
            WALLET,
            [1],
            session_factory,
            tickers=tickers,
            settings=settings,
            bundle_factory=bundle_factory(session_factory, {1: ONE_ETH}),
        )
        await aggregator.open()

        await aggregator.refresh_eth_balance()
        balance = aggregator.current_balance()

        assert len(balance.values) == 1
        (native,) = balance.values
        assert native.key == TokenKey(NATIVE_CONTRACT, 1)
        assert native.token.raw_value == ONE_ETH
        assert native.amount == Decimal(1)
        assert native.ticker is None
        assert native.value_usd is None
        assert balance.total_usd == Decimal(0)
        await aggregator.close()

    @pytest.mark.asyncio
    async def test_same_object_while_unchanged(self, aggregator: WalletBalanceAggregator):
        first = aggregator.current_balance()
        assert aggregator.current_balance() is first

        await aggregator.refresh_eth_balance()
        second = aggregator.current_balance()
        assert second is not first
        assert aggregator.current_balance() is second

        aggregator.tickers.set_tickers({TokenKey(NATIVE_CONTRACT, 1): Ticker(Decimal("2000"))})
        third = aggregator.current_balance()
        assert third is not second
        assert third.total_usd == Decimal("2000")

    @pytest.mark.asyncio
    async def test_tokens_across_chains(self, aggregator: WalletBalanceAggregator):
        contracts = sorted((t.token.chain, t.token.contract) for t in aggregator.tokens)
        assert contracts == [(1, NATIVE_CONTRACT), (56, NATIVE_CONTRACT)]

    @pytest.mark.asyncio
    async def test_disabled_tokens_excluded(self, aggregator: WalletBalanceAggregator):
        store = aggregator.token_store(1)
        await store.commit_batch([CommitRecord.add_token(make_token())])
        await store.update_record(USDT, is_disabled=True)

        assert TokenKey(USDT, 1) not in {t.key for t in aggregator.tokens}


class TestWalletBalanceSubscription:
    """Tests for the whole-wallet observable."""

    @pytest.mark.asyncio
    async def test_refresh_pushes_new_balance(self, aggregator: WalletBalanceAggregator):
        received = []
        aggregator.subscribe_wallet_balance().subscribe(received.append)

        await aggregator.refresh_eth_balance()
        await aggregator.wait_for_pending()

        assert received[-1] is aggregator.current_balance()
        native = [t for t in received[-1].values if t.key == TokenKey(NATIVE_CONTRACT, 1)]
        assert native[0].token.raw_value == ONE_ETH

    @pytest.mark.asyncio
    async def test_ticker_update_pushes_balance(self, aggregator: WalletBalanceAggregator):
        await aggregator.refresh_eth_balance()
        received = []
        aggregator.subscribe_wallet_balance().subscribe(received.append)

        aggregator.tickers.set_tickers({TokenKey(NATIVE_CONTRACT, 1): Ticker(Decimal("1500"))})
        await aggregator.wait_for_pending()

        assert received[-1].total_usd == Decimal("1500")

    @pytest.mark.asyncio
    async def test_detected_tokens_push_balance(self, aggregator: WalletBalanceAggregator):
        received = []
        aggregator.subscribe_wallet_balance().subscribe(received.append)

        await aggregator.bundle(1).detector.add_imported_token(USDT)
        await aggregator.wait_for_pending()

        assert TokenKey(USDT, 1) in {t.key for t in received[-1].values}

    @pytest.mark.asyncio
    async def test_delegate_notified(self, aggregator: WalletBalanceAggregator):
        delegate = MagicMock()
        aggregator.delegate = delegate

        await aggregator.refresh_eth_balance()
        await aggregator.wait_for_pending()

        delegate.did_update.assert_called_with(aggregator)


class TestTokenBalanceSubscription:
    """Tests for per-token observables."""

    @pytest.mark.asyncio
    async def test_cached_per_key(self, aggregator: WalletBalanceAggregator):
        first = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1)
        assert aggregator.subscribe_token_balance(NATIVE_CONTRACT.upper().replace("0X", "0x"), 1) is first
        assert aggregator.token_store(1).observer_count(NATIVE_CONTRACT) == 1

    @pytest.mark.asyncio
    async def test_view_follows_store(self, aggregator: WalletBalanceAggregator):
        observable = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1)
        assert observable.value.value == 0

        await aggregator.refresh_eth_balance()

        assert observable.value.value == ONE_ETH
        assert observable.value.amount == Decimal(1)
        assert observable.value.symbol == "ETH"

    @pytest.mark.asyncio
    async def test_view_follows_tickers(self, aggregator: WalletBalanceAggregator):
        await aggregator.refresh_eth_balance()
        observable = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1)

        aggregator.tickers.set_tickers({TokenKey(NATIVE_CONTRACT, 1): Ticker(Decimal("3000"))})

        assert observable.value.value_usd == Decimal("3000")

    @pytest.mark.asyncio
    async def test_only_balance_changes_push(self, aggregator: WalletBalanceAggregator):
        store = aggregator.token_store(1)
        await store.commit_batch([CommitRecord.add_token(make_token(value="5"))])
        received = []
        aggregator.subscribe_token_balance(USDT, 1).subscribe(received.append)

        await store.update_record(USDT, name="Tether USD")
        assert len(received) == 1

        await store.update_record(USDT, value="9")
        assert len(received) == 2
        assert received[-1].value == 9

    @pytest.mark.asyncio
    async def test_removed_token_pushes_none(self, aggregator: WalletBalanceAggregator):
        store = aggregator.token_store(1)
        await store.commit_batch([CommitRecord.add_token(make_token(value="5"))])
        observable = aggregator.subscribe_token_balance(USDT, 1)

        await store.remove_token(USDT)

        assert observable.value is None

    @pytest.mark.asyncio
    async def test_non_fungible_view_is_none(self, aggregator: WalletBalanceAggregator):
        nft = "0x" + "11" * 20
        await aggregator.token_store(1).commit_batch(
            [CommitRecord.add_token(make_token(contract=nft, token_type=TokenType.ERC721, balance=("1",)))]
        )
        assert aggregator.subscribe_token_balance(nft, 1).value is None

    @pytest.mark.asyncio
    async def test_unknown_token_not_cached(self, aggregator: WalletBalanceAggregator):
        first = aggregator.subscribe_token_balance(USDT, 1)
        second = aggregator.subscribe_token_balance(USDT, 137)

        assert first.value is None
        assert second.value is None
        assert aggregator.subscribe_token_balance(USDT, 1) is not first

    @pytest.mark.asyncio
    async def test_fresh_observer_after_unsubscribe(self, aggregator: WalletBalanceAggregator):
        received = []
        first = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1)
        first.subscribe(received.append)

        aggregator.unsubscribe_token_balance(NATIVE_CONTRACT, 1)
        second = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1)

        assert second is not first
        assert first.subscriber_count == 0
        assert aggregator.token_store(1).observer_count(NATIVE_CONTRACT) == 1

        count = len(received)
        await aggregator.refresh_eth_balance()
        assert len(received) == count
        assert second.value.value == ONE_ETH

    @pytest.mark.asyncio
    async def test_unsubscribe_absent_key_is_noop(self, aggregator: WalletBalanceAggregator):
        aggregator.unsubscribe_token_balance(USDT, 1)
        aggregator.unsubscribe_token_balance(USDT, 999)


class TestUpdateServers:
    """Tests for chain reconciliation."""

    @pytest.mark.asyncio
    async def test_idempotent(self, aggregator: WalletBalanceAggregator):
        bundles = dict(aggregator.bundles)
        observable = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1)

        await aggregator.update_servers([1, 56])
        await aggregator.update_servers([56, 1, 1])

        assert aggregator.bundles == bundles
        assert all(aggregator.bundles[chain] is bundles[chain] for chain in bundles)
        assert aggregator.subscribe_token_balance(NATIVE_CONTRACT, 1) is observable

    @pytest.mark.asyncio
    async def test_chain_removal(self, aggregator: WalletBalanceAggregator):
        """Removing a chain drops its bundle, subscriptions and balance share."""
        removed = aggregator.bundle(56)
        observable = aggregator.subscribe_token_balance(NATIVE_CONTRACT, 56)
        observable.subscribe(lambda view: None)

        await aggregator.update_servers([1])

        assert aggregator.servers == [1]
        assert aggregator.bundle(56) is None
        assert removed.detector.is_abandoned
        assert removed.balance_fetcher.delegate is None
        assert removed.token_store.observer_count() == 0
        assert observable.subscriber_count == 0
        assert all(t.token.chain == 1 for t in aggregator.current_balance().values)

    @pytest.mark.asyncio
    async def test_chain_added(self, aggregator: WalletBalanceAggregator):
        await aggregator.update_servers([1, 56, 137])

        bundle = aggregator.bundle(137)
        assert bundle.token_store.is_open
        assert bundle.balance_fetcher.delegate is aggregator
        assert TokenKey(NATIVE_CONTRACT, 137) in {t.key for t in aggregator.tokens}


class TestLifecycle:
    """Tests for the refresh timer."""

    @pytest.mark.asyncio
    async def test_start_refreshes_immediately(self, aggregator: WalletBalanceAggregator):
        await aggregator.start()
        assert aggregator.is_running

        for _ in range(100):
            native = aggregator.token_store(1).token_by_contract(NATIVE_CONTRACT)
            if native.raw_value == ONE_ETH:
                break
            await asyncio.sleep(0.01)

        assert native.raw_value == ONE_ETH

        await aggregator.stop()
        assert not aggregator.is_running

    @pytest.mark.asyncio
    async def test_restart_keeps_running(self, aggregator: WalletBalanceAggregator):
        await aggregator.start()
        await aggregator.start()

        assert aggregator.is_running
        await aggregator.stop()

    @pytest.mark.asyncio
    async def test_tick_skipped_while_cycle_running(self, aggregator: WalletBalanceAggregator):
        """A slow refresh cycle is never overlapped by the next tick."""
        release = asyncio.Event()
        runs = 0
        active = 0
        peak = 0

        async def slow_cycle():
            nonlocal runs, active, peak
            runs += 1
            active += 1
            peak = max(peak, active)
            try:
                await release.wait()
            finally:
                active -= 1

        aggregator._refresh_cycle = slow_cycle
        aggregator.refresh_interval = 0.01
        await aggregator.start()

        await asyncio.sleep(0.1)
        assert runs == 1

        release.set()
        for _ in range(100):
            if runs > 1:
                break
            await asyncio.sleep(0.01)

        await aggregator.stop()
        assert runs > 1
        assert peak == 1
