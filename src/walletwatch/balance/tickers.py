"""Price tickers from CoinGecko.

Native currencies are priced via /simple/price with the chain's CoinGecko
coin id; tokens via /simple/token_price/{platform} by contract address.
Chains without CoinGecko identifiers simply get no tickers.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Callable, Iterable, Optional

import httpx

from walletwatch.chains import get_chain
from walletwatch.models import NATIVE_CONTRACT, ChainId, Ticker, TokenKey
from walletwatch.observable import Subscribable, Subscription

logger = logging.getLogger(__name__)

# CoinGecko API (free tier)
COINGECKO_API = "https://api.coingecko.com/api/v3"

# Free tier rejects long contract lists
MAX_CONTRACTS_PER_REQUEST = 30


def _parse_ticker(entry: dict) -> Optional[Ticker]:
    price = entry.get("usd")
    if price is None:
        return None
    change = entry.get("usd_24h_change")
    return Ticker(
        price_usd=Decimal(str(price)),
        change_24h=Decimal(str(change)) if change is not None else None,
    )


class CoinGeckoTickerSource:
    """Price-ticker source keyed by (contract, chain).

    ``version`` increases whenever a ticker changes; subscribers are called
    with the new version.
    """

    def __init__(
        self,
        api_url: str = COINGECKO_API,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.tickers: dict[TokenKey, Ticker] = {}
        self.version = 0
        self._changes: Subscribable[int] = Subscribable()
        self._task: Optional[asyncio.Task] = None

    def ticker(self, key: TokenKey) -> Optional[Ticker]:
        return self.tickers.get(key)

    def subscribe(self, callback: Callable[[Optional[int]], None]) -> Subscription:
        """Subscribe to ticker updates."""
        return self._changes.subscribe(callback)

    def set_tickers(self, tickers: dict[TokenKey, Ticker]) -> bool:
        """Merge tickers into the map.

        Returns:
            True if anything changed (subscribers were notified)
        """
        changed = {key: ticker for key, ticker in tickers.items() if self.tickers.get(key) != ticker}
        if not changed:
            return False
        self.tickers.update(changed)
        self.version += 1
        self._changes.value = self.version
        return True

    async def refresh(self, keys: Iterable[TokenKey]) -> int:
        """Fetch prices for the given holdings.

        Returns:
            Number of tickers that changed
        """
        by_chain: dict[ChainId, list[str]] = {}
        for key in keys:
            by_chain.setdefault(key.chain, []).append(key.contract)

        fetched: dict[TokenKey, Ticker] = {}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for chain, contracts in by_chain.items():
                config = get_chain(chain)
                if config is None:
                    continue

                if NATIVE_CONTRACT in contracts and config.coingecko_native_id:
                    ticker = await self._native_price(client, config.coingecko_native_id)
                    if ticker is not None:
                        fetched[TokenKey(NATIVE_CONTRACT, chain)] = ticker

                tokens = sorted({c for c in contracts if c != NATIVE_CONTRACT})
                if tokens and config.coingecko_platform:
                    for start in range(0, len(tokens), MAX_CONTRACTS_PER_REQUEST):
                        batch = tokens[start:start + MAX_CONTRACTS_PER_REQUEST]
                        prices = await self._token_prices(client, config.coingecko_platform, batch)
                        for contract, ticker in prices.items():
                            fetched[TokenKey(contract, chain)] = ticker

        before = {key: self.tickers.get(key) for key in fetched}
        self.set_tickers(fetched)
        return sum(1 for key, ticker in fetched.items() if before[key] != ticker)

    async def _native_price(self, client: httpx.AsyncClient, coin_id: str) -> Optional[Ticker]:
        try:
            response = await client.get(
                f"{self.api_url}/simple/price",
                params={
                    "ids": coin_id,
                    "vs_currencies": "usd",
                    "include_24hr_change": "true",
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"CoinGecko price fetch failed for {coin_id}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(f"CoinGecko price error for {coin_id}: {response.status_code}")
            return None
        return _parse_ticker(response.json().get(coin_id, {}))

    async def _token_prices(
        self, client: httpx.AsyncClient, platform: str, contracts: list[str]
    ) -> dict[str, Ticker]:
        try:
            response = await client.get(
                f"{self.api_url}/simple/token_price/{platform}",
                params={
                    "contract_addresses": ",".join(contracts),
                    "vs_currencies": "usd",
                    "include_24hr_change": "true",
                },
            )
        except httpx.HTTPError as e:
            logger.warning(f"CoinGecko token price fetch failed on {platform}: {e}")
            return {}

        if response.status_code != 200:
            logger.warning(f"CoinGecko token price error on {platform}: {response.status_code}")
            return {}

        prices = {}
        for contract, entry in response.json().items():
            ticker = _parse_ticker(entry)
            if ticker is not None:
                prices[contract.lower()] = ticker
        return prices

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, keys: Callable[[], Iterable[TokenKey]], interval: float) -> None:
        """Refresh tickers for ``keys()`` every ``interval`` seconds."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(keys, interval))

    async def _run(self, keys: Callable[[], Iterable[TokenKey]], interval: float) -> None:
        while True:
            try:
                await self.refresh(keys())
            except Exception as e:
                logger.error(f"Ticker refresh error: {e}")
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
