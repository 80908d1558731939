"""Per-chain balance fetcher.

Refreshes the balances of every enabled token in a chain's token store:

- native currency via eth_getBalance
- ERC20 via balanceOf
- ERC875 via the array-returning balanceOf
- ERC721/ERC1155 from the recorded transfer history

Failures are isolated per token; a failed token keeps its previous balance.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Optional, Protocol

from walletwatch.errors import ContractCallError, NetworkUnreachableError
from walletwatch.models import (
    NATIVE_CONTRACT,
    ChainId,
    CommitRecord,
    TokenRecord,
    TokenType,
    normalize_address,
)
from walletwatch.rpc.client import EvmRpcClient
from walletwatch.storage.token_store import TokenStore
from walletwatch.storage.transactions import TransactionStore

logger = logging.getLogger(__name__)


class RefreshPolicy(str, Enum):
    """Which balances a refresh covers."""

    ALL = "all"
    NATIVE_ONLY = "native_only"
    TOKENS_ONLY = "tokens_only"


class BalanceFetcherDelegate(Protocol):
    """Receives fetcher completion events."""

    def did_add_token(self, fetcher: "BalanceFetcher") -> None:
        ...

    def did_update(self, fetcher: "BalanceFetcher") -> None:
        ...


_NATIVE = "native"
_TOKENS = "tokens"


class BalanceFetcher:
    """Balance fetcher for one wallet on one chain."""

    def __init__(
        self,
        chain: ChainId,
        wallet: str,
        rpc: EvmRpcClient,
        token_store: TokenStore,
        transaction_store: TransactionStore,
        min_refresh_interval: float = 10.0,
        delegate: Optional[BalanceFetcherDelegate] = None,
    ):
        """Initialize the fetcher.

        Args:
            chain: Chain id
            wallet: Wallet address
            rpc: Contract call layer
            token_store: Store whose records are refreshed
            transaction_store: Transfer history for non-fungible balances
            min_refresh_interval: Unforced refreshes closer than this are skipped
            delegate: Completion callbacks (usually the aggregator)
        """
        self.chain = chain
        self.wallet = normalize_address(wallet)
        self.rpc = rpc
        self.token_store = token_store
        self.transaction_store = transaction_store
        self.min_refresh_interval = min_refresh_interval
        self.delegate = delegate
        self._last_refresh: dict[str, float] = {}
        self._in_flight: set[str] = set()

    def _should_refresh(self, part: str, force: bool) -> bool:
        if part in self._in_flight:
            return False
        if force:
            return True
        last = self._last_refresh.get(part)
        return last is None or time.monotonic() - last >= self.min_refresh_interval

    async def refresh_balance(
        self, policy: RefreshPolicy = RefreshPolicy.ALL, force: bool = False
    ) -> bool:
        """Refresh balances covered by ``policy``.

        Returns:
            False if every requested part was skipped as fresh or in flight
        """
        parts = []
        if policy in (RefreshPolicy.ALL, RefreshPolicy.NATIVE_ONLY):
            parts.append(_NATIVE)
        if policy in (RefreshPolicy.ALL, RefreshPolicy.TOKENS_ONLY):
            parts.append(_TOKENS)

        parts = [part for part in parts if self._should_refresh(part, force)]
        if not parts:
            logger.debug(f"[{self.chain}] Balance refresh skipped ({policy.value})")
            return False

        self._in_flight.update(parts)
        added = False
        try:
            updates: dict[str, dict] = {}
            if _NATIVE in parts:
                updates.update(await self._native_updates())
            if _TOKENS in parts:
                added = await self._register_non_fungible_contracts()
                updates.update(await self._token_updates())
            if updates:
                await self.token_store.update_records(updates)
        finally:
            now = time.monotonic()
            for part in parts:
                self._in_flight.discard(part)
                self._last_refresh[part] = now

        if self.delegate is not None:
            if added:
                self.delegate.did_add_token(self)
            self.delegate.did_update(self)
        return True

    async def _native_updates(self) -> dict[str, dict]:
        try:
            balance = await self.rpc.get_balance(self.wallet)
        except (NetworkUnreachableError, ContractCallError) as e:
            logger.warning(f"[{self.chain}] Native balance fetch failed: {e}")
            return {}
        return {NATIVE_CONTRACT: {"value": str(balance)}}

    async def _token_updates(self) -> dict[str, dict]:
        tokens = [
            token
            for token in self.token_store.enabled_tokens()
            if token.type != TokenType.NATIVE
        ]
        results = await asyncio.gather(
            *(self._token_balance(token) for token in tokens), return_exceptions=True
        )

        updates = {}
        for token, result in zip(tokens, results):
            if isinstance(result, BaseException):
                logger.warning(f"[{self.chain}] Balance fetch failed for {token.contract}: {result}")
                continue
            updates[token.contract] = result
        return updates

    async def _token_balance(self, token: TokenRecord) -> dict:
        if token.type == TokenType.ERC20:
            return {"value": str(await self.rpc.balance_of(token.contract, self.wallet))}
        if token.type in (TokenType.ERC875, TokenType.ERC721_FOR_TICKETS):
            return {"balance": await self.rpc.erc875_balance_of(token.contract, self.wallet)}
        return {"balance": await self.transaction_store.owned_token_ids(token.contract)}

    async def _register_non_fungible_contracts(self) -> bool:
        """Add held ERC721/ERC1155 contracts seen in transfers but not stored yet."""
        contracts = await self.transaction_store.non_fungible_contracts()
        snapshot = self.token_store.exclusion_snapshot()
        known = {token.contract for token in self.token_store.tokens}

        records = []
        for contract, transfer in contracts.items():
            if contract in known or snapshot.excludes(contract):
                continue
            owned = await self.transaction_store.owned_token_ids(contract)
            records.append(
                CommitRecord.add_token(
                    TokenRecord(
                        contract=contract,
                        chain=self.chain,
                        name=transfer.token_name or "",
                        symbol=transfer.token_symbol or "",
                        decimals=0,
                        type=transfer.token_type,
                        balance=tuple(owned),
                    )
                )
            )

        if not records:
            return False
        await self.token_store.commit_batch(records)
        logger.info(f"[{self.chain}] Registered {len(records)} non-fungible contract(s)")
        return True
