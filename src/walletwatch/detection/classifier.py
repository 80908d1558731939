"""Contract classification and commit record construction.

The classifier works out what a contract is (fungible token, non-fungible
token, delegate/proxy) with read-only calls, and turns that into the
CommitRecord that auto-detection applies to the token store.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Union

from walletwatch.errors import (
    ClassificationRejectedError,
    ContractCallError,
    NetworkUnreachableError,
)
from walletwatch.models import (
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

# ERC-165 interface ids, probed in this order
INTERFACE_IDS: list[tuple[str, TokenType]] = [
    ("0xd9b67a26", TokenType.ERC1155),
    ("0x553e757e", TokenType.ERC875),
    ("0x4f452b9a", TokenType.ERC721_FOR_TICKETS),
    ("0x80ac58cd", TokenType.ERC721),
    ("0x6466353c", TokenType.ERC721),  # Pre-final ERC721 draft
]


@dataclass(frozen=True)
class FungibleMetadata:
    name: str
    symbol: str
    decimals: int


@dataclass(frozen=True)
class NonFungibleMetadata:
    name: str
    symbol: str
    type: TokenType
    balance: tuple[str, ...]


@dataclass(frozen=True)
class DelegateMarker:
    """Contract forwards calls to an implementation; not a holding itself."""

    implementation: str


@dataclass(frozen=True)
class Failed:
    """Classification failed.

    network_reachable=True means the contract genuinely does not answer as
    a token; False means the failure may be transient.
    """

    network_reachable: bool


ContractData = Union[FungibleMetadata, NonFungibleMetadata, DelegateMarker, Failed]


class ContractClassifier:
    """Classify contracts for one wallet on one chain."""

    def __init__(
        self,
        rpc: EvmRpcClient,
        wallet: str,
        chain: ChainId,
        token_store: TokenStore,
        transaction_store: TransactionStore,
    ):
        self.rpc = rpc
        self.wallet = normalize_address(wallet)
        self.chain = chain
        self.token_store = token_store
        self.transaction_store = transaction_store

    async def token_type(self, contract: str) -> TokenType:
        """Probe a contract's token standard.

        Contracts that do not implement ERC-165 (most ERC20s) are reported
        as ERC20. Raises NetworkUnreachableError if the node cannot be reached.
        """
        for interface_id, token_type in INTERFACE_IDS:
            try:
                if await self.rpc.supports_interface(contract, interface_id):
                    return token_type
            except ContractCallError:
                break
        return TokenType.ERC20

    async def classify(self, contract: str) -> ContractData:
        """Determine token type and metadata for a contract."""
        contract = normalize_address(contract)
        try:
            token_type = await self.token_type(contract)
            if token_type == TokenType.ERC20:
                return await self._classify_fungible(contract)
            return await self._classify_non_fungible(contract, token_type)
        except NetworkUnreachableError as e:
            logger.debug(f"[{self.chain}] Network unreachable classifying {contract}: {e}")
            return Failed(network_reachable=False)
        except ClassificationRejectedError as e:
            logger.debug(f"[{self.chain}] {e}")
            return Failed(network_reachable=True)

    async def _classify_fungible(self, contract: str) -> ContractData:
        name, symbol, decimals = await asyncio.gather(
            self.rpc.name(contract),
            self.rpc.symbol(contract),
            self.rpc.decimals(contract),
            return_exceptions=True,
        )
        for result in (name, symbol, decimals):
            if isinstance(result, NetworkUnreachableError):
                raise result

        if isinstance(name, Exception) and isinstance(symbol, Exception):
            return await self._delegate_or_failed(contract)

        return FungibleMetadata(
            name="" if isinstance(name, Exception) else name,
            symbol="" if isinstance(symbol, Exception) else symbol,
            decimals=0 if isinstance(decimals, Exception) else decimals,
        )

    async def _classify_non_fungible(self, contract: str, token_type: TokenType) -> ContractData:
        name, symbol = await asyncio.gather(
            self.rpc.name(contract),
            self.rpc.symbol(contract),
            return_exceptions=True,
        )
        for result in (name, symbol):
            if isinstance(result, NetworkUnreachableError):
                raise result

        try:
            balance = await self._non_fungible_balance(contract, token_type)
        except ContractCallError as e:
            raise ClassificationRejectedError(f"{contract} has no readable balance: {e}") from e

        return NonFungibleMetadata(
            name="" if isinstance(name, Exception) else name,
            symbol="" if isinstance(symbol, Exception) else symbol,
            type=token_type,
            balance=tuple(balance),
        )

    async def _non_fungible_balance(self, contract: str, token_type: TokenType) -> list[str]:
        if token_type in (TokenType.ERC875, TokenType.ERC721_FOR_TICKETS):
            return await self.rpc.erc875_balance_of(contract, self.wallet)
        return await self.transaction_store.owned_token_ids(contract)

    async def _delegate_or_failed(self, contract: str) -> ContractData:
        try:
            implementation = await self.rpc.implementation(contract)
        except ContractCallError:
            implementation = None
        if implementation:
            return DelegateMarker(implementation=implementation)
        raise ClassificationRejectedError(f"{contract} does not answer as a token")

    async def build_commit_record(
        self, contract: str, only_if_balance: bool = False
    ) -> CommitRecord:
        """Classify a contract and build the store action for it.

        Args:
            contract: Contract address
            only_if_balance: Only add the token when the wallet holds some

        Returns:
            CommitRecord to apply (possibly a no-op record)
        """
        contract = normalize_address(contract)
        data = await self.classify(contract)

        if isinstance(data, FungibleMetadata):
            # Keep any stored balance so a re-discovered token does not show 0
            existing = self.token_store.token_by_contract(contract)
            value = existing.value if existing else "0"
            if only_if_balance and value == "0":
                return CommitRecord.none(contract)
            return CommitRecord.add_token(
                TokenRecord(
                    contract=contract,
                    chain=self.chain,
                    name=data.name,
                    symbol=data.symbol,
                    decimals=data.decimals,
                    type=TokenType.ERC20,
                    value=value,
                )
            )

        if isinstance(data, NonFungibleMetadata):
            if only_if_balance and not data.balance:
                return CommitRecord.none(contract)
            return CommitRecord.add_token(
                TokenRecord(
                    contract=contract,
                    chain=self.chain,
                    name=data.name,
                    symbol=data.symbol,
                    decimals=0,
                    type=data.type,
                    balance=data.balance,
                )
            )

        if isinstance(data, DelegateMarker):
            return CommitRecord.delegate(contract)

        if data.network_reachable:
            return CommitRecord.deleted(contract)
        return CommitRecord.none(contract)
