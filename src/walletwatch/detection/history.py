"""Interaction history from Etherscan-compatible explorer APIs.

Used by transacted-token detection to find every token contract the wallet
has interacted with since a block.
API Docs: https://docs.etherscan.io/
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from walletwatch.errors import HistoryQueryError, NetworkUnreachableError
from walletwatch.models import ChainId, TokenClass, TokenTransfer, TokenType, normalize_address

logger = logging.getLogger(__name__)

# Explorer actions queried per token class
ACTIONS = {
    TokenClass.ERC20: [("tokentx", TokenType.ERC20)],
    TokenClass.NON_ERC20: [
        ("tokennfttx", TokenType.ERC721),
        ("token1155tx", TokenType.ERC1155),
    ],
}

NO_RESULT_MESSAGES = ("no transactions found", "no records found")


@dataclass
class InteractionHistory:
    """Result of an interaction-history query."""

    contracts: list[str] = field(default_factory=list)
    max_block: Optional[int] = None
    transfers: list[TokenTransfer] = field(default_factory=list)


class ExplorerHistoryProvider:
    """Interaction-history provider backed by an Etherscan-style API.

    One provider serves one chain; the explorer URL and key come from the
    chain registry and settings.
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the provider.

        Args:
            api_url: Explorer API base URL (e.g. https://api.etherscan.io/api)
            api_key: Explorer API key (free tier works without, rate limited)
            timeout: HTTP timeout in seconds
            transport: Optional httpx transport (tests inject a mock one)
        """
        self.api_url = api_url
        self.api_key = api_key or "YourApiKeyToken"
        self.timeout = timeout
        self.transport = transport

    async def contracts_interacted_since(
        self,
        wallet: str,
        chain: ChainId,
        start_block: Optional[int],
        token_class: TokenClass,
    ) -> InteractionHistory:
        """Find token contracts the wallet interacted with since ``start_block``.

        Args:
            wallet: Wallet address
            chain: Chain id (for logging)
            start_block: First block to include, or None for the whole history
            token_class: ERC20 or non-ERC20 transfers

        Returns:
            Contracts in first-seen order, the highest block seen, and the
            raw transfers

        Raises:
            NetworkUnreachableError: Explorer could not be reached
            HistoryQueryError: Explorer answered with an error
        """
        history = InteractionHistory()
        seen: dict[str, None] = {}
        wallet = normalize_address(wallet)

        for action, token_type in ACTIONS[token_class]:
            rows = await self._fetch(action, wallet, start_block)
            for row in rows:
                transfer = self._parse_transfer(row, token_type)
                if transfer is None:
                    continue
                seen.setdefault(transfer.contract, None)
                history.transfers.append(transfer)
                if history.max_block is None or transfer.block_number > history.max_block:
                    history.max_block = transfer.block_number

        history.contracts = list(seen)
        logger.debug(
            f"[{chain}] {token_class.value} history since {start_block}: "
            f"{len(history.contracts)} contracts, max block {history.max_block}"
        )
        return history

    async def _fetch(self, action: str, wallet: str, start_block: Optional[int]) -> list[dict]:
        params = {
            "module": "account",
            "action": action,
            "address": wallet,
            "startblock": start_block if start_block is not None else 0,
            "endblock": 999999999,
            "sort": "asc",
            "apikey": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(self.api_url, params=params)
        except httpx.TransportError as e:
            raise NetworkUnreachableError(f"Explorer request failed: {e}") from e

        if response.status_code != 200:
            raise NetworkUnreachableError(
                f"Explorer API error: {response.status_code}", status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError as e:
            raise HistoryQueryError(f"Explorer {action} returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise HistoryQueryError(f"Explorer {action} returned unexpected payload")

        if data.get("status") == "1":
            return data.get("result", [])

        message = str(data.get("message", ""))
        if message.lower() in NO_RESULT_MESSAGES or data.get("result") == []:
            return []
        raise HistoryQueryError(f"Explorer {action} failed: {message} {data.get('result', '')}")

    def _parse_transfer(self, row: dict, token_type: TokenType) -> Optional[TokenTransfer]:
        """Parse an explorer transfer row."""
        try:
            quantity = 1
            if token_type == TokenType.ERC1155:
                quantity = int(row.get("tokenValue") or 1)
            return TokenTransfer(
                tx_hash=row.get("hash", ""),
                block_number=int(row.get("blockNumber", 0)),
                contract=normalize_address(row["contractAddress"]),
                from_address=normalize_address(row.get("from", "")),
                to_address=normalize_address(row.get("to", "")),
                token_type=token_type,
                token_id=str(row.get("tokenID", "")),
                log_index=int(row.get("logIndex", 0) or 0),
                token_name=row.get("tokenName"),
                token_symbol=row.get("tokenSymbol"),
                quantity=quantity,
            )
        except (KeyError, ValueError) as e:
            logger.debug(f"Error parsing explorer transfer: {e}")
            return None
