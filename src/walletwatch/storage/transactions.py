"""Transfer history store for one wallet on one chain.

Non-fungible holdings (ERC721/ERC1155) are derived from this history: an
ERC721 item is owned when its last recorded transfer went to the wallet, an
ERC1155 item while the wallet has received more of it than it sent.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walletwatch.models import ChainId, TokenTransfer, TokenType, normalize_address
from walletwatch.storage.models import TransferRow

logger = logging.getLogger(__name__)


def _row_to_transfer(row: TransferRow) -> TokenTransfer:
    return TokenTransfer(
        tx_hash=row.tx_hash,
        block_number=row.block_number,
        contract=row.contract,
        from_address=row.from_address,
        to_address=row.to_address,
        token_type=TokenType(row.token_type),
        token_id=row.token_id or "",
        log_index=row.log_index or 0,
        token_name=row.token_name,
        token_symbol=row.token_symbol,
        quantity=row.quantity if row.quantity is not None else 1,
    )


class TransactionStore:
    """Repository of token transfers for one (wallet, chain)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        wallet: str,
        chain: ChainId,
    ):
        self.session_factory = session_factory
        self.wallet = normalize_address(wallet)
        self.chain = chain

    async def add_transfers(self, transfers: Iterable[TokenTransfer]) -> int:
        """Record transfers, skipping ones already stored.

        Returns:
            Number of new rows written
        """
        transfers = list(transfers)
        if not transfers:
            return 0

        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    TransferRow.tx_hash,
                    TransferRow.contract,
                    TransferRow.token_id,
                    TransferRow.log_index,
                ).where(TransferRow.wallet == self.wallet, TransferRow.chain == self.chain)
            )
            existing = {tuple(row) for row in result.all()}

            added = 0
            for transfer in transfers:
                contract = normalize_address(transfer.contract)
                key = (transfer.tx_hash, contract, transfer.token_id, transfer.log_index)
                if key in existing:
                    continue
                existing.add(key)
                session.add(
                    TransferRow(
                        wallet=self.wallet,
                        chain=self.chain,
                        tx_hash=transfer.tx_hash,
                        log_index=transfer.log_index,
                        block_number=transfer.block_number,
                        contract=contract,
                        from_address=normalize_address(transfer.from_address),
                        to_address=normalize_address(transfer.to_address),
                        token_id=transfer.token_id,
                        token_type=transfer.token_type.value,
                        token_name=transfer.token_name,
                        token_symbol=transfer.token_symbol,
                        quantity=transfer.quantity,
                    )
                )
                added += 1
            await session.commit()

        if added:
            logger.debug(f"[{self.chain}] Recorded {added} new transfers for {self.wallet}")
        return added

    async def transfers(self, contract: Optional[str] = None) -> list[TokenTransfer]:
        """Get stored transfers in chain order, optionally for one contract."""
        stmt = select(TransferRow).where(
            TransferRow.wallet == self.wallet, TransferRow.chain == self.chain
        )
        if contract is not None:
            stmt = stmt.where(TransferRow.contract == normalize_address(contract))
        stmt = stmt.order_by(TransferRow.block_number, TransferRow.log_index, TransferRow.id)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_row_to_transfer(row) for row in result.scalars()]

    async def owned_token_ids(self, contract: str) -> list[str]:
        """Item ids of ``contract`` the wallet currently holds."""
        held = _holdings(await self.transfers(contract), self.wallet)
        return sorted(token_id for _, token_id in held)

    async def non_fungible_contracts(self) -> dict[str, TokenTransfer]:
        """Latest transfer per non-fungible contract that still has owned items."""
        transfers = [
            transfer
            for transfer in await self.transfers()
            if transfer.token_type in (TokenType.ERC721, TokenType.ERC1155)
        ]
        latest = {transfer.contract: transfer for transfer in transfers}
        held = {contract for contract, _ in _holdings(transfers, self.wallet)}
        return {contract: transfer for contract, transfer in latest.items() if contract in held}


def _holdings(transfers: Iterable[TokenTransfer], wallet: str) -> set[tuple[str, str]]:
    """(contract, token id) pairs held by ``wallet`` after ``transfers`` in chain order.

    ERC1155 items are held while the net received quantity is positive;
    other items are held when their last transfer went to the wallet.
    """
    owners: dict[tuple[str, str], str] = {}
    amounts: dict[tuple[str, str], int] = {}
    for transfer in transfers:
        if not transfer.token_id:
            continue
        key = (transfer.contract, transfer.token_id)
        if transfer.token_type == TokenType.ERC1155:
            amount = amounts.get(key, 0)
            if transfer.to_address == wallet:
                amount += transfer.quantity
            if transfer.from_address == wallet:
                amount -= transfer.quantity
            amounts[key] = amount
        else:
            owners[key] = transfer.to_address

    held = {key for key, owner in owners.items() if owner == wallet}
    held |= {key for key, amount in amounts.items() if amount > 0}
    return held
