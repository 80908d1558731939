"""Persistence of detection checkpoints (last scanned block)."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walletwatch.models import ChainId, TokenClass, normalize_address
from walletwatch.storage.models import DetectionCheckpointRow

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Last-scanned block per (chain, wallet, token class).

    Checkpoints only move forward: advancing to a block at or below the
    stored one is a no-op.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, chain: ChainId, wallet: str, token_class: TokenClass) -> Optional[int]:
        """Get the last scanned block, or None if the class was never scanned."""
        async with self.session_factory() as session:
            row = await self._get_row(session, chain, wallet, token_class)
            return row.last_block if row else None

    async def advance(
        self, chain: ChainId, wallet: str, token_class: TokenClass, block: int
    ) -> int:
        """Move the checkpoint forward to ``block``.

        Returns:
            The checkpoint stored after the call
        """
        async with self.session_factory() as session:
            row = await self._get_row(session, chain, wallet, token_class)
            if row is None:
                row = DetectionCheckpointRow(
                    chain=chain,
                    wallet=normalize_address(wallet),
                    token_class=token_class.value,
                    last_block=block,
                )
                session.add(row)
            elif block > row.last_block:
                row.last_block = block
            else:
                return row.last_block
            await session.commit()

        logger.debug(f"[{chain}] {token_class.value} checkpoint for {wallet} -> {block}")
        return block

    async def _get_row(
        self,
        session: AsyncSession,
        chain: ChainId,
        wallet: str,
        token_class: TokenClass,
    ) -> Optional[DetectionCheckpointRow]:
        stmt = select(DetectionCheckpointRow).where(
            DetectionCheckpointRow.chain == chain,
            DetectionCheckpointRow.wallet == normalize_address(wallet),
            DetectionCheckpointRow.token_class == token_class.value,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
