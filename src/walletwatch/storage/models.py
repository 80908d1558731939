"""SQLAlchemy models for token, exclusion, checkpoint and transaction storage."""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TokenRow(Base):
    """A token held by a wallet on one chain."""

    __tablename__ = "tokens"
    __table_args__ = (
        Index("ix_tokens_wallet_chain_contract", "wallet", "chain", "contract", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    chain: Mapped[int] = mapped_column(Integer, nullable=False)
    contract: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), default="")
    symbol: Mapped[str] = mapped_column(String(64), default="")
    decimals: Mapped[int] = mapped_column(Integer, default=0)
    token_type: Mapped[str] = mapped_column(String(32), nullable=False)
    value: Mapped[str] = mapped_column(String(80), default="0")  # Raw scalar balance
    balance: Mapped[str] = mapped_column(Text, default="")  # Comma-separated item ids
    is_disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class _ContractExclusion:
    """Columns shared by the exclusion tables."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    chain: Mapped[int] = mapped_column(Integer, nullable=False)
    contract: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class DeletedContractRow(_ContractExclusion, Base):
    """Contract confirmed not to answer as a token."""

    __tablename__ = "deleted_contracts"
    __table_args__ = (
        Index("ix_deleted_contracts_key", "wallet", "chain", "contract", unique=True),
    )


class HiddenContractRow(_ContractExclusion, Base):
    """Contract the user removed from the wallet."""

    __tablename__ = "hidden_contracts"
    __table_args__ = (
        Index("ix_hidden_contracts_key", "wallet", "chain", "contract", unique=True),
    )


class DelegateContractRow(_ContractExclusion, Base):
    """Proxy/delegate contract that is not itself a holding."""

    __tablename__ = "delegate_contracts"
    __table_args__ = (
        Index("ix_delegate_contracts_key", "wallet", "chain", "contract", unique=True),
    )


class DetectionCheckpointRow(Base):
    """Last block scanned for transacted-token detection."""

    __tablename__ = "detection_checkpoints"
    __table_args__ = (
        Index("ix_checkpoints_key", "chain", "wallet", "token_class", unique=True),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    chain: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    token_class: Mapped[str] = mapped_column(String(16), nullable=False)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TransferRow(Base):
    """Token transfer touching the wallet, as reported by the explorer."""

    __tablename__ = "transfers"
    __table_args__ = (
        Index(
            "ix_transfers_unique",
            "wallet", "chain", "tx_hash", "contract", "token_id", "log_index",
            unique=True,
        ),
        Index("ix_transfers_contract", "wallet", "chain", "contract"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    wallet: Mapped[str] = mapped_column(String(64), nullable=False)
    chain: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, default=0)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    contract: Mapped[str] = mapped_column(String(64), nullable=False)
    from_address: Mapped[str] = mapped_column(String(64), nullable=False)
    to_address: Mapped[str] = mapped_column(String(64), nullable=False)
    token_id: Mapped[str] = mapped_column(String(100), default="")
    token_type: Mapped[str] = mapped_column(String(32), nullable=False)
    token_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    token_symbol: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    quantity: Mapped[int] = mapped_column(BigInteger, default=1)
