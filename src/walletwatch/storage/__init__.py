"""Persistence for tokens, exclusion lists, checkpoints and transfers."""

from walletwatch.storage.checkpoints import CheckpointStore
from walletwatch.storage.database import close_db, get_session_factory, init_db
from walletwatch.storage.token_store import (
    ExclusionSnapshot,
    ObservationToken,
    TokenChange,
    TokenStore,
)
from walletwatch.storage.transactions import TransactionStore

__all__ = [
    # Stores
    "TokenStore",
    "CheckpointStore",
    "TransactionStore",
    # Store types
    "ExclusionSnapshot",
    "ObservationToken",
    "TokenChange",
    # Database
    "get_session_factory",
    "init_db",
    "close_db",
]
