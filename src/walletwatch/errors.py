"""Exceptions raised across walletwatch."""

from typing import Optional


class WalletWatchError(Exception):
    """Base class for walletwatch errors."""


class NetworkUnreachableError(WalletWatchError):
    """A node or API could not be reached; the failure is transient."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ContractCallError(WalletWatchError):
    """The node answered but the contract call reverted or returned nothing."""


class ClassificationRejectedError(WalletWatchError):
    """The contract is reachable but does not answer as a token."""


class HistoryQueryError(WalletWatchError):
    """The interaction-history provider returned an error response."""


class CancelledContextError(WalletWatchError):
    """The wallet changed or the chain was removed while a scan was running."""


class StoreConflictError(WalletWatchError):
    """A batch commit conflicted with the stored rows and could not be retried."""


class ImportTokenError(WalletWatchError):
    """An explicitly imported contract could not be added as a token."""
