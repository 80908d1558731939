"""Domain models shared by storage, detection and balance aggregation."""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import NamedTuple, Optional

ChainId = int

# Address under which a chain's native currency is stored
NATIVE_CONTRACT = "0x0000000000000000000000000000000000000000"


def normalize_address(address: str) -> str:
    """Lower-case an address so contract comparisons are case-insensitive."""
    return address.strip().lower()


class TokenType(str, Enum):
    """Token standard of a stored holding."""

    NATIVE = "native"
    ERC20 = "erc20"
    ERC721 = "erc721"
    ERC1155 = "erc1155"
    ERC875 = "erc875"
    ERC721_FOR_TICKETS = "erc721_for_tickets"

    @property
    def is_fungible(self) -> bool:
        return self in (TokenType.NATIVE, TokenType.ERC20)


class TokenClass(str, Enum):
    """History scan class used to key detection checkpoints."""

    ERC20 = "erc20"
    NON_ERC20 = "non_erc20"


class ChangeKind(str, Enum):
    """Kind of change emitted by the token store to observers."""

    BALANCE_CHANGED = "balance_changed"
    METADATA_CHANGED = "metadata_changed"
    DELETED = "deleted"


class TokenKey(NamedTuple):
    """Identity of a holding: (contract, chain)."""

    contract: str
    chain: ChainId

    @classmethod
    def of(cls, contract: str, chain: ChainId) -> "TokenKey":
        return cls(normalize_address(contract), chain)


@dataclass(frozen=True)
class TokenRecord:
    """A stored token holding for one wallet on one chain.

    Fungible types keep their raw balance in ``value`` (decimal string of the
    smallest unit); non-fungible types keep owned item ids in ``balance``.
    """

    contract: str
    chain: ChainId
    name: str
    symbol: str
    decimals: int
    type: TokenType
    value: str = "0"
    balance: tuple[str, ...] = ()
    is_disabled: bool = False

    @property
    def key(self) -> TokenKey:
        return TokenKey(self.contract, self.chain)

    @property
    def raw_value(self) -> int:
        try:
            return int(self.value)
        except ValueError:
            return 0

    @property
    def has_balance(self) -> bool:
        if self.type.is_fungible:
            return self.raw_value > 0
        return bool(self.balance)


@dataclass(frozen=True)
class TokenTransfer:
    """A token transfer touching the wallet, as reported by an explorer."""

    tx_hash: str
    block_number: int
    contract: str
    from_address: str
    to_address: str
    token_type: TokenType
    token_id: str = ""
    log_index: int = 0
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None
    quantity: int = 1


class CommitAction(str, Enum):
    """What a detection result does to the token store."""

    ADD_TOKEN = "add_token"
    ADD_DELEGATE = "add_delegate"
    ADD_DELETED = "add_deleted"
    NONE = "none"


@dataclass(frozen=True)
class CommitRecord:
    """One detection result, applied to the token store as part of a batch."""

    action: CommitAction
    contract: str
    token: Optional[TokenRecord] = None

    @property
    def non_empty(self) -> bool:
        return self.action != CommitAction.NONE

    @classmethod
    def add_token(cls, token: TokenRecord) -> "CommitRecord":
        return cls(CommitAction.ADD_TOKEN, token.contract, token)

    @classmethod
    def delegate(cls, contract: str) -> "CommitRecord":
        return cls(CommitAction.ADD_DELEGATE, normalize_address(contract))

    @classmethod
    def deleted(cls, contract: str) -> "CommitRecord":
        return cls(CommitAction.ADD_DELETED, normalize_address(contract))

    @classmethod
    def none(cls, contract: str) -> "CommitRecord":
        return cls(CommitAction.NONE, normalize_address(contract))


@dataclass(frozen=True)
class Ticker:
    """Price ticker for a token."""

    price_usd: Decimal
    change_24h: Optional[Decimal] = None


@dataclass(frozen=True)
class AssignedToken:
    """Immutable snapshot of a TokenRecord with its ticker attached.

    Equality and hashing use (contract, chain) only, so a set of snapshots
    holds at most one entry per holding.
    """

    token: TokenRecord
    ticker: Optional[Ticker] = None

    @property
    def key(self) -> TokenKey:
        return self.token.key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AssignedToken):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    @property
    def amount(self) -> Decimal:
        """Balance in whole units (fungible types only)."""
        return Decimal(self.token.raw_value) / Decimal(10**self.token.decimals)

    @property
    def value_usd(self) -> Optional[Decimal]:
        if self.ticker is None or not self.token.type.is_fungible:
            return None
        return self.amount * self.ticker.price_usd


@dataclass(frozen=True)
class WalletBalance:
    """Aggregate balance of a wallet across all active chains."""

    wallet: str
    values: frozenset[AssignedToken] = field(default_factory=frozenset)

    @property
    def total_usd(self) -> Decimal:
        """Sum of every priced fungible holding."""
        total = Decimal("0")
        for each in self.values:
            value = each.value_usd
            if value is not None:
                total += value
        return total

    def for_chain(self, chain: ChainId) -> list[AssignedToken]:
        return [each for each in self.values if each.token.chain == chain]


@dataclass(frozen=True)
class BalanceView:
    """Per-token balance value pushed to token balance subscribers."""

    chain: ChainId
    contract: str
    symbol: str
    value: int
    decimals: int
    ticker: Optional[Ticker] = None

    @property
    def amount(self) -> Decimal:
        return Decimal(self.value) / Decimal(10**self.decimals)

    @property
    def value_usd(self) -> Optional[Decimal]:
        if self.ticker is None:
            return None
        return self.amount * self.ticker.price_usd

    @classmethod
    def from_token(cls, token: TokenRecord, ticker: Optional[Ticker]) -> Optional["BalanceView"]:
        """Build a view for native and ERC20 tokens; other types have none."""
        if not token.type.is_fungible:
            return None
        return cls(
            chain=token.chain,
            contract=token.contract,
            symbol=token.symbol,
            value=token.raw_value,
            decimals=token.decimals,
            ticker=ticker,
        )
