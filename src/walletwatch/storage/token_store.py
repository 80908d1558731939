"""Token store for one wallet on one chain.

Rows live in the database; an in-memory mirror serves every read
synchronously so balance recomputation never waits on I/O. All writes go
through a single writer lock, hit the database first, then update the
mirror and notify observers.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from walletwatch.chains import native_token_info
from walletwatch.errors import StoreConflictError
from walletwatch.models import (
    ChainId,
    ChangeKind,
    CommitAction,
    CommitRecord,
    TokenRecord,
    TokenType,
    normalize_address,
)
from walletwatch.storage.models import (
    DelegateContractRow,
    DeletedContractRow,
    HiddenContractRow,
    TokenRow,
)

logger = logging.getLogger(__name__)

BALANCE_FIELDS = frozenset({"value", "balance"})
METADATA_FIELDS = frozenset({"name", "symbol", "decimals", "type", "is_disabled"})


@dataclass(frozen=True)
class TokenChange:
    """Change notification delivered to token observers."""

    kind: ChangeKind
    token: TokenRecord


@dataclass(frozen=True)
class ExclusionSnapshot:
    """Enabled and excluded contract sets captured at one instant."""

    enabled: frozenset[str]
    deleted: frozenset[str]
    hidden: frozenset[str]
    delegate: frozenset[str]

    def excludes(self, contract: str) -> bool:
        contract = normalize_address(contract)
        return (
            contract in self.enabled
            or contract in self.deleted
            or contract in self.hidden
            or contract in self.delegate
        )

    def candidates(self, contracts: Iterable[str]) -> list[str]:
        """Drop excluded and duplicate contracts, keeping input order."""
        result: dict[str, None] = {}
        for contract in contracts:
            contract = normalize_address(contract)
            if not self.excludes(contract):
                result.setdefault(contract, None)
        return list(result)


class ObservationToken:
    """Handle for a token observer; invalidate() stops delivery."""

    def __init__(self, store: "TokenStore", contract: str, callback: Callable[[TokenChange], None]):
        self._store = store
        self.contract = contract
        self.callback = callback
        self.is_valid = True

    def invalidate(self) -> None:
        if self.is_valid:
            self.is_valid = False
            self._store._remove_observer(self)


def _row_to_record(row: TokenRow) -> TokenRecord:
    return TokenRecord(
        contract=row.contract,
        chain=row.chain,
        name=row.name or "",
        symbol=row.symbol or "",
        decimals=row.decimals or 0,
        type=TokenType(row.token_type),
        value=row.value or "0",
        balance=tuple(item for item in (row.balance or "").split(",") if item),
        is_disabled=bool(row.is_disabled),
    )


def _apply_record(row: TokenRow, token: TokenRecord) -> None:
    row.name = token.name
    row.symbol = token.symbol
    row.decimals = token.decimals
    row.token_type = token.type.value
    row.value = token.value
    row.balance = ",".join(token.balance)
    row.is_disabled = token.is_disabled


class TokenStore:
    """Repository of tokens and exclusion lists for one (wallet, chain)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        wallet: str,
        chain: ChainId,
    ):
        self.session_factory = session_factory
        self.wallet = normalize_address(wallet)
        self.chain = chain
        self.version = 0
        self._lock = asyncio.Lock()
        self._opened = False
        self._tokens: dict[str, TokenRecord] = {}
        self._deleted: set[str] = set()
        self._hidden: set[str] = set()
        self._delegate: set[str] = set()
        self._observers: dict[str, list[ObservationToken]] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._opened

    async def open(self) -> None:
        """Load the mirror from the database and ensure the native token row."""
        async with self._lock:
            await self._reload()
            native = native_token_info(self.chain)
            if native["contract"] not in self._tokens:
                token = TokenRecord(
                    contract=native["contract"],
                    chain=self.chain,
                    name=native["name"],
                    symbol=native["symbol"],
                    decimals=native["decimals"],
                    type=TokenType.NATIVE,
                )
                async with self.session_factory() as session:
                    row = TokenRow(wallet=self.wallet, chain=self.chain, contract=token.contract)
                    _apply_record(row, token)
                    session.add(row)
                    await session.commit()
                self._tokens[token.contract] = token
                self.version += 1
            self._opened = True

    async def _reload(self) -> None:
        async with self.session_factory() as session:
            rows = await session.execute(
                select(TokenRow).where(TokenRow.wallet == self.wallet, TokenRow.chain == self.chain)
            )
            self._tokens = {row.contract: _row_to_record(row) for row in rows.scalars()}
            self._deleted = await self._load_contracts(session, DeletedContractRow)
            self._hidden = await self._load_contracts(session, HiddenContractRow)
            self._delegate = await self._load_contracts(session, DelegateContractRow)
        self.version += 1

    async def _load_contracts(self, session: AsyncSession, model) -> set[str]:
        result = await session.execute(
            select(model.contract).where(model.wallet == self.wallet, model.chain == self.chain)
        )
        return set(result.scalars())

    # ------------------------------------------------------------------
    # Reads (synchronous, served from the mirror)
    # ------------------------------------------------------------------

    @property
    def tokens(self) -> list[TokenRecord]:
        return list(self._tokens.values())

    def enabled_tokens(self) -> list[TokenRecord]:
        return [token for token in self._tokens.values() if not token.is_disabled]

    def enabled_addresses(self) -> list[str]:
        return [token.contract for token in self.enabled_tokens()]

    def deleted_contracts(self) -> list[str]:
        return sorted(self._deleted)

    def hidden_contracts(self) -> list[str]:
        return sorted(self._hidden)

    def delegate_contracts(self) -> list[str]:
        return sorted(self._delegate)

    def token_by_contract(self, contract: str) -> Optional[TokenRecord]:
        return self._tokens.get(normalize_address(contract))

    def exclusion_snapshot(self) -> ExclusionSnapshot:
        return ExclusionSnapshot(
            enabled=frozenset(self.enabled_addresses()),
            deleted=frozenset(self._deleted),
            hidden=frozenset(self._hidden),
            delegate=frozenset(self._delegate),
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def observe(self, contract: str, callback: Callable[[TokenChange], None]) -> ObservationToken:
        """Observe changes to one token record."""
        token = ObservationToken(self, normalize_address(contract), callback)
        self._observers.setdefault(token.contract, []).append(token)
        return token

    def observer_count(self, contract: Optional[str] = None) -> int:
        if contract is None:
            return sum(len(each) for each in self._observers.values())
        return len(self._observers.get(normalize_address(contract), []))

    def _remove_observer(self, token: ObservationToken) -> None:
        observers = self._observers.get(token.contract, [])
        if token in observers:
            observers.remove(token)
        if not observers:
            self._observers.pop(token.contract, None)

    def _notify(self, changes: list[TokenChange]) -> None:
        for change in changes:
            for observer in list(self._observers.get(change.token.contract, [])):
                if not observer.is_valid:
                    continue
                try:
                    observer.callback(change)
                except Exception as e:
                    logger.error(f"Token observer error for {change.token.contract}: {e}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def commit_batch(
        self, records: Iterable[CommitRecord], skip_excluded: bool = True
    ) -> list[TokenRecord]:
        """Apply detection results in one transaction.

        Token inserts replace any stored row for the same contract. With
        ``skip_excluded`` a token insert for a contract that is hidden, deleted
        or a delegate at write time is dropped; without it the contract is
        taken off those lists. On a unique-key conflict the
        mirror is reloaded and the batch retried once.

        Returns:
            The token records that were inserted or replaced
        """
        records = [record for record in records if record.non_empty]
        if not records:
            return []

        async with self._lock:
            try:
                changes = await self._write_batch(records, skip_excluded)
            except IntegrityError as e:
                logger.warning(f"[{self.chain}] Store conflict, retrying with fresh read: {e}")
                await self._reload()
                try:
                    changes = await self._write_batch(records, skip_excluded)
                except IntegrityError as retry_error:
                    raise StoreConflictError(
                        f"Batch commit failed after retry on chain {self.chain}"
                    ) from retry_error
            self.version += 1

        self._notify(changes)
        return [change.token for change in changes]

    async def _write_batch(
        self, records: list[CommitRecord], skip_excluded: bool = True
    ) -> list[TokenChange]:
        changes: list[TokenChange] = []
        tokens: dict[str, TokenRecord] = {}
        delegates: set[str] = set()
        deleted: set[str] = set()
        cleared: set[str] = set()

        async with self.session_factory() as session:
            for record in records:
                if record.action == CommitAction.ADD_TOKEN and record.token is not None:
                    token = record.token
                    if self._is_excluded(token.contract):
                        if skip_excluded:
                            logger.debug(f"[{self.chain}] Skipping excluded contract {token.contract}")
                            continue
                        await self._clear_exclusions(session, token.contract)
                        cleared.add(token.contract)
                    row = await self._get_row(session, token.contract)
                    if row is None:
                        row = TokenRow(wallet=self.wallet, chain=self.chain, contract=token.contract)
                        session.add(row)
                    _apply_record(row, token)
                    tokens[token.contract] = token
                elif record.action == CommitAction.ADD_DELEGATE:
                    if record.contract not in self._delegate and record.contract not in delegates:
                        session.add(
                            DelegateContractRow(
                                wallet=self.wallet, chain=self.chain, contract=record.contract
                            )
                        )
                        delegates.add(record.contract)
                elif record.action == CommitAction.ADD_DELETED:
                    if record.contract not in self._deleted and record.contract not in deleted:
                        session.add(
                            DeletedContractRow(
                                wallet=self.wallet, chain=self.chain, contract=record.contract
                            )
                        )
                        deleted.add(record.contract)
            await session.commit()

        for contract, token in tokens.items():
            previous = self._tokens.get(contract)
            kind = ChangeKind.BALANCE_CHANGED
            if previous is not None and (previous.value, previous.balance) == (token.value, token.balance):
                kind = ChangeKind.METADATA_CHANGED
            self._tokens[contract] = token
            changes.append(TokenChange(kind, token))
        self._delegate = (self._delegate - cleared) | delegates
        self._deleted = (self._deleted - cleared) | deleted
        self._hidden -= cleared
        return changes

    def _is_excluded(self, contract: str) -> bool:
        return contract in self._hidden or contract in self._deleted or contract in self._delegate

    async def _clear_exclusions(self, session: AsyncSession, contract: str) -> None:
        for model in (HiddenContractRow, DeletedContractRow, DelegateContractRow):
            await session.execute(
                delete(model).where(
                    model.wallet == self.wallet,
                    model.chain == self.chain,
                    model.contract == contract,
                )
            )

    async def _get_row(self, session: AsyncSession, contract: str) -> Optional[TokenRow]:
        result = await session.execute(
            select(TokenRow).where(
                TokenRow.wallet == self.wallet,
                TokenRow.chain == self.chain,
                TokenRow.contract == contract,
            )
        )
        return result.scalar_one_or_none()

    async def update_record(self, contract: str, **changes) -> Optional[TokenRecord]:
        """Update fields of one stored token.

        Returns:
            The updated record, or None if the token is unknown or unchanged
        """
        updated = await self.update_records({contract: changes})
        return updated[0] if updated else None

    async def update_records(self, updates: dict[str, dict]) -> list[TokenRecord]:
        """Update several tokens in one transaction.

        Only fields that actually change are written. Observers receive
        BALANCE_CHANGED when value/balance changed, METADATA_CHANGED otherwise.
        """
        notifications: list[TokenChange] = []

        async with self._lock:
            pending: dict[str, tuple[TokenRecord, ChangeKind]] = {}
            for contract, fields in updates.items():
                contract = normalize_address(contract)
                current = self._tokens.get(contract)
                if current is None:
                    continue
                unknown = set(fields) - BALANCE_FIELDS - METADATA_FIELDS
                if unknown:
                    raise ValueError(f"Unknown token fields: {sorted(unknown)}")
                if "balance" in fields:
                    fields = {**fields, "balance": tuple(fields["balance"])}
                changed = {k for k, v in fields.items() if getattr(current, k) != v}
                if not changed:
                    continue
                kind = (
                    ChangeKind.BALANCE_CHANGED
                    if changed & BALANCE_FIELDS
                    else ChangeKind.METADATA_CHANGED
                )
                pending[contract] = (dataclasses.replace(current, **fields), kind)

            if not pending:
                return []

            async with self.session_factory() as session:
                for contract, (token, _) in pending.items():
                    row = await self._get_row(session, contract)
                    if row is None:
                        row = TokenRow(wallet=self.wallet, chain=self.chain, contract=contract)
                        session.add(row)
                    _apply_record(row, token)
                await session.commit()

            for contract, (token, kind) in pending.items():
                self._tokens[contract] = token
                notifications.append(TokenChange(kind, token))
            self.version += 1

        self._notify(notifications)
        return [change.token for change in notifications]

    async def remove_token(self, contract: str) -> bool:
        """Delete a token at the user's request and hide it from auto-detection."""
        contract = normalize_address(contract)
        async with self._lock:
            token = self._tokens.get(contract)
            if token is None:
                return False
            async with self.session_factory() as session:
                await session.execute(
                    delete(TokenRow).where(
                        TokenRow.wallet == self.wallet,
                        TokenRow.chain == self.chain,
                        TokenRow.contract == contract,
                    )
                )
                if contract not in self._hidden:
                    session.add(
                        HiddenContractRow(wallet=self.wallet, chain=self.chain, contract=contract)
                    )
                await session.commit()
            del self._tokens[contract]
            self._hidden.add(contract)
            self.version += 1

        self._notify([TokenChange(ChangeKind.DELETED, token)])
        return True

    async def delete_hidden_contract(self, contract: str) -> bool:
        """Remove a contract from the hidden list so it can be added again."""
        contract = normalize_address(contract)
        async with self._lock:
            if contract not in self._hidden:
                return False
            async with self.session_factory() as session:
                await session.execute(
                    delete(HiddenContractRow).where(
                        HiddenContractRow.wallet == self.wallet,
                        HiddenContractRow.chain == self.chain,
                        HiddenContractRow.contract == contract,
                    )
                )
                await session.commit()
            self._hidden.discard(contract)
            self.version += 1
        return True
