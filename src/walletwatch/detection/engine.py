"""Token auto-detection for one wallet on one chain.

Two independent phases feed newly discovered tokens into the token store:

- transacted-token detection scans the wallet's interaction history since
  the last checkpoint (separately for ERC20 and non-ERC20 transfers);
- partner-token detection probes a fixed allow-list of contracts and only
  fetches metadata for the ones the wallet actually holds.

Each phase is single-flight: launching it while it runs is a no-op.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from walletwatch.detection.classifier import ContractClassifier
from walletwatch.detection.history import ExplorerHistoryProvider
from walletwatch.errors import (
    CancelledContextError,
    ContractCallError,
    HistoryQueryError,
    ImportTokenError,
    NetworkUnreachableError,
    StoreConflictError,
)
from walletwatch.models import (
    ChainId,
    CommitAction,
    CommitRecord,
    TokenClass,
    TokenRecord,
    TokenType,
    normalize_address,
)
from walletwatch.rpc.client import EvmRpcClient
from walletwatch.storage.checkpoints import CheckpointStore
from walletwatch.storage.token_store import TokenStore
from walletwatch.storage.transactions import TransactionStore

logger = logging.getLogger(__name__)


class PhaseState(str, Enum):
    """Lifecycle of a detection phase."""

    IDLE = "idle"
    RUNNING = "running"
    DONE = "done"


class PhaseTask:
    """Single-flight handle for one detection phase.

    The running state is always cleared when the phase finishes, whether it
    succeeded, failed or was cancelled.
    """

    def __init__(self, name: str):
        self.name = name
        self.state = PhaseState.IDLE
        self.runs = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self.state == PhaseState.RUNNING

    def launch(self, phase: Callable[[], Awaitable[None]]) -> bool:
        """Start the phase unless it is already running.

        Returns:
            True if a new run was started
        """
        if self.is_running:
            logger.debug(f"{self.name} detection already running")
            return False
        self.state = PhaseState.RUNNING
        self.runs += 1
        self._task = asyncio.create_task(self._run(phase))
        return True

    async def _run(self, phase: Callable[[], Awaitable[None]]) -> None:
        try:
            await phase()
        except CancelledContextError as e:
            logger.debug(f"{self.name} detection abandoned: {e}")
        except Exception as e:
            logger.error(f"{self.name} detection failed: {e}")
        finally:
            self.state = PhaseState.DONE

    async def wait(self) -> None:
        """Wait for the current run, if any, to finish."""
        if self._task is not None:
            await asyncio.shield(self._task)


class TokenAutoDetector:
    """Auto-detects tokens held by a wallet on one chain."""

    def __init__(
        self,
        chain: ChainId,
        wallet: str,
        rpc: EvmRpcClient,
        classifier: ContractClassifier,
        token_store: TokenStore,
        transaction_store: TransactionStore,
        checkpoints: CheckpointStore,
        history: Optional[ExplorerHistoryProvider],
        partner_contracts: Iterable[str] = (),
        current_wallet: Optional[Callable[[], str]] = None,
        on_tokens_changed: Optional[Callable[[], None]] = None,
        auto_fetch_disabled: bool = False,
    ):
        """Initialize the detector.

        Args:
            chain: Chain id
            wallet: Wallet address the detector works for
            rpc: Contract call layer for balance probes
            classifier: Contract classifier for this chain
            token_store: Token store receiving detected tokens
            transaction_store: Transfer history (non-fungible balances)
            checkpoints: Checkpoint persistence
            history: Interaction-history provider (None disables transacted scans)
            partner_contracts: Allow-list probed by partner detection
            current_wallet: Returns the active wallet; a mismatch abandons a run
            on_tokens_changed: Called once per run that changed the store
            auto_fetch_disabled: Make both phases no-ops
        """
        self.chain = chain
        self.wallet = normalize_address(wallet)
        self.rpc = rpc
        self.classifier = classifier
        self.token_store = token_store
        self.transaction_store = transaction_store
        self.checkpoints = checkpoints
        self.history = history
        self.partner_contracts = [normalize_address(c) for c in partner_contracts]
        self.current_wallet = current_wallet or (lambda: self.wallet)
        self.on_tokens_changed = on_tokens_changed
        self.auto_fetch_disabled = auto_fetch_disabled

        self.transacted_phase = PhaseTask(f"[{chain}] transacted-token")
        self.partner_phase = PhaseTask(f"[{chain}] partner-token")
        self._abandoned = False

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    @property
    def is_abandoned(self) -> bool:
        return self._abandoned

    def abandon(self) -> None:
        """Discard the results of any run still in flight."""
        self._abandoned = True

    def start(self) -> None:
        """Launch both detection phases in the background."""
        self.detect_transacted_tokens()
        self.detect_partner_tokens()

    def detect_transacted_tokens(self) -> bool:
        if self.auto_fetch_disabled or self._abandoned or self.history is None:
            return False
        return self.transacted_phase.launch(self._detect_transacted)

    def detect_partner_tokens(self) -> bool:
        if self.auto_fetch_disabled or self._abandoned or not self.partner_contracts:
            return False
        return self.partner_phase.launch(self._detect_partner)

    async def wait(self) -> None:
        """Wait until both phases are idle."""
        await self.transacted_phase.wait()
        await self.partner_phase.wait()

    def _ensure_current(self, wallet: str) -> None:
        if self._abandoned:
            raise CancelledContextError(f"Chain {self.chain} was removed")
        if normalize_address(self.current_wallet()) != wallet:
            raise CancelledContextError(f"Wallet changed during scan of {wallet}")

    # ------------------------------------------------------------------
    # Transacted-token detection
    # ------------------------------------------------------------------

    async def _detect_transacted(self) -> None:
        wallet = normalize_address(self.current_wallet())
        for token_class in (TokenClass.ERC20, TokenClass.NON_ERC20):
            try:
                await self.detect_transacted_class(wallet, token_class)
            except (NetworkUnreachableError, HistoryQueryError) as e:
                logger.warning(f"[{self.chain}] {token_class.value} history query failed: {e}")

    async def detect_transacted_class(self, wallet: str, token_class: TokenClass) -> bool:
        """Run one transacted-token scan for a token class.

        Returns:
            True if the store changed
        """
        snapshot = self.token_store.exclusion_snapshot()

        checkpoint = await self.checkpoints.get(self.chain, wallet, token_class)
        start_block = checkpoint + 1 if checkpoint is not None else None

        history = await self.history.contracts_interacted_since(
            wallet, self.chain, start_block, token_class
        )
        if history.max_block is not None:
            await self.checkpoints.advance(self.chain, wallet, token_class, history.max_block)

        self._ensure_current(wallet)

        if history.transfers and token_class == TokenClass.NON_ERC20:
            await self.transaction_store.add_transfers(history.transfers)

        candidates = snapshot.candidates(history.contracts)
        if not candidates:
            return False

        logger.info(
            f"[{self.chain}] Classifying {len(candidates)} transacted "
            f"{token_class.value} contract(s)"
        )
        records = await self._gather_records(
            [self.classifier.build_commit_record(contract) for contract in candidates],
            candidates,
        )
        return await self._commit(wallet, records)

    # ------------------------------------------------------------------
    # Partner-token detection
    # ------------------------------------------------------------------

    async def _detect_partner(self) -> None:
        wallet = normalize_address(self.current_wallet())
        snapshot = self.token_store.exclusion_snapshot()
        candidates = snapshot.candidates(self.partner_contracts)
        if not candidates:
            return

        records = await self._gather_records(
            [self._probe_partner(wallet, contract) for contract in candidates],
            candidates,
        )
        await self._commit(wallet, records)

    async def _probe_partner(self, wallet: str, contract: str) -> CommitRecord:
        """Check the wallet's balance before fetching full metadata."""
        try:
            token_type = await self.classifier.token_type(contract)
            if token_type == TokenType.ERC875:
                if not await self.rpc.erc875_balance_of(contract, wallet):
                    return CommitRecord.none(contract)
            elif token_type == TokenType.ERC20:
                if await self.rpc.balance_of(contract, wallet) <= 0:
                    return CommitRecord.none(contract)
            else:
                # Non-fungible balances come from the balance fetcher
                return CommitRecord.none(contract)
        except (NetworkUnreachableError, ContractCallError) as e:
            logger.debug(f"[{self.chain}] Partner probe failed for {contract}: {e}")
            return CommitRecord.none(contract)

        return await self.classifier.build_commit_record(contract)

    # ------------------------------------------------------------------
    # Shared pipeline
    # ------------------------------------------------------------------

    async def _gather_records(
        self, coroutines: list[Awaitable[CommitRecord]], contracts: list[str]
    ) -> list[CommitRecord]:
        results = await asyncio.gather(*coroutines, return_exceptions=True)
        records = []
        for contract, result in zip(contracts, results):
            if isinstance(result, BaseException):
                logger.warning(f"[{self.chain}] Classification of {contract} failed: {result}")
                continue
            if result.non_empty:
                records.append(result)
        return records

    async def _commit(self, wallet: str, records: list[CommitRecord]) -> bool:
        self._ensure_current(wallet)
        if not records:
            return False

        try:
            added = await self.token_store.commit_batch(records)
        except StoreConflictError as e:
            logger.error(f"[{self.chain}] Detection commit failed: {e}")
            return False

        markers = [record for record in records if record.action != CommitAction.ADD_TOKEN]
        if not added and not markers:
            # Every token was hidden or removed while the scan ran
            return False

        logger.info(f"[{self.chain}] Committed {len(added)} token(s), {len(markers)} marker(s)")
        self._notify_tokens_changed()
        return True

    def _notify_tokens_changed(self) -> None:
        if self.on_tokens_changed is not None:
            try:
                self.on_tokens_changed()
            except Exception as e:
                logger.error(f"[{self.chain}] tokens-changed callback error: {e}")

    # ------------------------------------------------------------------
    # Explicit import
    # ------------------------------------------------------------------

    async def add_imported_token(
        self, contract: str, only_if_balance: bool = False
    ) -> TokenRecord:
        """Add a contract the user imported.

        The contract is removed from the hidden list first so a failed import
        can still be picked up by auto-detection later.

        Raises:
            ImportTokenError: Contract is not a (held) token or the network failed
        """
        contract = normalize_address(contract)
        await self.token_store.delete_hidden_contract(contract)

        record = await self.classifier.build_commit_record(contract, only_if_balance)
        if record.action != CommitAction.ADD_TOKEN:
            raise ImportTokenError(f"Could not import {contract} on chain {self.chain}")

        added = await self.token_store.commit_batch([record], skip_excluded=False)
        self._notify_tokens_changed()
        return added[0]
