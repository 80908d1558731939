"""Tests for the token store and its exclusion lists."""

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import DAI, NFT, USDT, WALLET, make_token
from walletwatch.errors import StoreConflictError
from walletwatch.models import NATIVE_CONTRACT, ChangeKind, CommitRecord, TokenType
from walletwatch.storage.token_store import TokenStore


class TestOpen:
    """Tests for loading the store."""

    @pytest.mark.asyncio
    async def test_open_inserts_native_token(self, token_store: TokenStore):
        """A fresh store holds exactly the native currency."""
        assert token_store.enabled_addresses() == [NATIVE_CONTRACT]
        native = token_store.token_by_contract(NATIVE_CONTRACT)
        assert native.type == TokenType.NATIVE
        assert native.symbol == "ETH"
        assert native.decimals == 18

    @pytest.mark.asyncio
    async def test_reopen_loads_persisted_rows(self, session_factory, token_store: TokenStore):
        """A second store instance sees tokens and exclusions written by the first."""
        await token_store.commit_batch(
            [CommitRecord.add_token(make_token(value="5")), CommitRecord.deleted(DAI)]
        )

        reopened = TokenStore(session_factory, WALLET, 1)
        await reopened.open()

        assert reopened.token_by_contract(USDT).value == "5"
        assert reopened.deleted_contracts() == [DAI]
        assert len(reopened.tokens) == 2

    @pytest.mark.asyncio
    async def test_stores_are_partitioned_by_chain(self, session_factory, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])

        bsc = TokenStore(session_factory, WALLET, 56)
        await bsc.open()

        assert bsc.token_by_contract(USDT) is None
        assert bsc.token_by_contract(NATIVE_CONTRACT).symbol == "BNB"


class TestCommitBatch:
    """Tests for atomic commit of detection results."""

    @pytest.mark.asyncio
    async def test_commit_mixed_batch(self, token_store: TokenStore):
        records = [
            CommitRecord.add_token(make_token()),
            CommitRecord.delegate(DAI),
            CommitRecord.deleted(NFT),
            CommitRecord.none("0x" + "99" * 20),
        ]

        added = await token_store.commit_batch(records)

        assert [token.contract for token in added] == [USDT]
        assert USDT in token_store.enabled_addresses()
        assert token_store.delegate_contracts() == [DAI]
        assert token_store.deleted_contracts() == [NFT]

    @pytest.mark.asyncio
    async def test_commit_bumps_version(self, token_store: TokenStore):
        version = token_store.version
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        assert token_store.version > version

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, token_store: TokenStore):
        version = token_store.version
        assert await token_store.commit_batch([CommitRecord.none(USDT)]) == []
        assert token_store.version == version

    @pytest.mark.asyncio
    async def test_reinsert_replaces_token(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token(value="1"))])
        await token_store.commit_batch([CommitRecord.add_token(make_token(value="2"))])

        assert token_store.token_by_contract(USDT).value == "2"
        assert token_store.enabled_addresses().count(USDT) == 1

    @pytest.mark.asyncio
    async def test_duplicate_exclusions_are_ignored(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.deleted(DAI), CommitRecord.deleted(DAI)])
        await token_store.commit_batch([CommitRecord.deleted(DAI)])
        assert token_store.deleted_contracts() == [DAI]

    @pytest.mark.asyncio
    async def test_excluded_contracts_not_inserted(self, token_store: TokenStore):
        """Token inserts for hidden, deleted or delegate contracts are dropped."""
        hidden = "0x" + "22" * 20
        await token_store.commit_batch(
            [
                CommitRecord.add_token(make_token(contract=hidden)),
                CommitRecord.deleted(DAI),
                CommitRecord.delegate(NFT),
            ]
        )
        await token_store.remove_token(hidden)

        added = await token_store.commit_batch(
            [
                CommitRecord.add_token(make_token(contract=hidden)),
                CommitRecord.add_token(make_token(contract=DAI)),
                CommitRecord.add_token(make_token(contract=NFT)),
                CommitRecord.add_token(make_token()),
            ]
        )

        assert [token.contract for token in added] == [USDT]
        enabled = set(token_store.enabled_addresses())
        assert not enabled & {hidden, DAI, NFT}

    @pytest.mark.asyncio
    async def test_explicit_insert_clears_exclusions(self, session_factory, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.deleted(DAI)])

        added = await token_store.commit_batch(
            [CommitRecord.add_token(make_token(contract=DAI))], skip_excluded=False
        )

        assert [token.contract for token in added] == [DAI]
        assert token_store.deleted_contracts() == []
        reopened = TokenStore(session_factory, WALLET, 1)
        await reopened.open()
        assert reopened.deleted_contracts() == []
        assert DAI in reopened.enabled_addresses()

    @pytest.mark.asyncio
    async def test_conflict_reloads_and_retries(self, token_store: TokenStore):
        write_batch = token_store._write_batch
        calls = []

        async def conflict_once(records, skip_excluded=True):
            calls.append(len(records))
            if len(calls) == 1:
                raise IntegrityError("INSERT INTO tokens", {}, Exception("UNIQUE constraint failed"))
            return await write_batch(records, skip_excluded)

        token_store._write_batch = conflict_once

        added = await token_store.commit_batch([CommitRecord.add_token(make_token(value="4"))])

        assert calls == [1, 1]
        assert [token.contract for token in added] == [USDT]
        assert token_store.token_by_contract(USDT).value == "4"

    @pytest.mark.asyncio
    async def test_repeated_conflict_raises(self, token_store: TokenStore):
        version = token_store.version

        async def always_conflict(records, skip_excluded=True):
            raise IntegrityError("INSERT INTO tokens", {}, Exception("UNIQUE constraint failed"))

        token_store._write_batch = always_conflict

        with pytest.raises(StoreConflictError):
            await token_store.commit_batch([CommitRecord.add_token(make_token())])

        assert token_store.token_by_contract(USDT) is None
        assert token_store.version > version  # reloaded once

    @pytest.mark.asyncio
    async def test_observers_notified_once_per_token(self, token_store: TokenStore):
        changes = []
        token_store.observe(USDT, changes.append)

        await token_store.commit_batch([CommitRecord.add_token(make_token(value="7"))])

        assert len(changes) == 1
        assert changes[0].kind == ChangeKind.BALANCE_CHANGED
        assert changes[0].token.value == "7"


class TestExclusions:
    """Tests for exclusion snapshots."""

    @pytest.mark.asyncio
    async def test_candidates_exclude_every_list(self, token_store: TokenStore):
        hidden = "0x" + "22" * 20
        await token_store.commit_batch(
            [
                CommitRecord.add_token(make_token()),
                CommitRecord.delegate(DAI),
                CommitRecord.deleted(NFT),
                CommitRecord.add_token(make_token(contract=hidden)),
            ]
        )
        await token_store.remove_token(hidden)
        fresh = "0x" + "33" * 20

        snapshot = token_store.exclusion_snapshot()
        candidates = snapshot.candidates([USDT.upper(), DAI, NFT, hidden, fresh, fresh])

        assert candidates == [fresh]

    @pytest.mark.asyncio
    async def test_snapshot_is_frozen(self, token_store: TokenStore):
        snapshot = token_store.exclusion_snapshot()
        await token_store.commit_batch([CommitRecord.deleted(DAI)])

        assert not snapshot.excludes(DAI)
        assert token_store.exclusion_snapshot().excludes(DAI)


class TestUpdates:
    """Tests for balance and metadata updates."""

    @pytest.mark.asyncio
    async def test_update_value_emits_balance_changed(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        changes = []
        token_store.observe(USDT, changes.append)

        updated = await token_store.update_record(USDT, value="1000000")

        assert updated.value == "1000000"
        assert [change.kind for change in changes] == [ChangeKind.BALANCE_CHANGED]

    @pytest.mark.asyncio
    async def test_update_symbol_emits_metadata_changed(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        changes = []
        token_store.observe(USDT, changes.append)

        await token_store.update_record(USDT, symbol="USDT0")

        assert [change.kind for change in changes] == [ChangeKind.METADATA_CHANGED]

    @pytest.mark.asyncio
    async def test_unchanged_update_is_silent(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token(value="3"))])
        changes = []
        token_store.observe(USDT, changes.append)
        version = token_store.version

        assert await token_store.update_record(USDT, value="3") is None
        assert changes == []
        assert token_store.version == version

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        with pytest.raises(ValueError):
            await token_store.update_record(USDT, price="1")

    @pytest.mark.asyncio
    async def test_invalidated_observer_not_called(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        changes = []
        observation = token_store.observe(USDT, changes.append)
        observation.invalidate()

        await token_store.update_record(USDT, value="9")

        assert changes == []
        assert token_store.observer_count(USDT) == 0


class TestRemoval:
    """Tests for user removal and the hidden list."""

    @pytest.mark.asyncio
    async def test_remove_token_hides_contract(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        changes = []
        token_store.observe(USDT, changes.append)

        assert await token_store.remove_token(USDT)

        assert token_store.token_by_contract(USDT) is None
        assert token_store.hidden_contracts() == [USDT]
        assert changes[-1].kind == ChangeKind.DELETED

    @pytest.mark.asyncio
    async def test_remove_unknown_token(self, token_store: TokenStore):
        assert not await token_store.remove_token(USDT)

    @pytest.mark.asyncio
    async def test_delete_hidden_contract(self, token_store: TokenStore):
        await token_store.commit_batch([CommitRecord.add_token(make_token())])
        await token_store.remove_token(USDT)

        assert await token_store.delete_hidden_contract(USDT)
        assert token_store.hidden_contracts() == []
        assert not token_store.exclusion_snapshot().excludes(USDT)
