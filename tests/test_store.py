# tests/test_store.py

"""Tests for the spatial store backends."""

import asyncio
import gc
from dataclasses import replace
from datetime import timedelta

import pytest

from spatial import geohash
from spatial.grid import Coordinate
from territory.events import CellChangeType
from territory.exceptions import StoreNotInitializedError, TransactionError
from territory.ledger import OwnershipLedger
from territory.models import HistoryEntry, OwnershipRecord, RivalryDirection
from territory.sqlite_store import SqliteSpatialStore

MADRID = "-1828_20190"
MADRID_EAST = "-1827_20190"


async def next_item(subscription, timeout=1.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


class TestTransactions:
    """Test per-cell transaction semantics."""

    @pytest.mark.asyncio
    async def test_failed_function_writes_nothing(self, store, ledger, t0):
        await ledger.apply_activity(["100_200"], "alice", "a1", now=t0)

        def explode(txn):
            txn.put_record(replace(txn.record, owner_id="mallory"))
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            await store.transact("100_200", explode)

        assert (await store.get_record("100_200")).owner_id == "alice"

    @pytest.mark.asyncio
    async def test_async_function_supported(self, store, ledger, t0):
        await ledger.apply_activity(["100_200"], "alice", "a1", now=t0)

        async def rename(txn):
            await asyncio.sleep(0)
            txn.put_record(replace(txn.record, location_label="Harbour"))
            return "done"

        assert await store.transact("100_200", rename) == "done"
        assert (await store.get_record("100_200")).location_label == "Harbour"

    @pytest.mark.asyncio
    async def test_cannot_write_other_cell(self, store, grid, t0):
        def cross_write(txn):
            txn.put_record(OwnershipRecord.blank("101_200", grid))

        with pytest.raises(TransactionError):
            await store.transact("100_200", cross_write)

    @pytest.mark.asyncio
    async def test_read_only_transaction_returns_result(self, store):
        result = await store.transact("100_200", lambda txn: txn.record)
        assert result is None
        assert await store.get_record("100_200") is None

    @pytest.mark.asyncio
    async def test_history_is_append_only_and_ordered(self, store, ledger, t0):
        for n, user in enumerate(["alice", "bob", "carol"]):
            await ledger.apply_activity(["100_200"], user, f"act{n}", now=t0 + timedelta(hours=n))

        history = await store.get_history("100_200")
        assert [h.user_id for h in history] == ["alice", "bob", "carol"]
        assert all(isinstance(h, HistoryEntry) for h in history)
        assert history[0].timestamp == t0

    @pytest.mark.asyncio
    async def test_same_cell_serialised_and_locks_released(self, store):
        trace = []

        async def slow(txn, name):
            trace.append(f"{name}-start")
            await asyncio.sleep(0.01)
            trace.append(f"{name}-end")

        await asyncio.gather(
            store.transact("100_200", lambda txn: slow(txn, "a")),
            store.transact("100_200", lambda txn: slow(txn, "b")),
            store.transact("101_200", lambda txn: None),
        )

        assert trace in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )
        gc.collect()
        assert len(store._cell_locks) == 0


class TestCellQueries:
    """Test id, owner, prefix, bbox and radius queries."""

    @pytest.mark.asyncio
    async def test_query_by_ids_is_chunked(self, store, ledger, monkeypatch, t0):
        ids = [f"{x}_0" for x in range(65)]
        await ledger.apply_activity(ids, "alice", "a1", now=t0)

        chunks = []
        original = store._query_ids_chunk

        async def counting(chunk):
            chunks.append(len(chunk))
            return await original(chunk)

        monkeypatch.setattr(store, "_query_ids_chunk", counting)
        records = await store.query_by_ids(ids + ["999_999"])

        assert len(records) == 65
        assert chunks == [30, 30, 6]

    @pytest.mark.asyncio
    async def test_query_by_ids_empty(self, store):
        assert await store.query_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_unowned_record_hidden_from_queries(self, store, ledger, t0):
        await ledger.apply_activity([MADRID], "alice", "a1", now=t0)

        def release(txn):
            txn.put_record(replace(txn.record, owner_id=None))

        await store.transact(MADRID, release)

        record = await store.get_record(MADRID)
        assert record is not None
        assert record.owner_id is None
        assert record.first_conquered_at == t0
        assert await store.query_by_ids([MADRID]) == []
        assert await store.query_geohash_prefix(record.geohash[:4]) == []
        assert await store.query_radius(record.center, 50) == []

    @pytest.mark.asyncio
    async def test_query_by_owner(self, store, ledger, t0):
        await ledger.apply_activity([MADRID, MADRID_EAST], "alice", "a1", now=t0)
        await ledger.apply_activity(["100_200"], "bob", "b1", now=t0)

        owned = await store.query_by_owner("alice")
        assert [r.cell_id for r in owned] == sorted([MADRID, MADRID_EAST])

    @pytest.mark.asyncio
    async def test_query_geohash_prefix(self, store, ledger, t0):
        await ledger.apply_activity([MADRID, MADRID_EAST, "100_200"], "alice", "a1", now=t0)
        madrid = await store.get_record(MADRID)

        found = await store.query_geohash_prefix(madrid.geohash[:4])
        assert MADRID in {r.cell_id for r in found}
        assert "100_200" not in {r.cell_id for r in found}
        assert all(r.geohash.startswith(madrid.geohash[:4]) for r in found)

        elsewhere = geohash.encode(-33.9, 151.2, 5)
        assert await store.query_geohash_prefix(elsewhere) == []

    @pytest.mark.asyncio
    async def test_query_bbox(self, store, ledger, t0):
        await ledger.apply_activity([MADRID, MADRID_EAST, "100_200"], "alice", "a1", now=t0)

        found = await store.query_bbox(40.37, -3.66, 40.39, -3.65)
        assert [r.cell_id for r in found] == sorted([MADRID, MADRID_EAST])

    @pytest.mark.asyncio
    async def test_query_radius_nearest_first(self, store, ledger, t0):
        await ledger.apply_activity(["100_200", "101_200", "110_200"], "alice", "a1", now=t0)
        origin = Coordinate(0.401, 0.201)

        close = await store.query_radius(origin, 100)
        assert [(r.cell_id, round(d)) for r, d in close] == [("100_200", 0)]

        wider = await store.query_radius(origin, 300)
        assert [r.cell_id for r, _ in wider] == ["100_200", "101_200"]
        assert wider[1][1] == pytest.approx(222.4, abs=1)


class TestVengeanceAndRivalries:
    @pytest.mark.asyncio
    async def test_targets_sorted_by_expiry(self, store, ledger, t0):
        await ledger.apply_activity(["100_200", "101_200"], "alice", "a1", now=t0)
        await ledger.apply_activity(["101_200"], "bob", "b1", now=t0 + timedelta(hours=1))
        await ledger.apply_activity(["100_200"], "bob", "b2", now=t0 + timedelta(hours=2))

        targets = await store.get_vengeance_targets("alice")
        assert [t.cell_id for t in targets] == ["101_200", "100_200"]
        assert len(await store.list_all_vengeance_targets()) == 2

    @pytest.mark.asyncio
    async def test_rivalries_sorted_by_count(self, store, ledger, t0):
        await ledger.apply_activity(["1_1", "2_2"], "bob", "b0", now=t0)
        await ledger.apply_activity(["3_3"], "carol", "c0", now=t0)
        later = t0 + timedelta(hours=1)
        await ledger.apply_activity(["1_1", "2_2", "3_3"], "alice", "a1", now=later)

        rivalries = await store.get_rivalries("alice")
        assert [(r.rival_id, r.direction, r.count) for r in rivalries] == [
            ("bob", RivalryDirection.STOLE_FROM, 2),
            ("carol", RivalryDirection.STOLE_FROM, 1),
        ]
        assert rivalries[0].last_interaction_at == later

    @pytest.mark.asyncio
    async def test_set_rivalry_count(self, store, t0):
        await store.set_rivalry_count("alice", "bob", RivalryDirection.STOLEN_BY, 4, t0)
        await store.set_rivalry_count("alice", "bob", RivalryDirection.STOLEN_BY, 6)

        rivalries = await store.get_rivalries("alice")
        assert len(rivalries) == 1
        assert rivalries[0].count == 6
        assert rivalries[0].last_interaction_at == t0


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, store, ledger, t0):
        await ledger.apply_activity(["100_200", "101_200"], "alice", "a1", now=t0)
        await ledger.apply_activity(["100_200"], "bob", "b1", now=t0 + timedelta(hours=1))

        assert await store.clear() == 2
        assert await store.all_records() == []
        assert await store.get_history("100_200") == []
        assert await store.list_all_vengeance_targets() == []
        assert await store.list_rivalries() == []


class TestFeeds:
    """Test shard and vengeance subscriptions."""

    @pytest.mark.asyncio
    async def test_shard_snapshot_then_deltas(self, store, ledger, t0):
        await ledger.apply_activity([MADRID], "alice", "a1", now=t0)
        shard = (await store.get_record(MADRID)).geohash[:5]

        subscription = store.subscribe_shard(shard)
        snapshot = await next_item(subscription)
        assert snapshot.is_snapshot
        assert [c.cell_id for c in snapshot.changes] == [MADRID]
        assert snapshot.changes[0].change_type == CellChangeType.ADDED

        await ledger.apply_activity([MADRID], "bob", "b1", now=t0 + timedelta(hours=1))
        delta = await next_item(subscription)
        assert not delta.is_snapshot
        assert delta.changes[0].change_type == CellChangeType.MODIFIED
        assert delta.changes[0].record.owner_id == "bob"

        store.unsubscribe_shard(subscription)
        assert store.feed.shard_subscription_count() == 0
        with pytest.raises(StopAsyncIteration):
            await next_item(subscription)

    @pytest.mark.asyncio
    async def test_changes_outside_shard_not_delivered(self, store, ledger, t0):
        await ledger.apply_activity([MADRID], "alice", "a1", now=t0)
        shard = (await store.get_record(MADRID)).geohash[:5]
        subscription = store.subscribe_shard(shard)
        await next_item(subscription)

        await ledger.apply_activity(["100_200"], "alice", "a2", now=t0)
        with pytest.raises(asyncio.TimeoutError):
            await next_item(subscription, timeout=0.1)
        store.unsubscribe_shard(subscription)

    @pytest.mark.asyncio
    async def test_clear_publishes_removals(self, store, ledger, t0):
        await ledger.apply_activity([MADRID], "alice", "a1", now=t0)
        shard = (await store.get_record(MADRID)).geohash[:5]
        subscription = store.subscribe_shard(shard)
        await next_item(subscription)

        await store.clear()
        batch = await next_item(subscription)
        assert batch.changes[0].change_type == CellChangeType.REMOVED
        assert batch.changes[0].cell_id == MADRID
        store.unsubscribe_shard(subscription)

    @pytest.mark.asyncio
    async def test_vengeance_subscription(self, store, ledger, t0):
        subscription = store.subscribe_vengeance("alice")
        assert await next_item(subscription) == []

        await ledger.apply_activity(["100_200"], "alice", "a1", now=t0)
        await ledger.apply_activity(["100_200"], "bob", "b1", now=t0 + timedelta(hours=1))

        targets = await next_item(subscription)
        assert [t.thief_id for t in targets] == ["bob"]

        store.unsubscribe_vengeance(subscription)
        with pytest.raises(StopAsyncIteration):
            await next_item(subscription)


class TestSqliteSpecifics:
    @pytest.mark.asyncio
    async def test_requires_initialize(self, temp_db_path):
        store = SqliteSpatialStore(temp_db_path)
        with pytest.raises(StoreNotInitializedError):
            await store.get_record("100_200")

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, temp_db_path, config, t0):
        first = SqliteSpatialStore(temp_db_path)
        await first.initialize()
        await OwnershipLedger(first, config).apply_activity(["100_200"], "alice", "a1", now=t0)
        await first.close()

        second = SqliteSpatialStore(temp_db_path)
        await second.initialize()
        try:
            record = await second.get_record("100_200")
            assert record.owner_id == "alice"
            assert record.expires_at == t0 + timedelta(days=7)
            assert len(await second.get_history("100_200")) == 1
        finally:
            await second.close()
