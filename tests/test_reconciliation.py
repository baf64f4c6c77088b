# tests/test_reconciliation.py

"""Tests for vengeance and rivalry repair passes."""

from datetime import timedelta

import pytest

from territory.models import RivalryDirection, VengeanceTarget
from territory.reconciliation import Reconciler

CELL = "100_200"


@pytest.fixture
def reconciler(store, config):
    return Reconciler(store, config)


async def steal_scenario(ledger, t0):
    await ledger.apply_activity([CELL], "alice", "a1", now=t0)
    await ledger.apply_activity([CELL], "bob", "b1", now=t0 + timedelta(hours=1))


class TestAuditVengeance:
    @pytest.mark.asyncio
    async def test_removes_ghost_target(self, reconciler, ledger, store, t0):
        """A target whose victim currently owns the cell is deleted."""
        await steal_scenario(ledger, t0)

        def plant_ghost(txn):
            txn.put_vengeance(
                VengeanceTarget(
                    victim_id="bob",
                    cell_id=CELL,
                    thief_id="carol",
                    stolen_at=t0,
                    expires_at=t0 + timedelta(days=7),
                    xp_reward=25,
                )
            )

        await store.transact(CELL, plant_ghost)
        report = await reconciler.audit_vengeance(now=t0 + timedelta(hours=2))

        assert report.ghost_targets_removed == 1
        assert report.expired_targets_removed == 0
        assert await store.get_vengeance_targets("bob") == []
        assert len(await store.get_vengeance_targets("alice")) == 1

    @pytest.mark.asyncio
    async def test_removes_expired_target(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)

        report = await reconciler.audit_vengeance(now=t0 + timedelta(days=9))

        assert report.expired_targets_removed == 1
        assert await store.list_all_vengeance_targets() == []

    @pytest.mark.asyncio
    async def test_clean_state_untouched(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)
        report = await reconciler.audit_vengeance(now=t0 + timedelta(hours=2))

        assert report.ghost_targets_removed == 0
        assert report.expired_targets_removed == 0
        assert len(await store.list_all_vengeance_targets()) == 1

    @pytest.mark.asyncio
    async def test_failure_recorded_per_cell(self, reconciler, ledger, store, monkeypatch, t0):
        await steal_scenario(ledger, t0)

        async def broken(cell_id, fn):
            raise RuntimeError("locked")

        monkeypatch.setattr(store, "transact", broken)
        report = await reconciler.audit_vengeance(now=t0)

        assert len(report.errors) == 1
        assert CELL in report.errors[0]


class TestRivalries:
    @pytest.mark.asyncio
    async def test_missing_side_created(self, reconciler, store, t0):
        await store.set_rivalry_count("bob", "alice", RivalryDirection.STOLE_FROM, 3, t0)

        report = await reconciler.reconcile_rivalries()

        assert report.rivalries_created == 1
        rivalries = await store.get_rivalries("alice")
        assert [(r.rival_id, r.direction, r.count) for r in rivalries] == [
            ("bob", RivalryDirection.STOLEN_BY, 3)
        ]

    @pytest.mark.asyncio
    async def test_lower_side_raised(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)
        await store.set_rivalry_count("alice", "bob", RivalryDirection.STOLEN_BY, 4)

        report = await reconciler.reconcile_rivalries()

        assert report.rivalries_adjusted == 1
        counts = {
            (r.user_id, r.direction): r.count for r in await store.list_rivalries()
        }
        assert counts[("bob", RivalryDirection.STOLE_FROM)] == 4
        assert counts[("alice", RivalryDirection.STOLEN_BY)] == 4

    @pytest.mark.asyncio
    async def test_consistent_pairs_untouched(self, reconciler, ledger, t0):
        await steal_scenario(ledger, t0)
        report = await reconciler.reconcile_rivalries()

        assert report.rivalries_adjusted == 0
        assert report.rivalries_created == 0


class TestRebuild:
    @pytest.mark.asyncio
    async def test_missing_target_rebuilt(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)
        original = (await store.get_vengeance_targets("alice"))[0]
        await store.transact(CELL, lambda txn: txn.delete_vengeance("alice"))

        report = await reconciler.rebuild_vengeance_from_history(now=t0 + timedelta(hours=2))

        assert report.targets_rebuilt == 1
        rebuilt = (await store.get_vengeance_targets("alice"))[0]
        assert rebuilt.thief_id == "bob"
        assert rebuilt.stolen_at == original.stolen_at
        assert rebuilt.expires_at == original.expires_at
        assert rebuilt.activity_id == "b1"

        again = await reconciler.rebuild_vengeance_from_history(now=t0 + timedelta(hours=2))
        assert again.targets_rebuilt == 0

    @pytest.mark.asyncio
    async def test_conquest_of_lapsed_cell_not_rebuilt(self, reconciler, ledger, store, t0):
        await ledger.apply_activity([CELL], "alice", "a1", now=t0)
        later = t0 + timedelta(days=8)
        await ledger.apply_activity([CELL], "bob", "b1", now=later)

        report = await reconciler.rebuild_vengeance_from_history(now=later)

        assert report.targets_rebuilt == 0
        assert await store.list_all_vengeance_targets() == []

    @pytest.mark.asyncio
    async def test_defense_after_steal_still_rebuilds(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)
        await ledger.apply_activity([CELL], "bob", "b2", now=t0 + timedelta(hours=3))
        await store.transact(CELL, lambda txn: txn.delete_vengeance("alice"))

        report = await reconciler.rebuild_vengeance_from_history(now=t0 + timedelta(hours=4))

        assert report.targets_rebuilt == 1
        assert (await store.get_vengeance_targets("alice"))[0].thief_id == "bob"


class TestFullSweep:
    @pytest.mark.asyncio
    async def test_sweep_reports_all_passes(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)
        await store.set_rivalry_count("alice", "bob", RivalryDirection.STOLEN_BY, 0)
        await store.transact(CELL, lambda txn: txn.delete_vengeance("alice"))

        report = await reconciler.run_full_sweep(now=t0 + timedelta(hours=2))
        data = report.to_dict()

        assert data["rivalries_adjusted"] == 1
        assert data["targets_rebuilt"] == 1
        assert data["errors"] == []

    @pytest.mark.asyncio
    async def test_defenses_do_not_extend_expired_target(self, reconciler, ledger, store, t0):
        """A target past its window stays gone even though the thief kept defending."""
        await steal_scenario(ledger, t0)
        await ledger.apply_activity([CELL], "bob", "b2", now=t0 + timedelta(days=6))

        report = await reconciler.run_full_sweep(now=t0 + timedelta(days=8))

        assert report.expired_targets_removed == 1
        assert report.targets_rebuilt == 0
        assert await store.list_all_vengeance_targets() == []

    @pytest.mark.asyncio
    async def test_rebuild_uses_expiry_from_steal_time(self, reconciler, ledger, store, t0):
        await steal_scenario(ledger, t0)
        await ledger.apply_activity([CELL], "bob", "b2", now=t0 + timedelta(days=6))
        await store.transact(CELL, lambda txn: txn.delete_vengeance("alice"))

        late = await reconciler.rebuild_vengeance_from_history(now=t0 + timedelta(days=8))
        assert late.targets_rebuilt == 0

        within = t0 + timedelta(days=6, hours=1)
        report = await reconciler.rebuild_vengeance_from_history(now=within)
        assert report.targets_rebuilt == 1
        rebuilt = (await store.get_vengeance_targets("alice"))[0]
        assert rebuilt.expires_at == t0 + timedelta(days=7, hours=1)
