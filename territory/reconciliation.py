# territory/reconciliation.py

"""Maintenance passes that repair drift between derived and primary data.

Cell records and history are authoritative. Vengeance targets and rivalry
counters are derived from them and may drift after partial failures; the
passes here bring them back in line and are safe to re-run.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .config import TerritoryConfig
from .events import Interaction
from .logging import get_logger
from .models import RivalryDirection, VengeanceTarget, ensure_utc, utc_now
from .store import CellTransaction, SpatialStore

logger = get_logger(__name__)


@dataclass
class ReconciliationReport:
    ghost_targets_removed: int = 0
    expired_targets_removed: int = 0
    rivalries_adjusted: int = 0
    rivalries_created: int = 0
    targets_rebuilt: int = 0
    errors: list[str] = field(default_factory=list)
    # (cell_id, victim_id) pairs deleted as expired during this report's passes
    expired_keys: set[tuple[str, str]] = field(default_factory=set)

    def to_dict(self) -> dict:
        return {
            "ghost_targets_removed": self.ghost_targets_removed,
            "expired_targets_removed": self.expired_targets_removed,
            "rivalries_adjusted": self.rivalries_adjusted,
            "rivalries_created": self.rivalries_created,
            "targets_rebuilt": self.targets_rebuilt,
            "errors": list(self.errors),
        }


class Reconciler:
    def __init__(self, store: SpatialStore, config: Optional[TerritoryConfig] = None):
        self.store = store
        self.config = config or TerritoryConfig()
        self.logger = get_logger(f"{__name__}.Reconciler")

    async def audit_vengeance(
        self, now: Optional[datetime] = None, report: Optional[ReconciliationReport] = None
    ) -> ReconciliationReport:
        """Delete targets whose victim owns the cell again, and expired targets."""
        now = ensure_utc(now or utc_now())
        report = report or ReconciliationReport()

        by_cell: dict[str, set[str]] = {}
        for target in await self.store.list_all_vengeance_targets():
            by_cell.setdefault(target.cell_id, set()).add(target.victim_id)

        for cell_id, victims in sorted(by_cell.items()):

            def audit(txn: CellTransaction, victims: set[str] = victims) -> tuple[int, list[str]]:
                ghosts = 0
                expired = []
                owner = txn.record.effective_owner(now) if txn.record else None
                for victim_id in sorted(victims):
                    target = txn.vengeance.get(victim_id)
                    if target is None:
                        continue
                    if owner == victim_id:
                        txn.delete_vengeance(victim_id)
                        ghosts += 1
                    elif target.is_expired(now):
                        txn.delete_vengeance(victim_id)
                        expired.append(victim_id)
                return ghosts, expired

            try:
                ghosts, expired = await self.store.transact(cell_id, audit)
            except Exception as e:
                self.logger.error("reconcile.audit_failed", cell_id=cell_id, error=str(e))
                report.errors.append(f"audit {cell_id}: {e}")
                continue

            report.ghost_targets_removed += ghosts
            report.expired_targets_removed += len(expired)
            report.expired_keys.update((cell_id, victim_id) for victim_id in expired)

        self.logger.info(
            "reconcile.vengeance_audited",
            ghosts=report.ghost_targets_removed,
            expired=report.expired_targets_removed,
        )
        return report

    async def reconcile_rivalries(
        self, report: Optional[ReconciliationReport] = None
    ) -> ReconciliationReport:
        """Make both sides of every thief/victim pair agree on the larger count."""
        report = report or ReconciliationReport()

        # (thief, victim) -> [stole_from record, stolen_by record]
        pairs: dict[tuple[str, str], list] = {}
        for rivalry in await self.store.list_rivalries():
            if rivalry.direction == RivalryDirection.STOLE_FROM:
                pairs.setdefault((rivalry.user_id, rivalry.rival_id), [None, None])[0] = rivalry
            else:
                pairs.setdefault((rivalry.rival_id, rivalry.user_id), [None, None])[1] = rivalry

        for (thief_id, victim_id), (stole_from, stolen_by) in sorted(pairs.items()):
            thief_count = stole_from.count if stole_from else 0
            victim_count = stolen_by.count if stolen_by else 0
            target_count = max(thief_count, victim_count)
            last_at = max(
                (r.last_interaction_at for r in (stole_from, stolen_by) if r and r.last_interaction_at),
                default=None,
            )

            if stole_from is None or thief_count != target_count:
                await self.store.set_rivalry_count(
                    thief_id, victim_id, RivalryDirection.STOLE_FROM, target_count, last_at
                )
                if stole_from is None:
                    report.rivalries_created += 1
                else:
                    report.rivalries_adjusted += 1

            if stolen_by is None or victim_count != target_count:
                await self.store.set_rivalry_count(
                    victim_id, thief_id, RivalryDirection.STOLEN_BY, target_count, last_at
                )
                if stolen_by is None:
                    report.rivalries_created += 1
                else:
                    report.rivalries_adjusted += 1

        self.logger.info(
            "reconcile.rivalries_reconciled",
            pairs=len(pairs),
            adjusted=report.rivalries_adjusted,
            created=report.rivalries_created,
        )
        return report

    async def rebuild_vengeance_from_history(
        self, now: Optional[datetime] = None, report: Optional[ReconciliationReport] = None
    ) -> ReconciliationReport:
        """Recreate missing targets from each cell's latest unreclaimed steal."""
        now = ensure_utc(now or utc_now())
        report = report or ReconciliationReport()
        window = timedelta(days=self.config.vengeance_expiration_days)
        cell_expiration = timedelta(days=self.config.cell_expiration_days)

        for record in await self.store.all_records():
            if record.effective_owner(now) is None:
                continue

            def rebuild(txn: CellTransaction) -> bool:
                if txn.record is None:
                    return False
                owner = txn.record.effective_owner(now)
                if owner is None:
                    return False

                # Latest ownership change, skipping defenses by the same owner
                change = next(
                    (e for e in reversed(txn.history) if e.interaction.changes_owner), None
                )
                if change is None or change.user_id != owner:
                    return False
                if change.interaction not in (Interaction.STEAL, Interaction.RECAPTURE):
                    return False

                victim_id = change.previous_owner_id
                if not victim_id or victim_id == owner or victim_id in txn.vengeance:
                    return False
                if (txn.cell_id, victim_id) in report.expired_keys:
                    return False

                # Same expiry the ledger gave the target when the steal happened
                expires_at = change.timestamp + max(window, cell_expiration)
                if now > expires_at:
                    return False

                txn.put_vengeance(
                    VengeanceTarget(
                        victim_id=victim_id,
                        cell_id=txn.cell_id,
                        thief_id=owner,
                        stolen_at=change.timestamp,
                        expires_at=expires_at,
                        xp_reward=self.config.vengeance_xp_reward,
                        activity_id=change.activity_id,
                        center=txn.record.center,
                        location_label=txn.record.location_label,
                    )
                )
                return True

            try:
                if await self.store.transact(record.cell_id, rebuild):
                    report.targets_rebuilt += 1
            except Exception as e:
                self.logger.error("reconcile.rebuild_failed", cell_id=record.cell_id, error=str(e))
                report.errors.append(f"rebuild {record.cell_id}: {e}")

        self.logger.info("reconcile.vengeance_rebuilt", rebuilt=report.targets_rebuilt)
        return report

    async def run_full_sweep(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = ensure_utc(now or utc_now())
        report = ReconciliationReport()
        await self.audit_vengeance(now, report)
        await self.reconcile_rivalries(report)
        await self.rebuild_vengeance_from_history(now, report)

        self.logger.info("reconcile.sweep_completed", **report.to_dict())
        return report
