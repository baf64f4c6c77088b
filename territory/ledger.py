# territory/ledger.py

"""Per-cell ownership state machine."""

import asyncio
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

from spatial.grid import Coordinate, GridIndex

from .config import TerritoryConfig
from .events import Interaction, TerritoryEvent
from .exceptions import TransitionError
from .logging import get_logger
from .models import HistoryEntry, OwnershipRecord, VengeanceTarget, ensure_utc, utc_now
from .store import CellTransaction, SpatialStore

logger = get_logger(__name__)

# Resolves a human readable place name for a cell center
Labeler = Callable[[Coordinate], Awaitable[Optional[str]]]


@dataclass
class LedgerResult:
    """Summary of one activity applied to the ledger."""

    user_id: str
    activity_id: str
    events: list[TerritoryEvent] = field(default_factory=list)
    skipped_cells: list[str] = field(default_factory=list)
    failed_cells: list[str] = field(default_factory=list)
    counts: Counter = field(default_factory=Counter)

    @property
    def applied(self) -> int:
        return len(self.events)

    @property
    def skipped(self) -> int:
        return len(self.skipped_cells)

    @property
    def failed(self) -> int:
        return len(self.failed_cells)

    def count(self, interaction: Interaction) -> int:
        return self.counts.get(interaction, 0)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "activity_id": self.activity_id,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_cells": list(self.failed_cells),
            "interactions": {i.value: self.count(i) for i in Interaction},
        }


class OwnershipLedger:
    """Applies conquest, defense, steal and recapture transitions.

    Each cell is read and written inside its own store transaction. Cells of
    one activity are processed concurrently and fail independently.
    """

    def __init__(
        self,
        store: SpatialStore,
        config: Optional[TerritoryConfig] = None,
        grid: Optional[GridIndex] = None,
    ):
        self.store = store
        self.config = config or TerritoryConfig()
        self.grid = grid or GridIndex(self.config.cell_size_degrees)
        self.logger = get_logger(f"{__name__}.OwnershipLedger")

    @property
    def cell_expiration(self) -> timedelta:
        return timedelta(days=self.config.cell_expiration_days)

    @property
    def vengeance_window(self) -> timedelta:
        return timedelta(days=self.config.vengeance_expiration_days)

    async def apply_activity(
        self,
        cell_ids: Iterable[str],
        user_id: str,
        activity_id: str,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Apply one activity's cells for `user_id`.

        Re-applying the same activity is a no-op per cell. A failing cell is
        logged and counted without affecting the others.
        """
        now = ensure_utc(now or utc_now())
        ids = sorted(set(cell_ids))
        result = LedgerResult(user_id=user_id, activity_id=activity_id)

        outcomes = await asyncio.gather(
            *(self.apply_cell(cell_id, user_id, activity_id, now) for cell_id in ids),
            return_exceptions=True,
        )

        for cell_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                result.failed_cells.append(cell_id)
                self.logger.error(
                    "ledger.cell_failed",
                    cell_id=cell_id,
                    user_id=user_id,
                    activity_id=activity_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
            elif outcome is None:
                result.skipped_cells.append(cell_id)
            else:
                result.events.append(outcome)
                result.counts[outcome.interaction] += 1

        self.logger.info(
            "ledger.activity_applied",
            user_id=user_id,
            activity_id=activity_id,
            cells=len(ids),
            applied=result.applied,
            skipped=result.skipped,
            failed=result.failed,
            conquests=result.count(Interaction.CONQUEST),
            defenses=result.count(Interaction.DEFENSE),
            steals=result.count(Interaction.STEAL),
            recaptures=result.count(Interaction.RECAPTURE),
        )
        return result

    async def apply_cell(
        self, cell_id: str, user_id: str, activity_id: str, now: datetime
    ) -> Optional[TerritoryEvent]:
        """Apply a single cell transition. Returns None if already applied."""
        return await self.store.transact(
            cell_id, lambda txn: self._transition(txn, user_id, activity_id, now)
        )

    def _transition(
        self, txn: CellTransaction, user_id: str, activity_id: str, now: datetime
    ) -> Optional[TerritoryEvent]:
        if txn.history_has_activity(activity_id):
            self.logger.debug(
                "ledger.cell_already_applied", cell_id=txn.cell_id, activity_id=activity_id
            )
            return None

        try:
            record = txn.record or OwnershipRecord.blank(
                txn.cell_id, self.grid, self.config.geohash_storage_precision
            )
        except ValueError as e:
            raise TransitionError(f"Cannot build record for cell {txn.cell_id}: {e}") from e

        live_owner = record.effective_owner(now)
        own_target = txn.vengeance.get(user_id)
        holds_vengeance = own_target is not None and not own_target.is_expired(now)

        for victim_id, target in list(txn.vengeance.items()):
            if target.is_expired(now):
                txn.delete_vengeance(victim_id)

        new_expiry = now + self.cell_expiration

        if live_owner == user_id:
            interaction = Interaction.DEFENSE
            updated = replace(
                record,
                expires_at=new_expiry,
                defense_count=record.defense_count + 1,
                last_conquered_at=now,
            )
        else:
            if holds_vengeance:
                interaction = Interaction.RECAPTURE
            elif live_owner is None:
                interaction = Interaction.CONQUEST
            else:
                interaction = Interaction.STEAL

            updated = replace(
                record,
                owner_id=user_id,
                first_conquered_at=record.first_conquered_at or now,
                last_conquered_at=now,
                expires_at=new_expiry,
                defense_count=0,
                activity_id=activity_id,
            )

            # Live cell changed hands
            if live_owner is not None:
                txn.put_vengeance(
                    VengeanceTarget(
                        victim_id=live_owner,
                        cell_id=txn.cell_id,
                        thief_id=user_id,
                        stolen_at=now,
                        expires_at=max(now + self.vengeance_window, new_expiry),
                        xp_reward=self.config.vengeance_xp_reward,
                        activity_id=activity_id,
                        center=record.center,
                        location_label=record.location_label,
                    )
                )
                txn.record_theft(user_id, live_owner, now)

        txn.delete_vengeance(user_id)

        entry = HistoryEntry(
            cell_id=txn.cell_id,
            user_id=user_id,
            interaction=interaction,
            timestamp=now,
            activity_id=activity_id,
            previous_owner_id=live_owner,
        )
        txn.append_history(entry)

        updated = replace(updated, is_hot_spot=self._is_hot_spot([*txn.history, entry], now))
        txn.put_record(updated)

        self.logger.debug(
            "ledger.cell_applied",
            cell_id=txn.cell_id,
            interaction=interaction.value,
            user_id=user_id,
            previous_owner_id=live_owner,
        )

        return TerritoryEvent(
            interaction=interaction,
            cell_id=txn.cell_id,
            user_id=user_id,
            activity_id=activity_id,
            occurred_at=now,
            previous_owner_id=live_owner,
            previous_expires_at=record.expires_at,
        )

    def _is_hot_spot(self, history: list[HistoryEntry], now: datetime) -> bool:
        window_start = now - timedelta(days=self.config.hot_spot_window_days)
        changes = sum(
            1
            for entry in history
            if entry.interaction.changes_owner and entry.timestamp >= window_start
        )
        return changes >= self.config.hot_spot_min_changes

    async def label_cells(self, cell_ids: Iterable[str], labeler: Labeler) -> int:
        """Fill `location_label` for cells that have none. Ownership is untouched.

        Returns:
            Number of cells labelled
        """
        ids = sorted(set(cell_ids))
        labelled = 0

        for cell_id in ids:
            record = await self.store.get_record(cell_id)
            if record is None or record.location_label:
                continue

            try:
                label = await labeler(record.center)
            except Exception as e:
                self.logger.warning("ledger.label_failed", cell_id=cell_id, error=str(e))
                continue

            if not label:
                continue

            def apply_label(txn: CellTransaction, label: str = label) -> bool:
                if txn.record is None or txn.record.location_label:
                    return False
                txn.put_record(replace(txn.record, location_label=label))
                for target in list(txn.vengeance.values()):
                    txn.put_vengeance(replace(target, location_label=label))
                return True

            if await self.store.transact(cell_id, apply_label):
                labelled += 1

        self.logger.debug("ledger.cells_labelled", requested=len(ids), labelled=labelled)
        return labelled
