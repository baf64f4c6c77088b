# territory/memory_store.py

from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Optional

from spatial import geohash
from spatial.grid import Coordinate
from spatial.index import CellIndex

from .models import HistoryEntry, OwnershipRecord, RivalryDirection, RivalryRecord, VengeanceTarget
from .store import DEFAULT_IN_QUERY_LIMIT, CellTransaction, SpatialStore


class MemorySpatialStore(SpatialStore):
    """Process-local store for tests, the CLI and single-node deployments.

    Owned cell centers are kept in an R-tree so shard and radius queries do
    not scan the whole world.
    """

    def __init__(self, in_query_limit: int = DEFAULT_IN_QUERY_LIMIT):
        super().__init__(in_query_limit)
        self._records: dict[str, OwnershipRecord] = {}
        self._history: dict[str, list[HistoryEntry]] = defaultdict(list)
        self._targets_by_cell: dict[str, dict[str, VengeanceTarget]] = defaultdict(dict)
        self._rivalries: dict[tuple[str, str, RivalryDirection], RivalryRecord] = {}
        self._index = CellIndex()

    async def initialize(self) -> None:
        self.logger.info("store.initialized", backend="memory")

    async def _load_transaction(self, cell_id: str) -> CellTransaction:
        return CellTransaction(
            cell_id,
            self._records.get(cell_id),
            list(self._history.get(cell_id, ())),
            dict(self._targets_by_cell.get(cell_id, {})),
        )

    async def _commit(self, txn: CellTransaction) -> None:
        if txn.record_write is not None:
            record = txn.record_write
            self._records[record.cell_id] = record
            if record.exists:
                self._index.insert(record.cell_id, record.center)
            else:
                self._index.remove(record.cell_id)

        if txn.history_appends:
            self._history[txn.cell_id].extend(txn.history_appends)

        targets = self._targets_by_cell[txn.cell_id]
        for victim_id in txn.vengeance_deletes:
            targets.pop(victim_id, None)
        targets.update(txn.vengeance_puts)
        if not targets:
            del self._targets_by_cell[txn.cell_id]

        for thief_id, victim_id, at in txn.thefts:
            self._increment_rivalry(thief_id, victim_id, RivalryDirection.STOLE_FROM, at)
            self._increment_rivalry(victim_id, thief_id, RivalryDirection.STOLEN_BY, at)

    def _increment_rivalry(
        self, user_id: str, rival_id: str, direction: RivalryDirection, at: datetime
    ) -> None:
        key = (user_id, rival_id, direction)
        current = self._rivalries.get(key)
        count = current.count + 1 if current else 1
        self._rivalries[key] = RivalryRecord(user_id, rival_id, direction, count, at)

    async def get_record(self, cell_id: str) -> Optional[OwnershipRecord]:
        return self._records.get(cell_id)

    async def _query_ids_chunk(self, cell_ids: list[str]) -> list[OwnershipRecord]:
        return [
            self._records[cell_id]
            for cell_id in cell_ids
            if cell_id in self._records and self._records[cell_id].exists
        ]

    async def query_by_owner(self, owner_id: str) -> list[OwnershipRecord]:
        return sorted(
            (r for r in self._records.values() if r.owner_id == owner_id),
            key=lambda r: r.cell_id,
        )

    async def query_geohash_prefix(self, prefix: str) -> list[OwnershipRecord]:
        lat_min, lon_min, lat_max, lon_max = geohash.bounds(prefix)
        candidates = self._index.query_bbox(lat_min, lon_min, lat_max, lon_max)
        return sorted(
            (
                self._records[cell_id]
                for cell_id in candidates
                if self._records[cell_id].geohash.startswith(prefix)
            ),
            key=lambda r: r.cell_id,
        )

    async def query_bbox(
        self, min_lat: float, min_lon: float, max_lat: float, max_lon: float
    ) -> list[OwnershipRecord]:
        ids = self._index.query_bbox(min_lat, min_lon, max_lat, max_lon)
        return [self._records[cell_id] for cell_id in sorted(ids)]

    async def query_radius(
        self, center: Coordinate, radius_meters: float
    ) -> list[tuple[OwnershipRecord, float]]:
        return [
            (self._records[cell_id], distance)
            for cell_id, distance in self._index.query_radius(center, radius_meters)
        ]

    async def all_records(self) -> list[OwnershipRecord]:
        return sorted(self._records.values(), key=lambda r: r.cell_id)

    async def get_history(self, cell_id: str) -> list[HistoryEntry]:
        return list(self._history.get(cell_id, ()))

    async def get_vengeance_targets(self, victim_id: str) -> list[VengeanceTarget]:
        targets = [
            targets[victim_id]
            for targets in self._targets_by_cell.values()
            if victim_id in targets
        ]
        return sorted(targets, key=lambda t: t.expires_at)

    async def list_all_vengeance_targets(self) -> list[VengeanceTarget]:
        return [
            target
            for cell_id in sorted(self._targets_by_cell)
            for target in self._targets_by_cell[cell_id].values()
        ]

    async def get_rivalries(self, user_id: str) -> list[RivalryRecord]:
        return sorted(
            (r for r in self._rivalries.values() if r.user_id == user_id),
            key=lambda r: (-r.count, r.rival_id, r.direction.value),
        )

    async def list_rivalries(self) -> list[RivalryRecord]:
        return list(self._rivalries.values())

    async def set_rivalry_count(
        self,
        user_id: str,
        rival_id: str,
        direction: RivalryDirection,
        count: int,
        last_interaction_at: Optional[datetime] = None,
    ) -> None:
        key = (user_id, rival_id, direction)
        current = self._rivalries.get(key)
        if current is not None:
            self._rivalries[key] = replace(
                current,
                count=count,
                last_interaction_at=last_interaction_at or current.last_interaction_at,
            )
        else:
            self._rivalries[key] = RivalryRecord(
                user_id, rival_id, direction, count, last_interaction_at
            )

    async def _clear(self) -> None:
        self._records.clear()
        self._history.clear()
        self._targets_by_cell.clear()
        self._rivalries.clear()
        self._index.clear()
