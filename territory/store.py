# territory/store.py

"""Generic spatial store interface with per-cell transactions."""

import asyncio
import inspect
import math
import weakref
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar, Union

from spatial.grid import Coordinate, great_circle_distance_meters
from spatial.index import METERS_PER_DEGREE

from .events import CellChange, CellChangeType
from .exceptions import TerritoryException, TransactionError
from .feeds import ChangeFeed, ShardSubscription, VengeanceSubscription
from .logging import get_logger
from .models import HistoryEntry, OwnershipRecord, RivalryDirection, RivalryRecord, VengeanceTarget

T = TypeVar("T")

DEFAULT_IN_QUERY_LIMIT = 30


class CellTransaction:
    """Staged reads and writes for one cell.

    Holds the cell record, its history and every vengeance target that
    references the cell (keyed by victim). Writes are applied by the store
    only after the transaction function returns without raising.
    """

    def __init__(
        self,
        cell_id: str,
        record: Optional[OwnershipRecord],
        history: list[HistoryEntry],
        vengeance: dict[str, VengeanceTarget],
    ):
        self.cell_id = cell_id
        self.original_record = record
        self.record = record
        self.history: tuple[HistoryEntry, ...] = tuple(history)
        self.vengeance: dict[str, VengeanceTarget] = dict(vengeance)

        self.record_write: Optional[OwnershipRecord] = None
        self.history_appends: list[HistoryEntry] = []
        self.vengeance_puts: dict[str, VengeanceTarget] = {}
        self.vengeance_deletes: set[str] = set()
        self.thefts: list[tuple[str, str, datetime]] = []

    def _check_cell(self, cell_id: str) -> None:
        if cell_id != self.cell_id:
            raise TransactionError(
                f"Transaction for {self.cell_id} cannot write cell {cell_id}"
            )

    def put_record(self, record: OwnershipRecord) -> None:
        self._check_cell(record.cell_id)
        self.record = record
        self.record_write = record

    def append_history(self, entry: HistoryEntry) -> None:
        self._check_cell(entry.cell_id)
        self.history_appends.append(entry)

    def put_vengeance(self, target: VengeanceTarget) -> None:
        self._check_cell(target.cell_id)
        self.vengeance[target.victim_id] = target
        self.vengeance_puts[target.victim_id] = target
        self.vengeance_deletes.discard(target.victim_id)

    def delete_vengeance(self, victim_id: str) -> None:
        if victim_id not in self.vengeance:
            return
        del self.vengeance[victim_id]
        self.vengeance_puts.pop(victim_id, None)
        self.vengeance_deletes.add(victim_id)

    def record_theft(self, thief_id: str, victim_id: str, at: datetime) -> None:
        """Stage the reciprocal rivalry increment for a stolen cell."""
        self.thefts.append((thief_id, victim_id, at))

    def history_has_activity(self, activity_id: str) -> bool:
        return any(
            entry.activity_id == activity_id
            for entry in (*self.history, *self.history_appends)
        )

    @property
    def has_writes(self) -> bool:
        return bool(
            self.record_write is not None
            or self.history_appends
            or self.vengeance_puts
            or self.vengeance_deletes
            or self.thefts
        )

    def cell_change(self) -> Optional[CellChange]:
        """Change to publish on shard feeds, if the visible state changed."""
        if self.record_write is None:
            return None

        before = self.original_record is not None and self.original_record.exists
        after = self.record_write.exists

        if after:
            change_type = CellChangeType.MODIFIED if before else CellChangeType.ADDED
            return CellChange(change_type, self.cell_id, self.record_write)
        if before:
            return CellChange(CellChangeType.REMOVED, self.cell_id, self.original_record)
        return None

    def touched_victims(self) -> set[str]:
        return set(self.vengeance_puts) | self.vengeance_deletes


TransactionFn = Callable[[CellTransaction], Union[T, Awaitable[T]]]


class SpatialStore(ABC):
    """Backend-neutral persistence for cells, history, vengeance and rivalries.

    Every read-modify-write of a cell goes through `transact`, which holds
    that cell's lock for the duration. Distinct cells never block each other.
    """

    def __init__(self, in_query_limit: int = DEFAULT_IN_QUERY_LIMIT):
        self.in_query_limit = in_query_limit
        self.feed = ChangeFeed()
        # Entries vanish once no transaction holds or awaits the lock
        self._cell_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self.logger = get_logger(f"{__name__}.{type(self).__name__}")

    # Lifecycle

    @abstractmethod
    async def initialize(self) -> None:
        ...

    async def close(self) -> None:
        self.feed.close_all()

    # Transactions

    def _lock_for(self, cell_id: str) -> asyncio.Lock:
        lock = self._cell_locks.get(cell_id)
        if lock is None:
            lock = asyncio.Lock()
            self._cell_locks[cell_id] = lock
        return lock

    async def transact(self, cell_id: str, fn: TransactionFn) -> Any:
        """Run `fn` against a fresh view of the cell and commit its writes.

        `fn` may be sync or async. If it raises, nothing is written.

        Raises:
            TransactionError: If the staged writes cannot be committed
        """
        async with self._lock_for(cell_id):
            txn = await self._load_transaction(cell_id)

            result = fn(txn)
            if inspect.isawaitable(result):
                result = await result

            if not txn.has_writes:
                return result

            try:
                await self._commit(txn)
            except TerritoryException:
                raise
            except Exception as e:
                self.logger.error("transaction.commit_failed", cell_id=cell_id, error=str(e))
                raise TransactionError(f"Failed to commit cell {cell_id}: {e}") from e

            self._publish(txn)
            return result

    def _publish(self, txn: CellTransaction) -> None:
        change = txn.cell_change()
        if change is not None:
            self.feed.publish_cells([change])

        victims = txn.touched_victims()
        for thief_id, victim_id, _ in txn.thefts:
            victims.update((thief_id, victim_id))
        if victims:
            self.feed.publish_vengeance(victims)

    @abstractmethod
    async def _load_transaction(self, cell_id: str) -> CellTransaction:
        ...

    @abstractmethod
    async def _commit(self, txn: CellTransaction) -> None:
        ...

    # Cell queries

    @abstractmethod
    async def get_record(self, cell_id: str) -> Optional[OwnershipRecord]:
        """Stored record for the cell, including unowned audit records."""

    async def query_by_ids(self, cell_ids: Iterable[str]) -> list[OwnershipRecord]:
        """Existing records for the given ids, fetched in IN-query sized chunks."""
        ids = sorted(set(cell_ids))
        records: list[OwnershipRecord] = []

        for start in range(0, len(ids), self.in_query_limit):
            chunk = ids[start : start + self.in_query_limit]
            records.extend(await self._query_ids_chunk(chunk))

        self.logger.debug(
            "store.query_by_ids",
            requested=len(ids),
            found=len(records),
            chunks=(len(ids) + self.in_query_limit - 1) // self.in_query_limit,
        )
        return records

    @abstractmethod
    async def _query_ids_chunk(self, cell_ids: list[str]) -> list[OwnershipRecord]:
        ...

    @abstractmethod
    async def query_by_owner(self, owner_id: str) -> list[OwnershipRecord]:
        ...

    @abstractmethod
    async def query_geohash_prefix(self, prefix: str) -> list[OwnershipRecord]:
        """Existing records whose geohash starts with `prefix`."""

    @abstractmethod
    async def query_bbox(
        self, min_lat: float, min_lon: float, max_lat: float, max_lon: float
    ) -> list[OwnershipRecord]:
        ...

    async def query_radius(
        self, center: Coordinate, radius_meters: float
    ) -> list[tuple[OwnershipRecord, float]]:
        """Existing records within a great-circle radius, nearest first."""
        d_lat = radius_meters / METERS_PER_DEGREE
        d_lon = radius_meters / (
            METERS_PER_DEGREE * max(math.cos(math.radians(center.latitude)), 1e-6)
        )
        candidates = await self.query_bbox(
            center.latitude - d_lat,
            center.longitude - d_lon,
            center.latitude + d_lat,
            center.longitude + d_lon,
        )

        results = []
        for record in candidates:
            distance = great_circle_distance_meters(center, record.center)
            if distance <= radius_meters:
                results.append((record, distance))
        results.sort(key=lambda item: (item[1], item[0].cell_id))
        return results

    @abstractmethod
    async def all_records(self) -> list[OwnershipRecord]:
        ...

    @abstractmethod
    async def get_history(self, cell_id: str) -> list[HistoryEntry]:
        ...

    # Vengeance

    @abstractmethod
    async def get_vengeance_targets(self, victim_id: str) -> list[VengeanceTarget]:
        ...

    @abstractmethod
    async def list_all_vengeance_targets(self) -> list[VengeanceTarget]:
        ...

    # Rivalries

    @abstractmethod
    async def get_rivalries(self, user_id: str) -> list[RivalryRecord]:
        ...

    @abstractmethod
    async def list_rivalries(self) -> list[RivalryRecord]:
        ...

    @abstractmethod
    async def set_rivalry_count(
        self,
        user_id: str,
        rival_id: str,
        direction: RivalryDirection,
        count: int,
        last_interaction_at: Optional[datetime] = None,
    ) -> None:
        ...

    # Maintenance

    async def clear(self) -> int:
        """Delete every record, history line, target and rivalry.

        Observers receive REMOVED changes for the cells that disappeared.

        Returns:
            Number of cell records removed
        """
        existing = [record for record in await self.all_records() if record.exists]
        victims = {target.victim_id for target in await self.list_all_vengeance_targets()}

        await self._clear()

        self.feed.publish_cells(
            CellChange(CellChangeType.REMOVED, record.cell_id, record) for record in existing
        )
        self.feed.publish_vengeance(victims)
        self.logger.info("store.cleared", cells_removed=len(existing))
        return len(existing)

    @abstractmethod
    async def _clear(self) -> None:
        ...

    # Subscriptions

    def subscribe_shard(self, shard_key: str) -> ShardSubscription:
        subscription = ShardSubscription(shard_key, lambda: self.query_geohash_prefix(shard_key))
        self.feed.add_shard(subscription)
        return subscription

    def unsubscribe_shard(self, subscription: ShardSubscription) -> None:
        self.feed.remove_shard(subscription)
        subscription.close()

    def subscribe_vengeance(self, victim_id: str) -> VengeanceSubscription:
        subscription = VengeanceSubscription(
            victim_id, lambda: self.get_vengeance_targets(victim_id)
        )
        self.feed.add_vengeance(subscription)
        return subscription

    def unsubscribe_vengeance(self, subscription: VengeanceSubscription) -> None:
        self.feed.remove_vengeance(subscription)
        subscription.close()
