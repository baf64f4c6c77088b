# spatial/sync.py

"""Windowed live views of cell ownership for many concurrent observers.

Each observer subscribes to the geohash shards covering its viewport
(center hash plus its 8 neighbours) and merges them into one snapshot.
Shard sets are diffed on every viewport change so unchanged shards keep
their subscriptions.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Optional
from uuid import uuid4

from territory.config import TerritoryConfig
from territory.events import CellChange, ShardBatch
from territory.exceptions import SubscriptionError
from territory.logging import get_logger
from territory.models import ensure_utc, utc_now

from . import geohash
from .grid import Coordinate
from .snapshot import CellSnapshot

if TYPE_CHECKING:
    from territory.feeds import ShardSubscription, VengeanceSubscription
    from territory.models import OwnershipRecord, VengeanceTarget
    from territory.store import SpatialStore

logger = get_logger(__name__)

ChangeListener = Callable[[str, list[CellChange]], None]
VengeanceListener = Callable[[list["VengeanceTarget"]], None]


@dataclass(frozen=True)
class Viewport:
    """Visible map region: center plus latitude/longitude spans in degrees."""

    center_lat: float
    center_lon: float
    lat_span: float
    lon_span: float

    @classmethod
    def from_bounds(
        cls, min_lat: float, min_lon: float, max_lat: float, max_lon: float
    ) -> "Viewport":
        return cls(
            center_lat=(min_lat + max_lat) / 2,
            center_lon=(min_lon + max_lon) / 2,
            lat_span=max_lat - min_lat,
            lon_span=max_lon - min_lon,
        )

    @property
    def span(self) -> float:
        return max(self.lat_span, self.lon_span)


@dataclass
class _ShardWorker:
    subscription: "ShardSubscription"
    task: asyncio.Task


class ShardGroup:
    """A set of shard subscriptions merged into one CellSnapshot."""

    def __init__(self, store: "SpatialStore", name: str = "viewport"):
        self.store = store
        self.name = name
        self.snapshot = CellSnapshot()
        self._workers: dict[str, _ShardWorker] = {}
        self._active: set[str] = set()
        self._pending_snapshots: set[str] = set()
        # Shards whose stream died; pending until resubscribed or dropped
        self._failed: set[str] = set()
        self._synced = asyncio.Event()
        self._synced.set()
        self._listeners: list[ChangeListener] = []
        self.logger = get_logger(f"{__name__}.ShardGroup")

    @property
    def shard_keys(self) -> frozenset[str]:
        return frozenset(self._workers)

    @property
    def is_synced(self) -> bool:
        """True once every active shard has delivered its snapshot."""
        return bool(self._workers) and not self._pending_snapshots

    @property
    def failed_shards(self) -> frozenset[str]:
        return frozenset(self._failed)

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    async def update_shards(self, required: Iterable[str]) -> tuple[set[str], set[str]]:
        """Diff the active shard set against `required`.

        Returns:
            (added, removed) shard keys
        """
        required = set(required)
        current = set(self._workers)

        for key in sorted(self._failed - required):
            self._failed.discard(key)
            self._deactivate(key)
        removed = current - required
        added = required - current

        for key in sorted(removed):
            await self._remove(key)
        for key in sorted(added):
            self._add(key)

        if added or removed:
            self.logger.debug(
                "sync.shards_updated",
                group=self.name,
                added=sorted(added),
                removed=sorted(removed),
                active=len(self._workers),
            )
        return added, removed

    def _add(self, key: str) -> None:
        self._failed.discard(key)
        subscription = self.store.subscribe_shard(key)
        self._active.add(key)
        self._pending_snapshots.add(key)
        self._synced.clear()
        task = asyncio.create_task(self._pump(key, subscription), name=f"shard-{self.name}-{key}")
        self._workers[key] = _ShardWorker(subscription, task)
        self.logger.debug("sync.shard_subscribed", group=self.name, shard=key)

    def _deactivate(self, key: str) -> None:
        self._active.discard(key)
        self._pending_snapshots.discard(key)
        if not self._pending_snapshots:
            self._synced.set()

    async def _remove(self, key: str) -> None:
        worker = self._workers.pop(key, None)
        if worker is None:
            return

        # Inactive first so an in-flight batch is discarded by the pump
        self._deactivate(key)
        worker.task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker.task
        self.store.unsubscribe_shard(worker.subscription)

        removed = self.snapshot.purge_shard(key)
        self._notify(removed)
        self.logger.debug(
            "sync.shard_unsubscribed", group=self.name, shard=key, cells_purged=len(removed)
        )

    async def _pump(self, key: str, subscription: "ShardSubscription") -> None:
        try:
            async for batch in subscription:
                if key not in self._active:
                    self.logger.debug("sync.batch_discarded", group=self.name, shard=key)
                    continue
                self._apply(batch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("sync.shard_failed", group=self.name, shard=key, error=str(e))
            self._fail(key)

    def _fail(self, key: str) -> None:
        """Drop a dead shard worker but keep the shard pending for the next update."""
        worker = self._workers.pop(key, None)
        if worker is not None:
            self.store.unsubscribe_shard(worker.subscription)
        self._active.discard(key)
        self._failed.add(key)
        self._pending_snapshots.add(key)
        self._synced.clear()
        self._notify(self.snapshot.purge_shard(key))

    def _apply(self, batch: ShardBatch) -> None:
        changes = self.snapshot.apply_batch(batch)

        if batch.is_snapshot and batch.shard_key in self._pending_snapshots:
            self._pending_snapshots.discard(batch.shard_key)
            self.logger.debug(
                "sync.snapshot_received",
                group=self.name,
                shard=batch.shard_key,
                cells=len(batch.changes),
                pending=len(self._pending_snapshots),
            )
            if not self._pending_snapshots:
                self._synced.set()

        self._notify(changes)

    def _notify(self, changes: list[CellChange]) -> None:
        if not changes:
            return
        for listener in list(self._listeners):
            try:
                listener(self.name, changes)
            except Exception as e:
                self.logger.error("sync.listener_failed", group=self.name, error=str(e))

    async def wait_for_first_snapshot(self, timeout: float) -> bool:
        """Block until every active shard delivered its snapshot or `timeout` elapses."""
        try:
            await asyncio.wait_for(self._synced.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            self.logger.warning(
                "sync.first_snapshot_timeout",
                group=self.name,
                timeout=timeout,
                pending=sorted(self._pending_snapshots),
            )
            return False

    async def close(self) -> None:
        for key in sorted(self._workers):
            await self._remove(key)
        for key in sorted(self._failed):
            self._deactivate(key)
        self._failed.clear()


class ObserverSession:
    """One observer's live view: viewport shards, proactive shards and vengeance."""

    def __init__(
        self,
        store: "SpatialStore",
        config: Optional[TerritoryConfig] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ):
        self.store = store
        self.config = config or TerritoryConfig()
        self.user_id = user_id
        self.session_id = session_id or uuid4().hex
        self.viewport_group = ShardGroup(store, "viewport")
        self.proactive_group = ShardGroup(store, "proactive")
        self.viewport: Optional[Viewport] = None
        self.precision: Optional[int] = None
        self.vengeance_targets: list["VengeanceTarget"] = []
        self._vengeance_subscription: Optional["VengeanceSubscription"] = None
        self._vengeance_task: Optional[asyncio.Task] = None
        self._vengeance_listeners: list[VengeanceListener] = []
        self._first_snapshot_seen = False
        self.closed = False
        self.logger = get_logger(f"{__name__}.ObserverSession")

    async def start(self) -> None:
        """Open the user-scoped vengeance stream; it lives until close()."""
        if self.user_id is None or self._vengeance_task is not None:
            return
        self._vengeance_subscription = self.store.subscribe_vengeance(self.user_id)
        self._vengeance_task = asyncio.create_task(
            self._pump_vengeance(self._vengeance_subscription),
            name=f"vengeance-{self.session_id}",
        )

    async def _pump_vengeance(self, subscription: "VengeanceSubscription") -> None:
        try:
            async for targets in subscription:
                self.vengeance_targets = targets
                for listener in list(self._vengeance_listeners):
                    try:
                        listener(targets)
                    except Exception as e:
                        self.logger.error("sync.vengeance_listener_failed", error=str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(
                "sync.vengeance_stream_failed", session_id=self.session_id, error=str(e)
            )

    def on_change(self, listener: ChangeListener) -> None:
        """Register a callback for effective cell changes of both groups."""
        self.viewport_group.add_listener(listener)
        self.proactive_group.add_listener(listener)

    def on_vengeance(self, listener: VengeanceListener) -> None:
        self._vengeance_listeners.append(listener)

    @property
    def has_received_first_snapshot(self) -> bool:
        if not self._first_snapshot_seen and self.viewport_group.is_synced:
            self._first_snapshot_seen = True
        return self._first_snapshot_seen

    def _is_minor_change(self, viewport: Viewport, precision: int) -> bool:
        previous = self.viewport
        if previous is None or precision != self.precision:
            return False
        if self.viewport_group.failed_shards:
            return False

        threshold = self.config.viewport_move_threshold
        return (
            abs(viewport.center_lat - previous.center_lat) < threshold * previous.lat_span
            and abs(viewport.center_lon - previous.center_lon) < threshold * previous.lon_span
            and abs(viewport.span - previous.span) < threshold * previous.span
        )

    async def update_viewport(self, viewport: Viewport) -> bool:
        """Resubscribe to the shards covering `viewport`.

        Returns:
            False if the change was debounced and no subscription was touched
        """
        if self.closed:
            raise SubscriptionError(f"Session {self.session_id} is closed")

        precision = geohash.precision_for_span(
            viewport.span, self.config.wide_viewport_span_degrees
        )
        if self._is_minor_change(viewport, precision):
            self.logger.debug("sync.viewport_debounced", session_id=self.session_id)
            return False

        center = geohash.encode(viewport.center_lat, viewport.center_lon, precision)
        added, removed = await self.viewport_group.update_shards(geohash.neighbors(center))
        self.viewport = viewport
        self.precision = precision

        self.logger.info(
            "sync.viewport_updated",
            session_id=self.session_id,
            precision=precision,
            center_shard=center,
            added=len(added),
            removed=len(removed),
        )
        return True

    async def update_proactive(self, latitude: float, longitude: float) -> bool:
        """Keep a wide area around the user warm, independent of the viewport."""
        if self.closed:
            raise SubscriptionError(f"Session {self.session_id} is closed")

        center = geohash.encode(latitude, longitude, self.config.proactive_precision)
        added, removed = await self.proactive_group.update_shards(geohash.neighbors(center))
        return bool(added or removed)

    async def stop_proactive(self) -> None:
        await self.proactive_group.close()

    async def wait_for_first_snapshot(self, timeout: Optional[float] = None) -> bool:
        if timeout is None:
            timeout = self.config.first_snapshot_timeout_seconds
        received = await self.viewport_group.wait_for_first_snapshot(timeout)
        if received and self.viewport_group.shard_keys:
            self._first_snapshot_seen = True
        return received

    def visible_cells(self) -> list["OwnershipRecord"]:
        return self.viewport_group.snapshot.cells()

    def nearby_cells(self) -> list["OwnershipRecord"]:
        return self.proactive_group.snapshot.cells()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True

        await self.viewport_group.close()
        await self.proactive_group.close()

        if self._vengeance_task is not None:
            self._vengeance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._vengeance_task
            self._vengeance_task = None
        if self._vengeance_subscription is not None:
            self.store.unsubscribe_vengeance(self._vengeance_subscription)
            self._vengeance_subscription = None

        self.logger.info("sync.session_closed", session_id=self.session_id)


@dataclass
class HoldingsDiff:
    """What a client cache must change to match the user's live holdings."""

    to_add: list["OwnershipRecord"] = field(default_factory=list)
    to_update: list["OwnershipRecord"] = field(default_factory=list)
    to_remove: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_remove)


class SpatialSyncService:
    """Read side of the territory store: observer sessions and bulk lookups."""

    def __init__(self, store: "SpatialStore", config: Optional[TerritoryConfig] = None):
        self.store = store
        self.config = config or TerritoryConfig()
        self._sessions: dict[str, ObserverSession] = {}
        self.logger = get_logger(f"{__name__}.SpatialSyncService")

    async def open_session(
        self, user_id: Optional[str] = None, session_id: Optional[str] = None
    ) -> ObserverSession:
        session = ObserverSession(self.store, self.config, user_id=user_id, session_id=session_id)
        await session.start()
        self._sessions[session.session_id] = session
        self.logger.info("sync.session_opened", session_id=session.session_id, user_id=user_id)
        return session

    async def close_session(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            await session.close()

    def get_session_count(self) -> int:
        return len(self._sessions)

    async def lookup_cells(self, cell_ids: Iterable[str]) -> dict[str, "OwnershipRecord"]:
        """Bulk fetch by id; the store splits the ids into IN-query sized chunks."""
        records = await self.store.query_by_ids(cell_ids)
        return {record.cell_id: record for record in records}

    async def fetch_owner_cells(
        self, user_id: str, now: Optional[datetime] = None, include_expired: bool = False
    ) -> list["OwnershipRecord"]:
        now = ensure_utc(now or utc_now())
        records = await self.store.query_by_owner(user_id)
        if include_expired:
            return records
        return [record for record in records if not record.is_expired(now)]

    async def reconcile_holdings(
        self,
        user_id: str,
        local: Mapping[str, "OwnershipRecord"],
        now: Optional[datetime] = None,
    ) -> HoldingsDiff:
        """Compare a client's cached holdings against the store."""
        remote = {record.cell_id: record for record in await self.fetch_owner_cells(user_id, now)}
        diff = HoldingsDiff(
            to_add=[remote[cell_id] for cell_id in sorted(remote.keys() - local.keys())],
            to_update=[
                remote[cell_id]
                for cell_id in sorted(remote.keys() & local.keys())
                if remote[cell_id] != local[cell_id]
            ],
            to_remove=sorted(local.keys() - remote.keys()),
        )

        self.logger.info(
            "sync.holdings_reconciled",
            user_id=user_id,
            added=len(diff.to_add),
            updated=len(diff.to_update),
            removed=len(diff.to_remove),
        )
        return diff

    async def find_nearby(
        self,
        latitude: float,
        longitude: float,
        radius_meters: float,
        now: Optional[datetime] = None,
        include_expired: bool = False,
    ) -> list[tuple["OwnershipRecord", float]]:
        """Owned cells around a point, nearest first, with distances in meters."""
        now = ensure_utc(now or utc_now())
        results = await self.store.query_radius(Coordinate(latitude, longitude), radius_meters)
        if include_expired:
            return results
        return [(record, dist) for record, dist in results if not record.is_expired(now)]

    async def close(self) -> None:
        for session_id in list(self._sessions):
            await self.close_session(session_id)
