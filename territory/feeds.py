# territory/feeds.py

"""Live change feeds: per-shard cell changes and per-user vengeance lists."""

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from .events import CellChange, CellChangeType, ShardBatch
from .logging import get_logger

if TYPE_CHECKING:
    from .models import OwnershipRecord, VengeanceTarget

logger = get_logger(__name__)

_CLOSED = object()

SnapshotLoader = Callable[[], Awaitable[list["OwnershipRecord"]]]
VengeanceLoader = Callable[[], Awaitable[list["VengeanceTarget"]]]


class ShardSubscription:
    """Async iterator of ShardBatch for one geohash prefix.

    The first batch is the shard snapshot, loaded lazily after the
    subscription is registered so no change can fall between the two.
    """

    def __init__(self, shard_key: str, load_snapshot: SnapshotLoader):
        self.shard_key = shard_key
        self._load_snapshot = load_snapshot
        self._queue: asyncio.Queue = asyncio.Queue()
        self._snapshot_sent = False
        self.closed = False

    def matches(self, geohash: str) -> bool:
        return geohash.startswith(self.shard_key)

    def push(self, batch: ShardBatch) -> None:
        if not self.closed:
            self._queue.put_nowait(batch)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ShardSubscription":
        return self

    async def __anext__(self) -> ShardBatch:
        if not self._snapshot_sent:
            if self.closed:
                raise StopAsyncIteration
            self._snapshot_sent = True
            records = await self._load_snapshot()
            return ShardBatch(
                shard_key=self.shard_key,
                changes=tuple(
                    CellChange(CellChangeType.ADDED, record.cell_id, record) for record in records
                ),
                is_snapshot=True,
            )

        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class VengeanceSubscription:
    """Async iterator yielding a victim's full target list whenever it changes."""

    def __init__(self, victim_id: str, load_targets: VengeanceLoader):
        self.victim_id = victim_id
        self._load_targets = load_targets
        self._signals: asyncio.Queue = asyncio.Queue()
        self._signals.put_nowait(True)  # initial list
        self.closed = False

    def notify(self) -> None:
        if not self.closed:
            self._signals.put_nowait(True)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._signals.put_nowait(_CLOSED)

    def __aiter__(self) -> "VengeanceSubscription":
        return self

    async def __anext__(self) -> list["VengeanceTarget"]:
        item = await self._signals.get()
        if item is _CLOSED:
            raise StopAsyncIteration

        # Coalesce bursts into a single reload
        while not self._signals.empty():
            pending = self._signals.get_nowait()
            if pending is _CLOSED:
                raise StopAsyncIteration

        return await self._load_targets()


class ChangeFeed:
    """Registry of live subscriptions for one store."""

    def __init__(self):
        self._shards: dict[str, set[ShardSubscription]] = defaultdict(set)
        self._vengeance: dict[str, set[VengeanceSubscription]] = defaultdict(set)
        self.logger = get_logger(f"{__name__}.ChangeFeed")

    def add_shard(self, subscription: ShardSubscription) -> None:
        self._shards[subscription.shard_key].add(subscription)
        self.logger.debug("feed.shard_added", shard=subscription.shard_key)

    def remove_shard(self, subscription: ShardSubscription) -> None:
        subscribers = self._shards.get(subscription.shard_key)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._shards[subscription.shard_key]
        self.logger.debug("feed.shard_removed", shard=subscription.shard_key)

    def add_vengeance(self, subscription: VengeanceSubscription) -> None:
        self._vengeance[subscription.victim_id].add(subscription)

    def remove_vengeance(self, subscription: VengeanceSubscription) -> None:
        subscribers = self._vengeance.get(subscription.victim_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._vengeance[subscription.victim_id]

    def shard_subscription_count(self) -> int:
        return sum(len(subs) for subs in self._shards.values())

    def publish_cells(self, changes: Iterable[CellChange]) -> None:
        """Fan cell changes out to every shard whose prefix covers them."""
        grouped: dict[ShardSubscription, list[CellChange]] = defaultdict(list)

        for change in changes:
            if change.record is None:
                continue
            for key, subscribers in self._shards.items():
                if not change.record.geohash.startswith(key):
                    continue
                for subscription in subscribers:
                    grouped[subscription].append(change)

        for subscription, batch_changes in grouped.items():
            subscription.push(
                ShardBatch(shard_key=subscription.shard_key, changes=tuple(batch_changes))
            )

    def publish_vengeance(self, victim_ids: Iterable[str]) -> None:
        for victim_id in set(victim_ids):
            for subscription in self._vengeance.get(victim_id, ()):
                subscription.notify()

    def close_all(self) -> None:
        for subscribers in self._shards.values():
            for subscription in subscribers:
                subscription.close()
        for subscribers in self._vengeance.values():
            for subscription in subscribers:
                subscription.close()
        self._shards.clear()
        self._vengeance.clear()
