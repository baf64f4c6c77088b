# territory/engine.py

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from spatial.path import PathResolution, PathResolver
from spatial.sync import SpatialSyncService

from .config import TerritoryConfig
from .event_handlers import EventFilter, EventHandler, EventHandlerRegistry
from .events import Interaction
from .exceptions import InvalidRouteError
from .ledger import Labeler, LedgerResult, OwnershipLedger
from .logging import get_logger
from .memory_store import MemorySpatialStore
from .models import Activity
from .reconciliation import Reconciler
from .sqlite_store import SqliteSpatialStore
from .store import SpatialStore


class ActivityStatus(str, Enum):
    PROCESSED = "processed"
    SKIPPED_INDOOR = "skipped_indoor"
    SKIPPED_EMPTY = "skipped_empty"
    SKIPPED_INVALID = "skipped_invalid"


@dataclass
class ActivityOutcome:
    """Result of feeding one completed activity through the engine."""

    activity_id: str
    user_id: str
    status: ActivityStatus
    resolution: Optional[PathResolution] = None
    result: Optional[LedgerResult] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "activity_id": self.activity_id,
            "user_id": self.user_id,
            "status": self.status.value,
        }
        if self.resolution is not None:
            data["cells_resolved"] = len(self.resolution.cell_ids)
            data["points_dropped"] = self.resolution.points_dropped
            data["gps_jumps"] = len(self.resolution.anomalies)
            data["distance_meters"] = round(self.resolution.total_distance_meters, 1)
        if self.result is not None:
            data.update(self.result.to_dict())
        if self.error:
            data["error"] = self.error
        return data


def create_store(config: TerritoryConfig) -> SpatialStore:
    """Build the store backend named in the configuration."""
    if config.store_backend == "memory":
        return MemorySpatialStore(in_query_limit=config.in_query_limit)
    return SqliteSpatialStore(config.database_path, in_query_limit=config.in_query_limit)


class TerritoryEngine:
    """Orchestrates completed activities: resolver, ledger, then event dispatch."""

    def __init__(
        self,
        store: SpatialStore,
        config: Optional[TerritoryConfig] = None,
        labeler: Optional[Labeler] = None,
    ):
        self.config = config or TerritoryConfig()
        self.store = store
        self.resolver = PathResolver.from_config(self.config)
        self.ledger = OwnershipLedger(store, self.config, self.resolver.grid)
        self.sync = SpatialSyncService(store, self.config)
        self.reconciler = Reconciler(store, self.config)
        self.labeler = labeler
        self.logger = get_logger(f"{__name__}.TerritoryEngine")

        self._event_handlers = EventHandlerRegistry()
        self._label_tasks: set[asyncio.Task] = set()
        self._initialized = False

    async def initialize(self) -> None:
        await self.store.initialize()
        self._initialized = True
        self.logger.info(
            "engine.initialized",
            backend=self.config.store_backend,
            cell_size_degrees=self.config.cell_size_degrees,
            cell_expiration_days=self.config.cell_expiration_days,
        )

    async def shutdown(self) -> None:
        for task in list(self._label_tasks):
            task.cancel()
        if self._label_tasks:
            await asyncio.gather(*self._label_tasks, return_exceptions=True)
        await self.sync.close()
        await self.store.close()
        self._initialized = False
        self.logger.info("engine.shutdown")

    async def complete_activity(
        self, activity: Activity, now: Optional[datetime] = None
    ) -> ActivityOutcome:
        """Resolve an activity's route to cells and apply them to the ledger.

        Indoor activities, routes without usable points and malformed routes
        are reported as skipped rather than raised.
        """
        if not activity.activity_type.is_outdoor:
            self.logger.info(
                "activity.skipped_indoor", activity_id=activity.id, user_id=activity.user_id
            )
            return ActivityOutcome(activity.id, activity.user_id, ActivityStatus.SKIPPED_INDOOR)

        try:
            resolution = self.resolver.resolve_detailed(activity.route)
        except InvalidRouteError as e:
            self.logger.warning("activity.invalid_route", activity_id=activity.id, error=str(e))
            return ActivityOutcome(
                activity.id, activity.user_id, ActivityStatus.SKIPPED_INVALID, error=str(e)
            )

        if not resolution.cell_ids:
            self.logger.info("activity.skipped_empty", activity_id=activity.id)
            return ActivityOutcome(
                activity.id, activity.user_id, ActivityStatus.SKIPPED_EMPTY, resolution=resolution
            )

        result = await self.ledger.apply_activity(
            resolution.cell_ids, activity.user_id, activity.id, now
        )

        handler_failures = await self._event_handlers.dispatch_all(result.events)

        changed = [e.cell_id for e in result.events if e.interaction != Interaction.DEFENSE]
        if self.labeler is not None and changed:
            task = asyncio.create_task(self.ledger.label_cells(changed, self.labeler))
            self._label_tasks.add(task)
            task.add_done_callback(self._label_tasks.discard)

        self.logger.info(
            "activity.processed",
            activity_id=activity.id,
            user_id=activity.user_id,
            cells=len(resolution.cell_ids),
            gps_jumps=len(resolution.anomalies),
            applied=result.applied,
            failed=result.failed,
            handler_failures=handler_failures,
        )
        return ActivityOutcome(
            activity.id,
            activity.user_id,
            ActivityStatus.PROCESSED,
            resolution=resolution,
            result=result,
        )

    async def wait_for_labels(self) -> None:
        """Wait for background labelling started by complete_activity."""
        if self._label_tasks:
            await asyncio.gather(*list(self._label_tasks), return_exceptions=True)

    def on_event(
        self,
        interaction: Interaction | str,
        handler: EventHandler,
        when: Optional[EventFilter] = None,
    ) -> None:
        self._event_handlers.on(interaction, handler, when=when)

    def on_last_minute_defense(self, handler: EventHandler) -> None:
        """Subscribe to defenses landing within the configured window before expiry."""
        window = timedelta(hours=self.config.last_minute_defense_hours)
        self._event_handlers.on_last_minute_defense(handler, window)

    def off_event(self, interaction: Interaction | str, handler: EventHandler) -> bool:
        return self._event_handlers.off(interaction, handler)

    def add_event_listener(self, listener: EventHandler) -> None:
        """Subscribe to every interaction."""
        self._event_handlers.on_all(listener)

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "backend": self.config.store_backend,
            "sessions": self.sync.get_session_count(),
            "shard_subscriptions": self.store.feed.shard_subscription_count(),
            "handlers": self._event_handlers.get_handler_count(),
            "pending_labels": len(self._label_tasks),
        }
