"""Territory conquest engine: ownership ledger, stores and reconciliation."""

from .config import TerritoryConfig
from .event_handlers import EventHandler, EventHandlerRegistry
from .events import CellChange, CellChangeType, Interaction, ShardBatch, TerritoryEvent
from .exceptions import (
    EventHandlerException,
    HandlerExecutionError,
    InvalidRouteError,
    LedgerException,
    RouteException,
    SeasonArchiveError,
    SeasonException,
    SeasonNotFoundError,
    StoreException,
    StoreNotInitializedError,
    StoreRetrievalError,
    SubscriptionError,
    SyncException,
    TerritoryException,
    TransactionError,
    TransitionError,
)

__all__ = [
    # Core classes
    "TerritoryConfig",
    "TerritoryEvent",
    "Interaction",
    "CellChange",
    "CellChangeType",
    "ShardBatch",
    "EventHandler",
    "EventHandlerRegistry",
    # Exceptions
    "TerritoryException",
    "StoreException",
    "StoreNotInitializedError",
    "StoreRetrievalError",
    "TransactionError",
    "RouteException",
    "InvalidRouteError",
    "LedgerException",
    "TransitionError",
    "SyncException",
    "SubscriptionError",
    "SeasonException",
    "SeasonArchiveError",
    "SeasonNotFoundError",
    "EventHandlerException",
    "HandlerExecutionError",
]
