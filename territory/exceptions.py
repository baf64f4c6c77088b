# territory/exceptions.py

"""Exception hierarchy for the territory conquest engine."""


class TerritoryException(Exception):
    """Base exception for all territory engine errors."""

    pass


# Store Exceptions
class StoreException(TerritoryException):
    """Base exception for spatial store operations."""

    pass


class StoreNotInitializedError(StoreException):
    """Raised when the store is used before initialize() or after close()."""

    pass


class TransactionError(StoreException):
    """Raised when a per-cell transaction cannot be committed."""

    pass


class StoreRetrievalError(StoreException):
    """Raised when records cannot be read from the store."""

    pass


# Route Exceptions
class RouteException(TerritoryException):
    """Base exception for route handling."""

    pass


class InvalidRouteError(RouteException):
    """Raised when a route point cannot be interpreted at all."""

    pass


# Ledger Exceptions
class LedgerException(TerritoryException):
    """Base exception for ownership ledger operations."""

    pass


class TransitionError(LedgerException):
    """Raised when a cell transition cannot be computed."""

    pass


# Sync Exceptions
class SyncException(TerritoryException):
    """Base exception for spatial synchronization."""

    pass


class SubscriptionError(SyncException):
    """Raised when a shard or vengeance subscription is misused."""

    pass


# Season Exceptions
class SeasonException(TerritoryException):
    """Base exception for season management."""

    pass


class SeasonArchiveError(SeasonException):
    """Raised when a season archive cannot be written or read."""

    pass


class SeasonNotFoundError(SeasonException):
    """Raised when a requested season archive does not exist."""

    pass


# Event Handler Exceptions
class EventHandlerException(TerritoryException):
    """Base exception for event handler operations."""

    pass


class HandlerExecutionError(EventHandlerException):
    """Raised when an event handler fails during execution."""

    pass
