"""Tests for custom exception hierarchy."""

import pytest

from territory.exceptions import (
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


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_territory_exception_is_base(self):
        """TerritoryException is the base for all custom exceptions."""
        for base in (
            StoreException,
            RouteException,
            LedgerException,
            SyncException,
            SeasonException,
            EventHandlerException,
        ):
            assert issubclass(base, TerritoryException)

    def test_store_exception_hierarchy(self):
        """Store exceptions inherit properly."""
        assert issubclass(StoreNotInitializedError, StoreException)
        assert issubclass(TransactionError, StoreException)
        assert issubclass(StoreRetrievalError, StoreException)
        assert issubclass(TransactionError, TerritoryException)

    def test_domain_exception_hierarchy(self):
        assert issubclass(InvalidRouteError, RouteException)
        assert issubclass(TransitionError, LedgerException)
        assert issubclass(SubscriptionError, SyncException)
        assert issubclass(HandlerExecutionError, EventHandlerException)

    def test_season_exception_hierarchy(self):
        """Season exceptions inherit properly."""
        assert issubclass(SeasonArchiveError, SeasonException)
        assert issubclass(SeasonNotFoundError, SeasonException)
        assert issubclass(SeasonNotFoundError, TerritoryException)


class TestExceptionUsage:
    """Test raising and catching exceptions."""

    def test_catch_by_base_class(self):
        """Specific exceptions can be caught by the base class."""
        with pytest.raises(TerritoryException):
            raise TransactionError("commit failed")

    def test_message_preserved(self):
        error = InvalidRouteError("Invalid route point 'x'")
        assert str(error) == "Invalid route point 'x'"

    def test_exception_chaining(self):
        """Exceptions keep their cause."""
        original = ValueError("Invalid cell id: 'garbage'")
        try:
            raise TransitionError("Cannot build record") from original
        except TransitionError as e:
            assert e.__cause__ is original

    def test_not_caught_by_sibling(self):
        with pytest.raises(StoreException):
            try:
                raise StoreRetrievalError("boom")
            except LedgerException:
                pytest.fail("Store errors are not ledger errors")
