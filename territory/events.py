# territory/events.py

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID, uuid4

if TYPE_CHECKING:
    from .models import OwnershipRecord


class Interaction(str, Enum):
    """Outcome of a user traversing a cell."""

    CONQUEST = "conquest"
    DEFENSE = "defense"
    STEAL = "steal"
    RECAPTURE = "recapture"

    @property
    def changes_owner(self) -> bool:
        return self is not Interaction.DEFENSE


@dataclass(frozen=True)
class TerritoryEvent:
    """Immutable record of one cell transition, published to consumers."""

    interaction: Interaction | str
    cell_id: str
    user_id: str
    activity_id: str
    occurred_at: datetime
    previous_owner_id: Optional[str] = None
    previous_expires_at: Optional[datetime] = None  # Owner's expiry before this event
    event_id: UUID = field(default_factory=uuid4)

    def __post_init__(self):
        if isinstance(self.interaction, str) and not isinstance(self.interaction, Interaction):
            object.__setattr__(self, "interaction", Interaction(self.interaction))

    def __hash__(self) -> int:
        return hash(self.event_id)

    def is_last_minute_defense(self, window: timedelta) -> bool:
        """True for a defense landing within `window` of the previous expiry.

        The ledger only records the timestamps; reward systems decide what
        a last-minute defense is worth.
        """
        if self.interaction != Interaction.DEFENSE or self.previous_expires_at is None:
            return False
        remaining = self.previous_expires_at - self.occurred_at
        return timedelta(0) <= remaining <= window

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary representation."""
        return {
            "event_id": str(self.event_id),
            "interaction": self.interaction.value,
            "cell_id": self.cell_id,
            "user_id": self.user_id,
            "activity_id": self.activity_id,
            "occurred_at": self.occurred_at.isoformat(),
            "previous_owner_id": self.previous_owner_id,
            "previous_expires_at": (
                self.previous_expires_at.isoformat() if self.previous_expires_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TerritoryEvent":
        """Create event from dictionary representation."""
        return cls(
            event_id=UUID(data["event_id"]) if data.get("event_id") else uuid4(),
            interaction=data["interaction"],
            cell_id=data["cell_id"],
            user_id=data["user_id"],
            activity_id=data["activity_id"],
            occurred_at=datetime.fromisoformat(data["occurred_at"]),
            previous_owner_id=data.get("previous_owner_id"),
            previous_expires_at=(
                datetime.fromisoformat(data["previous_expires_at"])
                if data.get("previous_expires_at")
                else None
            ),
        )


class CellChangeType(str, Enum):
    """Kind of change delivered on a shard subscription."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class CellChange:
    """One document change within a shard."""

    change_type: CellChangeType
    cell_id: str
    record: Optional["OwnershipRecord"] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.change_type.value,
            "cell_id": self.cell_id,
            "record": self.record.to_dict() if self.record else None,
        }


@dataclass(frozen=True)
class ShardBatch:
    """Changes delivered together for one shard.

    The first batch of every subscription is the full snapshot of the shard,
    expressed as ADDED changes with `is_snapshot=True`.
    """

    shard_key: str
    changes: tuple[CellChange, ...] = ()
    is_snapshot: bool = False
    delivered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
