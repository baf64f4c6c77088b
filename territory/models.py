# territory/models.py

"""Persistent entities of the territory ledger."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from spatial import geohash
from spatial.grid import Coordinate, GridIndex, parse_cell_id
from spatial.route import RoutePoint, validate_point

from .events import Interaction


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix kinds."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


@dataclass(frozen=True)
class OwnershipRecord:
    """Ownership state of one grid cell.

    A record without `owner_id` is treated as nonexistent by queries but
    keeps its historical fields for audit. Expiry is computed, never stored.
    """

    cell_id: str
    center: Coordinate
    boundary: tuple[Coordinate, ...]
    geohash: str
    owner_id: Optional[str] = None
    first_conquered_at: Optional[datetime] = None
    last_conquered_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    activity_id: Optional[str] = None
    defense_count: int = 0
    is_hot_spot: bool = False
    location_label: Optional[str] = None

    @classmethod
    def blank(cls, cell_id: str, grid: GridIndex, precision: int = 6) -> "OwnershipRecord":
        """Unowned template with geometry derived from the cell index."""
        x, y = parse_cell_id(cell_id)
        center = grid.cell_center(x, y)
        return cls(
            cell_id=cell_id,
            center=center,
            boundary=tuple(grid.cell_boundary(x, y)),
            geohash=geohash.encode(center.latitude, center.longitude, precision),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is None or now > self.expires_at

    def effective_owner(self, now: datetime) -> Optional[str]:
        """Owner id, or None when unowned or lapsed."""
        if self.owner_id is None or self.is_expired(now):
            return None
        return self.owner_id

    @property
    def exists(self) -> bool:
        return self.owner_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "owner_id": self.owner_id,
            "center": self.center.to_dict(),
            "boundary": [point.to_dict() for point in self.boundary],
            "geohash": self.geohash,
            "first_conquered_at": dt_to_str(self.first_conquered_at),
            "last_conquered_at": dt_to_str(self.last_conquered_at),
            "expires_at": dt_to_str(self.expires_at),
            "activity_id": self.activity_id,
            "defense_count": self.defense_count,
            "is_hot_spot": self.is_hot_spot,
            "location_label": self.location_label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OwnershipRecord":
        return cls(
            cell_id=data["cell_id"],
            owner_id=data.get("owner_id"),
            center=Coordinate.from_dict(data["center"]),
            boundary=tuple(Coordinate.from_dict(p) for p in data.get("boundary", [])),
            geohash=data["geohash"],
            first_conquered_at=dt_from_str(data.get("first_conquered_at")),
            last_conquered_at=dt_from_str(data.get("last_conquered_at")),
            expires_at=dt_from_str(data.get("expires_at")),
            activity_id=data.get("activity_id"),
            defense_count=int(data.get("defense_count", 0)),
            is_hot_spot=bool(data.get("is_hot_spot", False)),
            location_label=data.get("location_label"),
        )


@dataclass(frozen=True)
class VengeanceTarget:
    """A stolen cell the victim can reclaim from the thief for a bonus."""

    victim_id: str
    cell_id: str
    thief_id: str
    stolen_at: datetime
    expires_at: datetime
    xp_reward: int
    activity_id: Optional[str] = None
    center: Optional[Coordinate] = None
    location_label: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "victim_id": self.victim_id,
            "cell_id": self.cell_id,
            "thief_id": self.thief_id,
            "stolen_at": dt_to_str(self.stolen_at),
            "expires_at": dt_to_str(self.expires_at),
            "xp_reward": self.xp_reward,
            "activity_id": self.activity_id,
            "center": self.center.to_dict() if self.center else None,
            "location_label": self.location_label,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VengeanceTarget":
        return cls(
            victim_id=data["victim_id"],
            cell_id=data["cell_id"],
            thief_id=data["thief_id"],
            stolen_at=dt_from_str(data["stolen_at"]),
            expires_at=dt_from_str(data["expires_at"]),
            xp_reward=int(data["xp_reward"]),
            activity_id=data.get("activity_id"),
            center=Coordinate.from_dict(data["center"]) if data.get("center") else None,
            location_label=data.get("location_label"),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """Append-only log line for one cell interaction."""

    cell_id: str
    user_id: str
    interaction: Interaction
    timestamp: datetime
    activity_id: Optional[str] = None
    previous_owner_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cell_id": self.cell_id,
            "user_id": self.user_id,
            "interaction": self.interaction.value,
            "timestamp": dt_to_str(self.timestamp),
            "activity_id": self.activity_id,
            "previous_owner_id": self.previous_owner_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        return cls(
            cell_id=data["cell_id"],
            user_id=data["user_id"],
            interaction=Interaction(data["interaction"]),
            timestamp=dt_from_str(data["timestamp"]),
            activity_id=data.get("activity_id"),
            previous_owner_id=data.get("previous_owner_id"),
        )


class RivalryDirection(str, Enum):
    STOLE_FROM = "stole_from"  # user took cells from rival
    STOLEN_BY = "stolen_by"  # rival took cells from user

    @property
    def mirror(self) -> "RivalryDirection":
        if self is RivalryDirection.STOLE_FROM:
            return RivalryDirection.STOLEN_BY
        return RivalryDirection.STOLE_FROM


@dataclass(frozen=True)
class RivalryRecord:
    """One side of a thief/victim relationship as seen by `user_id`."""

    user_id: str
    rival_id: str
    direction: RivalryDirection
    count: int = 0
    last_interaction_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "rival_id": self.rival_id,
            "direction": self.direction.value,
            "count": self.count,
            "last_interaction_at": dt_to_str(self.last_interaction_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RivalryRecord":
        return cls(
            user_id=data["user_id"],
            rival_id=data["rival_id"],
            direction=RivalryDirection(data["direction"]),
            count=int(data.get("count", 0)),
            last_interaction_at=dt_from_str(data.get("last_interaction_at")),
        )


class ActivityType(str, Enum):
    RUN = "run"
    WALK = "walk"
    BIKE = "bike"
    HIKE = "hike"
    OTHER_OUTDOOR = "other_outdoor"
    INDOOR = "indoor"

    @property
    def is_outdoor(self) -> bool:
        return self is not ActivityType.INDOOR


@dataclass
class Activity:
    """A completed activity handed over by the ingestion pipeline."""

    id: str
    user_id: str
    activity_type: ActivityType
    start_date: datetime
    end_date: datetime
    route: list[RoutePoint] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Activity":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            activity_type=ActivityType(data.get("activity_type", "run")),
            start_date=ensure_utc(datetime.fromisoformat(data["start_date"])),
            end_date=ensure_utc(datetime.fromisoformat(data["end_date"])),
            route=[validate_point(p) for p in data.get("route", [])],
        )
