# territory/seasons.py

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .exceptions import SeasonArchiveError, SeasonNotFoundError
from .logging import get_logger
from .models import utc_now
from .store import SpatialStore

logger = get_logger(__name__)

_SEASON_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


@dataclass
class SeasonArchive:
    """World state captured at the end of a season."""

    season_id: str
    archived_at: datetime
    cells: list[dict[str, Any]] = field(default_factory=list)
    history: list[dict[str, Any]] = field(default_factory=list)
    vengeance_targets: list[dict[str, Any]] = field(default_factory=list)
    rivalries: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_id": self.season_id,
            "archived_at": self.archived_at.isoformat(),
            "cells": self.cells,
            "history": self.history,
            "vengeance_targets": self.vengeance_targets,
            "rivalries": self.rivalries,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SeasonArchive":
        return cls(
            season_id=data["season_id"],
            archived_at=datetime.fromisoformat(data["archived_at"]),
            cells=data.get("cells", []),
            history=data.get("history", []),
            vengeance_targets=data.get("vengeance_targets", []),
            rivalries=data.get("rivalries", []),
        )

    @property
    def owned_cell_count(self) -> int:
        return sum(1 for cell in self.cells if cell.get("owner_id"))


class SeasonStore:
    """Archives the territory world to JSON files and resets it for a new season."""

    def __init__(self, archive_dir: str):
        self.archive_dir = Path(archive_dir)
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(f"{__name__}.SeasonStore")

    def _path(self, season_id: str) -> Path:
        if not _SEASON_ID.match(season_id):
            raise SeasonArchiveError(f"Invalid season id: {season_id!r}")
        return self.archive_dir / f"season_{season_id}.json"

    async def capture(self, store: SpatialStore, season_id: str) -> SeasonArchive:
        """Read the full world state into an archive object."""
        records = await store.all_records()
        history = []
        for record in records:
            history.extend(entry.to_dict() for entry in await store.get_history(record.cell_id))

        return SeasonArchive(
            season_id=season_id,
            archived_at=utc_now(),
            cells=[record.to_dict() for record in records],
            history=history,
            vengeance_targets=[t.to_dict() for t in await store.list_all_vengeance_targets()],
            rivalries=[r.to_dict() for r in await store.list_rivalries()],
        )

    async def save(self, archive: SeasonArchive) -> Path:
        """Write an archive to disk.

        Raises:
            SeasonArchiveError: If the archive exists or cannot be written
        """
        path = self._path(archive.season_id)
        if path.exists():
            raise SeasonArchiveError(f"Season {archive.season_id} is already archived")

        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(archive.to_dict(), f, indent=2)
        except Exception as e:
            self.logger.error("season.save_failed", season_id=archive.season_id, error=str(e))
            raise SeasonArchiveError(f"Failed to save season {archive.season_id}: {e}") from e

        self.logger.info(
            "season.saved",
            season_id=archive.season_id,
            cells=len(archive.cells),
            history_entries=len(archive.history),
        )
        return path

    async def archive_and_reset(self, store: SpatialStore, season_id: str) -> SeasonArchive:
        """Archive the world, then clear it. Nothing is cleared if archiving fails."""
        archive = await self.capture(store, season_id)
        await self.save(archive)
        removed = await store.clear()

        self.logger.info("season.reset", season_id=season_id, cells_removed=removed)
        return archive

    async def load_archive(self, season_id: str) -> SeasonArchive:
        """Load an archive by season id.

        Raises:
            SeasonNotFoundError: If no archive exists for the season
            SeasonArchiveError: If the file cannot be parsed
        """
        path = self._path(season_id)
        if not path.exists():
            raise SeasonNotFoundError(f"Season {season_id} not found")

        try:
            with open(path, encoding="utf-8") as f:
                return SeasonArchive.from_dict(json.load(f))
        except Exception as e:
            self.logger.error("season.load_failed", season_id=season_id, error=str(e))
            raise SeasonArchiveError(f"Failed to load season {season_id}: {e}") from e

    async def list_archives(self) -> list[SeasonArchive]:
        archives = []
        for path in self.archive_dir.glob("season_*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    archives.append(SeasonArchive.from_dict(json.load(f)))
            except Exception as e:
                self.logger.warning("season.load_failed", filename=str(path), error=str(e))

        archives.sort(key=lambda a: a.archived_at)
        return archives

    async def delete_archive(self, season_id: str) -> bool:
        path = self._path(season_id)
        if not path.exists():
            return False
        path.unlink()
        self.logger.info("season.deleted", season_id=season_id)
        return True
