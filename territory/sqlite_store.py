# territory/sqlite_store.py

import asyncio
import json
from datetime import datetime
from typing import Optional

import aiosqlite

from spatial import geohash
from spatial.grid import Coordinate

from .exceptions import StoreNotInitializedError, StoreRetrievalError, TransactionError
from .events import Interaction
from .models import (
    HistoryEntry,
    OwnershipRecord,
    RivalryDirection,
    RivalryRecord,
    VengeanceTarget,
    dt_from_str,
    dt_to_str,
)
from .store import DEFAULT_IN_QUERY_LIMIT, CellTransaction, SpatialStore

_NOT_INITIALIZED_ERROR = "SQLite store is not initialized"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS cells (
        cell_id TEXT PRIMARY KEY,
        owner_id TEXT,
        center_lat REAL NOT NULL,
        center_lon REAL NOT NULL,
        boundary TEXT NOT NULL,
        geohash TEXT NOT NULL,
        first_conquered_at TEXT,
        last_conquered_at TEXT,
        expires_at TEXT,
        activity_id TEXT,
        defense_count INTEGER NOT NULL DEFAULT 0,
        is_hot_spot INTEGER NOT NULL DEFAULT 0,
        location_label TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cells_geohash ON cells (geohash)",
    "CREATE INDEX IF NOT EXISTS idx_cells_owner ON cells (owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_cells_center ON cells (center_lat, center_lon)",
    """
    CREATE TABLE IF NOT EXISTS cell_history (
        entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
        cell_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        interaction TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        activity_id TEXT,
        previous_owner_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_history_cell ON cell_history (cell_id)",
    """
    CREATE TABLE IF NOT EXISTS vengeance_targets (
        victim_id TEXT NOT NULL,
        cell_id TEXT NOT NULL,
        thief_id TEXT NOT NULL,
        stolen_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        xp_reward INTEGER NOT NULL,
        activity_id TEXT,
        center_lat REAL,
        center_lon REAL,
        location_label TEXT,
        PRIMARY KEY (victim_id, cell_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_vengeance_cell ON vengeance_targets (cell_id)",
    """
    CREATE TABLE IF NOT EXISTS rivalries (
        user_id TEXT NOT NULL,
        rival_id TEXT NOT NULL,
        direction TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        last_interaction_at TEXT,
        PRIMARY KEY (user_id, rival_id, direction)
    )
    """,
)

_CELL_COLUMNS = (
    "cell_id, owner_id, center_lat, center_lon, boundary, geohash, first_conquered_at, "
    "last_conquered_at, expires_at, activity_id, defense_count, is_hot_spot, location_label"
)

_VENGEANCE_COLUMNS = (
    "victim_id, cell_id, thief_id, stolen_at, expires_at, xp_reward, activity_id, "
    "center_lat, center_lon, location_label"
)


def _record_from_row(row) -> OwnershipRecord:
    return OwnershipRecord(
        cell_id=row[0],
        owner_id=row[1],
        center=Coordinate(row[2], row[3]),
        boundary=tuple(Coordinate.from_dict(p) for p in json.loads(row[4])),
        geohash=row[5],
        first_conquered_at=dt_from_str(row[6]),
        last_conquered_at=dt_from_str(row[7]),
        expires_at=dt_from_str(row[8]),
        activity_id=row[9],
        defense_count=row[10],
        is_hot_spot=bool(row[11]),
        location_label=row[12],
    )


def _record_params(record: OwnershipRecord) -> tuple:
    return (
        record.cell_id,
        record.owner_id,
        record.center.latitude,
        record.center.longitude,
        json.dumps([p.to_dict() for p in record.boundary]),
        record.geohash,
        dt_to_str(record.first_conquered_at),
        dt_to_str(record.last_conquered_at),
        dt_to_str(record.expires_at),
        record.activity_id,
        record.defense_count,
        int(record.is_hot_spot),
        record.location_label,
    )


def _target_from_row(row) -> VengeanceTarget:
    return VengeanceTarget(
        victim_id=row[0],
        cell_id=row[1],
        thief_id=row[2],
        stolen_at=dt_from_str(row[3]),
        expires_at=dt_from_str(row[4]),
        xp_reward=row[5],
        activity_id=row[6],
        center=Coordinate(row[7], row[8]) if row[7] is not None else None,
        location_label=row[9],
    )


def _target_params(target: VengeanceTarget) -> tuple:
    return (
        target.victim_id,
        target.cell_id,
        target.thief_id,
        dt_to_str(target.stolen_at),
        dt_to_str(target.expires_at),
        target.xp_reward,
        target.activity_id,
        target.center.latitude if target.center else None,
        target.center.longitude if target.center else None,
        target.location_label,
    )


def _history_from_row(row) -> HistoryEntry:
    return HistoryEntry(
        cell_id=row[0],
        user_id=row[1],
        interaction=Interaction(row[2]),
        timestamp=dt_from_str(row[3]),
        activity_id=row[4],
        previous_owner_id=row[5],
    )


def _rivalry_from_row(row) -> RivalryRecord:
    return RivalryRecord(
        user_id=row[0],
        rival_id=row[1],
        direction=RivalryDirection(row[2]),
        count=row[3],
        last_interaction_at=dt_from_str(row[4]),
    )


class SqliteSpatialStore(SpatialStore):
    """Durable store on a single aiosqlite connection.

    Per-cell locks isolate transactions on the same cell; the write lock
    serialises statement batches and commits on the shared connection.
    """

    def __init__(self, db_path: str, in_query_limit: int = DEFAULT_IN_QUERY_LIMIT):
        super().__init__(in_query_limit)
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        self._db = await aiosqlite.connect(self.db_path)
        for statement in _SCHEMA:
            await self._db.execute(statement)
        await self._db.commit()
        self.logger.info("store.initialized", backend="sqlite", db_path=self.db_path)

    async def close(self) -> None:
        await super().close()
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise StoreNotInitializedError(_NOT_INITIALIZED_ERROR)
        return self._db

    async def _fetchall(self, query: str, params: tuple | list = ()) -> list:
        db = self._conn()
        try:
            cursor = await db.execute(query, params)
            return list(await cursor.fetchall())
        except Exception as e:
            self.logger.error("store.query_failed", query=" ".join(query.split()[:4]), error=str(e))
            raise StoreRetrievalError(f"Failed to query store: {e}") from e

    async def _load_transaction(self, cell_id: str) -> CellTransaction:
        rows = await self._fetchall(f"SELECT {_CELL_COLUMNS} FROM cells WHERE cell_id = ?", (cell_id,))
        history = await self.get_history(cell_id)
        target_rows = await self._fetchall(
            f"SELECT {_VENGEANCE_COLUMNS} FROM vengeance_targets WHERE cell_id = ?", (cell_id,)
        )
        targets = {row[0]: _target_from_row(row) for row in target_rows}
        return CellTransaction(
            cell_id,
            _record_from_row(rows[0]) if rows else None,
            history,
            targets,
        )

    async def _commit(self, txn: CellTransaction) -> None:
        db = self._conn()

        async with self._write_lock:
            try:
                if txn.record_write is not None:
                    await db.execute(
                        f"INSERT OR REPLACE INTO cells ({_CELL_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        _record_params(txn.record_write),
                    )

                if txn.history_appends:
                    await db.executemany(
                        """
                        INSERT INTO cell_history (
                            cell_id, user_id, interaction, timestamp, activity_id, previous_owner_id
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        [
                            (
                                e.cell_id,
                                e.user_id,
                                e.interaction.value,
                                dt_to_str(e.timestamp),
                                e.activity_id,
                                e.previous_owner_id,
                            )
                            for e in txn.history_appends
                        ],
                    )

                for victim_id in txn.vengeance_deletes:
                    await db.execute(
                        "DELETE FROM vengeance_targets WHERE victim_id = ? AND cell_id = ?",
                        (victim_id, txn.cell_id),
                    )

                if txn.vengeance_puts:
                    await db.executemany(
                        f"INSERT OR REPLACE INTO vengeance_targets ({_VENGEANCE_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        [_target_params(t) for t in txn.vengeance_puts.values()],
                    )

                for thief_id, victim_id, at in txn.thefts:
                    await self._increment_rivalry(thief_id, victim_id, RivalryDirection.STOLE_FROM, at)
                    await self._increment_rivalry(victim_id, thief_id, RivalryDirection.STOLEN_BY, at)

                await db.commit()
            except Exception as e:
                await db.rollback()
                self.logger.error("transaction.rolled_back", cell_id=txn.cell_id, error=str(e))
                raise TransactionError(f"Failed to commit cell {txn.cell_id}: {e}") from e

        self.logger.debug(
            "transaction.committed",
            cell_id=txn.cell_id,
            history_appends=len(txn.history_appends),
            vengeance_puts=len(txn.vengeance_puts),
            vengeance_deletes=len(txn.vengeance_deletes),
        )

    async def _increment_rivalry(
        self, user_id: str, rival_id: str, direction: RivalryDirection, at: datetime
    ) -> None:
        await self._conn().execute(
            """
            INSERT INTO rivalries (user_id, rival_id, direction, count, last_interaction_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT (user_id, rival_id, direction) DO UPDATE SET
                count = count + 1,
                last_interaction_at = excluded.last_interaction_at
            """,
            (user_id, rival_id, direction.value, dt_to_str(at)),
        )

    async def get_record(self, cell_id: str) -> Optional[OwnershipRecord]:
        rows = await self._fetchall(f"SELECT {_CELL_COLUMNS} FROM cells WHERE cell_id = ?", (cell_id,))
        return _record_from_row(rows[0]) if rows else None

    async def _query_ids_chunk(self, cell_ids: list[str]) -> list[OwnershipRecord]:
        if not cell_ids:
            return []
        placeholders = ",".join("?" * len(cell_ids))
        rows = await self._fetchall(
            f"SELECT {_CELL_COLUMNS} FROM cells "
            f"WHERE cell_id IN ({placeholders}) AND owner_id IS NOT NULL",
            cell_ids,
        )
        return [_record_from_row(row) for row in rows]

    async def query_by_owner(self, owner_id: str) -> list[OwnershipRecord]:
        rows = await self._fetchall(
            f"SELECT {_CELL_COLUMNS} FROM cells WHERE owner_id = ? ORDER BY cell_id", (owner_id,)
        )
        return [_record_from_row(row) for row in rows]

    async def query_geohash_prefix(self, prefix: str) -> list[OwnershipRecord]:
        rows = await self._fetchall(
            f"SELECT {_CELL_COLUMNS} FROM cells "
            "WHERE geohash >= ? AND geohash < ? AND owner_id IS NOT NULL ORDER BY cell_id",
            (prefix, geohash.prefix_upper_bound(prefix)),
        )
        return [_record_from_row(row) for row in rows]

    async def query_bbox(
        self, min_lat: float, min_lon: float, max_lat: float, max_lon: float
    ) -> list[OwnershipRecord]:
        rows = await self._fetchall(
            f"SELECT {_CELL_COLUMNS} FROM cells "
            "WHERE center_lat BETWEEN ? AND ? AND center_lon BETWEEN ? AND ? "
            "AND owner_id IS NOT NULL ORDER BY cell_id",
            (min_lat, max_lat, min_lon, max_lon),
        )
        return [_record_from_row(row) for row in rows]

    async def all_records(self) -> list[OwnershipRecord]:
        rows = await self._fetchall(f"SELECT {_CELL_COLUMNS} FROM cells ORDER BY cell_id")
        return [_record_from_row(row) for row in rows]

    async def get_history(self, cell_id: str) -> list[HistoryEntry]:
        rows = await self._fetchall(
            """
            SELECT cell_id, user_id, interaction, timestamp, activity_id, previous_owner_id
            FROM cell_history WHERE cell_id = ? ORDER BY entry_id ASC
            """,
            (cell_id,),
        )
        return [_history_from_row(row) for row in rows]

    async def get_vengeance_targets(self, victim_id: str) -> list[VengeanceTarget]:
        rows = await self._fetchall(
            f"SELECT {_VENGEANCE_COLUMNS} FROM vengeance_targets "
            "WHERE victim_id = ? ORDER BY expires_at ASC",
            (victim_id,),
        )
        return [_target_from_row(row) for row in rows]

    async def list_all_vengeance_targets(self) -> list[VengeanceTarget]:
        rows = await self._fetchall(
            f"SELECT {_VENGEANCE_COLUMNS} FROM vengeance_targets ORDER BY cell_id, victim_id"
        )
        return [_target_from_row(row) for row in rows]

    async def get_rivalries(self, user_id: str) -> list[RivalryRecord]:
        rows = await self._fetchall(
            """
            SELECT user_id, rival_id, direction, count, last_interaction_at
            FROM rivalries WHERE user_id = ? ORDER BY count DESC, rival_id ASC, direction ASC
            """,
            (user_id,),
        )
        return [_rivalry_from_row(row) for row in rows]

    async def list_rivalries(self) -> list[RivalryRecord]:
        rows = await self._fetchall(
            "SELECT user_id, rival_id, direction, count, last_interaction_at FROM rivalries"
        )
        return [_rivalry_from_row(row) for row in rows]

    async def set_rivalry_count(
        self,
        user_id: str,
        rival_id: str,
        direction: RivalryDirection,
        count: int,
        last_interaction_at: Optional[datetime] = None,
    ) -> None:
        db = self._conn()
        async with self._write_lock:
            await db.execute(
                """
                INSERT INTO rivalries (user_id, rival_id, direction, count, last_interaction_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (user_id, rival_id, direction) DO UPDATE SET
                    count = excluded.count,
                    last_interaction_at = COALESCE(
                        excluded.last_interaction_at, rivalries.last_interaction_at
                    )
                """,
                (user_id, rival_id, direction.value, count, dt_to_str(last_interaction_at)),
            )
            await db.commit()

    async def _clear(self) -> None:
        db = self._conn()
        async with self._write_lock:
            for table in ("cells", "cell_history", "vengeance_targets", "rivalries"):
                await db.execute(f"DELETE FROM {table}")
            await db.commit()
