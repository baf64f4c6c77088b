# spatial/snapshot.py

from typing import TYPE_CHECKING, Any, Optional

from territory.events import CellChange, CellChangeType, ShardBatch

if TYPE_CHECKING:
    from territory.models import OwnershipRecord


class CellSnapshot:
    """De-duplicated view of cells merged from several shard subscriptions.

    A cell stays in the view while at least one shard still reports it.
    """

    def __init__(self):
        self._cells: dict[str, "OwnershipRecord"] = {}
        self._membership: dict[str, set[str]] = {}  # cell_id -> shard keys

    def apply_batch(self, batch: ShardBatch) -> list[CellChange]:
        """Merge a shard batch and return the changes visible to observers."""
        effective: list[CellChange] = []

        if batch.is_snapshot:
            present = {change.cell_id for change in batch.changes}
            for cell_id in self._cells_in_shard(batch.shard_key) - present:
                effective.extend(self._drop_membership(cell_id, batch.shard_key))

        for change in batch.changes:
            record = change.record
            if change.change_type == CellChangeType.REMOVED or record is None or not record.exists:
                effective.extend(self._remove(change.cell_id))
                continue

            existed = change.cell_id in self._cells
            previous = self._cells.get(change.cell_id)
            self._cells[change.cell_id] = record
            self._membership.setdefault(change.cell_id, set()).add(batch.shard_key)

            if not existed:
                effective.append(CellChange(CellChangeType.ADDED, change.cell_id, record))
            elif previous != record:
                effective.append(CellChange(CellChangeType.MODIFIED, change.cell_id, record))

        return effective

    def purge_shard(self, shard_key: str) -> list[CellChange]:
        """Forget a shard; cells no other shard reports are removed."""
        removed: list[CellChange] = []
        for cell_id in self._cells_in_shard(shard_key):
            removed.extend(self._drop_membership(cell_id, shard_key))
        return removed

    def _cells_in_shard(self, shard_key: str) -> set[str]:
        return {cell_id for cell_id, keys in self._membership.items() if shard_key in keys}

    def _drop_membership(self, cell_id: str, shard_key: str) -> list[CellChange]:
        keys = self._membership.get(cell_id)
        if keys is None:
            return []
        keys.discard(shard_key)
        if keys:
            return []
        return self._remove(cell_id)

    def _remove(self, cell_id: str) -> list[CellChange]:
        self._membership.pop(cell_id, None)
        record = self._cells.pop(cell_id, None)
        if record is None:
            return []
        return [CellChange(CellChangeType.REMOVED, cell_id, record)]

    def get(self, cell_id: str) -> Optional["OwnershipRecord"]:
        return self._cells.get(cell_id)

    def shards_for(self, cell_id: str) -> set[str]:
        return set(self._membership.get(cell_id, ()))

    def cells(self) -> list["OwnershipRecord"]:
        return [self._cells[cell_id] for cell_id in sorted(self._cells)]

    def owned_by(self, user_id: str) -> list["OwnershipRecord"]:
        return [record for record in self.cells() if record.owner_id == user_id]

    def clear(self) -> None:
        self._cells.clear()
        self._membership.clear()

    def __contains__(self, cell_id: str) -> bool:
        return cell_id in self._cells

    def __len__(self) -> int:
        return len(self._cells)

    def to_dict(self) -> dict[str, Any]:
        return {cell_id: record.to_dict() for cell_id, record in sorted(self._cells.items())}
