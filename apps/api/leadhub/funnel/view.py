from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from leadhub.funnel.store import EntityRef


@dataclass(slots=True, frozen=True)
class Snapshot:
    ref: EntityRef
    present: bool
    record: dict[str, Any] | None
    revision: int = 0


class LocalView:
    """A surface's local copy of the records it displays.

    Never authoritative: the coordinator writes optimistic values here and
    replaces them with the store's answer, or rolls back to a snapshot on
    failure. Confirmed writes (``put`` and non-optimistic ``remove``) bump a
    per-ref revision so a rollback never hides a newer confirmed record.
    """

    def __init__(self) -> None:
        self._records: dict[EntityRef, dict[str, Any]] = {}
        self._revisions: dict[EntityRef, int] = {}

    def _confirm(self, ref: EntityRef) -> None:
        self._revisions[ref] = self._revisions.get(ref, 0) + 1

    def get(self, ref: EntityRef) -> dict[str, Any] | None:
        record = self._records.get(ref)
        return copy.deepcopy(record) if record is not None else None

    def __contains__(self, ref: object) -> bool:
        return ref in self._records

    def __len__(self) -> int:
        return len(self._records)

    def refs(self, entity_type: str | None = None) -> list[EntityRef]:
        return [ref for ref in self._records if entity_type is None or ref.entity_type == entity_type]

    def put(self, ref: EntityRef, record: Mapping[str, Any]) -> None:
        self._records[ref] = copy.deepcopy(dict(record))
        self._confirm(ref)

    def remove(self, ref: EntityRef, *, optimistic: bool = False) -> None:
        self._records.pop(ref, None)
        if not optimistic:
            self._confirm(ref)

    def apply(self, ref: EntityRef, changes: Mapping[str, Any]) -> None:
        record = self._records.get(ref)
        if record is None:
            return
        record.update(copy.deepcopy(dict(changes)))

    def snapshot(self, ref: EntityRef) -> Snapshot:
        record = self._records.get(ref)
        if record is None:
            return Snapshot(ref=ref, present=False, record=None, revision=self._revisions.get(ref, 0))
        return Snapshot(ref=ref, present=True, record=copy.deepcopy(record), revision=self._revisions.get(ref, 0))

    def restore(self, snapshot: Snapshot) -> None:
        if snapshot.present and snapshot.record is not None:
            self._records[snapshot.ref] = copy.deepcopy(snapshot.record)
        else:
            self._records.pop(snapshot.ref, None)

    def rollback(self, snapshot: Snapshot) -> bool:
        """Restore ``snapshot`` unless a confirmed record arrived after it was taken."""
        if self._revisions.get(snapshot.ref, 0) != snapshot.revision:
            return False
        self.restore(snapshot)
        return True

    def clear(self) -> None:
        self._records.clear()
        self._revisions.clear()
