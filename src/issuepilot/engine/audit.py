"""In-memory append-only audit log."""

from __future__ import annotations

from typing import Any

from issuepilot.engine.models import AuditEventType, AuditRecord


class InMemoryAuditLog:
    """Keeps audit records in insertion order for the life of the process."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def record(
        self,
        type: AuditEventType,
        item_number: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> AuditRecord:
        """Append a record and return it with its id and timestamp filled in."""
        entry = AuditRecord(type=type, item_number=item_number, data=dict(data or {}))
        self._records.append(entry)
        return entry

    def events(self, item_number: int | None = None) -> list[AuditRecord]:
        """Return all records, or only those for *item_number*."""
        if item_number is None:
            return list(self._records)
        return [r for r in self._records if r.item_number == item_number]

    def last_event(self, type: AuditEventType) -> AuditRecord | None:
        """Return the most recent record of *type*, if any."""
        for entry in reversed(self._records):
            if entry.type == type:
                return entry
        return None

    def clear(self) -> None:
        self._records.clear()
