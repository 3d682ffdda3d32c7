"""
This module defines the `ChangeLog`, the capped audit trail of every store mutation.

Entries are appended in order and only the most recent `limit` entries are kept; older
ones are dropped first. Readers get the newest entries first.
"""
# habitlog/changelog.py

from typing import Dict, Iterable, Iterator, List, Optional

from habitlog.models import ChangeLogEntry

DEFAULT_LIMIT = 1000


class ChangeLog:
    """Append-only, capped list of change log entries (stored as dictionaries)."""

    def __init__(self, entries: Optional[Iterable[Dict]] = None, limit: int = DEFAULT_LIMIT) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        self.limit = limit
        self._entries: List[Dict] = []
        self.replace(entries or [])

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entity_type: str, entity_id: str, action: str, changes: Dict, user_id: str, timestamp: str) -> Dict:
        """Records one mutation and evicts the oldest entries beyond the cap.

        Returns:
            dict: The stored entry.
        """
        entry = vars(ChangeLogEntry(entity_type, entity_id, action, changes, user_id, timestamp))
        self._entries.append(entry)
        if len(self._entries) > self.limit:
            del self._entries[:len(self._entries) - self.limit]
        return entry

    def newest_first(self) -> Iterator[Dict]:
        return reversed(self._entries)

    def query(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None, limit: int = 100) -> List[Dict]:
        """Returns up to `limit` entries, most recent first, filtered by type and/or id."""
        results = []
        for entry in self.newest_first():
            if entity_type and entry['entity_type'] != entity_type:
                continue
            if entity_id and entry['entity_id'] != entity_id:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def snapshot(self) -> List[Dict]:
        """Returns the entries oldest first, as persisted."""
        return list(self._entries)

    def replace(self, entries: Iterable[Dict]) -> None:
        self._entries = list(entries)[-self.limit:]
