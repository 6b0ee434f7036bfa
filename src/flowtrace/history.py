import json
import logging
import time
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from flowtrace.models import RunHistoryEntry, TraceQuery

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 10


class RunHistoryStore:
    """
    Newest-first ledger of successful retrievals.

    At most ``limit`` entries, never two with the same key hash. When a path
    is given, the list is persisted as a JSON array after every change.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, limit: int = HISTORY_LIMIT):
        self.path = Path(path) if path else None
        self.limit = limit
        self._entries: List[RunHistoryEntry] = []

    @property
    def entries(self) -> List[RunHistoryEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def load(self) -> List[RunHistoryEntry]:
        """Read persisted entries, discarding anything that fails validation."""
        raw = self._read()
        entries: List[RunHistoryEntry] = []
        if isinstance(raw, list):
            for item in raw:
                try:
                    entry = RunHistoryEntry.model_validate(item)
                except PydanticValidationError:
                    continue
                if any(e.key_hash == entry.key_hash for e in entries):
                    continue
                entries.append(entry)
        self._entries = entries[: self.limit]
        return self.entries

    def append(self, entry: RunHistoryEntry) -> List[RunHistoryEntry]:
        # Secrets stay out of storage
        entry = entry.model_copy(update={"params": entry.params.without_transient().model_copy(update={"api_key": None})})
        remaining = [e for e in self._entries if e.key_hash != entry.key_hash]
        self._entries = [entry, *remaining][: self.limit]
        self._save()
        return self.entries

    def record(self, key_hash: str, params: TraceQuery) -> List[RunHistoryEntry]:
        return self.append(RunHistoryEntry(
            key_hash=key_hash,
            params=params,
            timestamp=int(time.time() * 1000),
        ))

    def find(self, key_hash: str) -> Optional[RunHistoryEntry]:
        for entry in self._entries:
            if entry.key_hash == key_hash:
                return entry
        return None

    def clear(self) -> None:
        self._entries = []
        if self.path is None:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove run history at {self.path}: {e}")

    def to_json(self) -> List[dict]:
        return [e.model_dump(by_alias=True, exclude_none=True) for e in self._entries]

    def _read(self) -> Any:
        if self.path is None:
            return [e.model_dump(by_alias=True) for e in self._entries]
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Run history at {self.path} is unreadable, starting empty: {e}")
            return []

    def _save(self) -> None:
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                json.dump(self.to_json(), handle, indent=2)
                handle.write("\n")
        except OSError as e:
            logger.warning(f"Could not persist run history to {self.path}: {e}")
