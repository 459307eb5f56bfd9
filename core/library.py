"""
The local library table and its persistence hook.
"""

import json
import logging
import os
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from .models import LibraryEntry, LibraryStatus
from .utils import parse_date, parse_timestamp

logger = logging.getLogger(__name__)

# An entry (None when absent) and whether it carried unconfirmed changes.
Snapshot = Tuple[Optional[LibraryEntry], bool]


class LocalLibrary:
    """
    The locally held library of one service, keyed by media id.
    Owned by the sync orchestrator; adapters never touch it.

    Besides the entries it tracks which media ids have unconfirmed local
    changes (pending resync), which media ids are known from metadata
    fetches, and snapshots of optimistically deleted entries.
    """

    def __init__(self, service_name: str, store: Optional["JsonLibraryStore"] = None):
        self.service_name = service_name
        self.store = store
        self.entries: Dict[int, LibraryEntry] = {}
        self.pending: Set[int] = set()
        self.known_media: Set[int] = set()
        self.library_ids: Dict[int, Any] = {}
        self._deleted: Dict[int, Snapshot] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, media_id: int) -> bool:
        return media_id in self.entries

    def __iter__(self) -> Iterator[LibraryEntry]:
        return iter(list(self.entries.values()))

    def get(self, media_id: int) -> Optional[LibraryEntry]:
        return self.entries.get(media_id)

    def put(self, entry: LibraryEntry, pending: bool = False):
        self.entries[entry.media_id] = entry
        self.known_media.add(entry.media_id)
        if entry.library_id is not None:
            self.library_ids[entry.media_id] = entry.library_id
        if pending:
            self.pending.add(entry.media_id)

    def remove(self, media_id: int) -> Optional[LibraryEntry]:
        self.pending.discard(media_id)
        return self.entries.pop(media_id, None)

    # --- Remote Entry Ids ---

    def remember_library_id(self, media_id: int, library_id: Any):
        if library_id is None:
            return
        self.library_ids[media_id] = library_id
        entry = self.entries.get(media_id)
        if entry is not None and entry.library_id is None:
            entry.library_id = library_id
        if media_id in self._deleted and self._deleted[media_id][0].library_id is None:
            self._deleted[media_id][0].library_id = library_id

    def library_id_for(self, media_id: int) -> Optional[Any]:
        entry = self.entries.get(media_id)
        if entry is not None and entry.library_id is not None:
            return entry.library_id
        if media_id in self._deleted and self._deleted[media_id][0].library_id is not None:
            return self._deleted[media_id][0].library_id
        return self.library_ids.get(media_id)

    # --- Pending Resync ---

    def mark_pending(self, media_id: int):
        self.pending.add(media_id)

    def clear_pending(self, media_id: int):
        self.pending.discard(media_id)

    def is_pending(self, media_id: int) -> bool:
        return media_id in self.pending

    # --- Known Media ---

    def remember_media(self, media_ids):
        self.known_media.update(int(m) for m in media_ids)

    def is_known(self, media_id: int) -> bool:
        return media_id in self.known_media or media_id in self.entries

    # --- Snapshots ---

    def snapshot(self, media_id: int) -> Snapshot:
        """The entry (None when absent) and its pending mark, for undoing a local change."""
        return self.entries.get(media_id), media_id in self.pending

    def restore(self, media_id: int, snapshot: Snapshot):
        entry, was_pending = snapshot
        if entry is None:
            self.remove(media_id)
            return
        self.put(entry)
        if was_pending:
            self.pending.add(media_id)
        else:
            self.pending.discard(media_id)

    # --- Optimistic Deletes ---

    def begin_delete(self, media_id: int) -> Optional[LibraryEntry]:
        """Removes the entry, keeping a snapshot until the delete is confirmed or undone."""
        snapshot = self.snapshot(media_id)
        entry = self.remove(media_id)
        if entry is not None:
            self._deleted[media_id] = snapshot
        return entry

    def commit_delete(self, media_id: int):
        self._deleted.pop(media_id, None)
        self.library_ids.pop(media_id, None)

    def take_delete_snapshot(self, media_id: int) -> Optional[Snapshot]:
        """Ends the delete without restoring anything; the caller decides what comes back."""
        return self._deleted.pop(media_id, None)

    def rebase_delete(self, media_id: int, snapshot: Snapshot):
        """Replaces what a failed or cancelled delete would bring back."""
        if snapshot[0] is None:
            self._deleted.pop(media_id, None)
        else:
            self._deleted[media_id] = snapshot

    def is_deleting(self, media_id: int) -> bool:
        return media_id in self._deleted

    def clear(self):
        self.entries.clear()
        self.pending.clear()
        self._deleted.clear()
        self.library_ids.clear()

    # --- Persistence Hooks ---

    def load(self):
        """Load-at-startup hook."""
        if self.store is None:
            return
        self.clear()
        entries, pending, known = self.store.load(self.service_name)
        for entry in entries:
            self.put(entry)
        self.pending.update(m for m in pending if m in self.entries)
        self.known_media.update(known)
        logger.info(f"Loaded {len(self.entries)} {self.service_name} library entries")

    def save(self):
        """Save-on-change hook."""
        if self.store is not None:
            self.store.save(self)


def entry_to_dict(entry: LibraryEntry) -> dict:
    return {
        "media_id": entry.media_id,
        "watched_episodes": entry.watched_episodes,
        "status": entry.status.value,
        "score": entry.score,
        "start_date": entry.start_date.isoformat() if entry.start_date else None,
        "finish_date": entry.finish_date.isoformat() if entry.finish_date else None,
        "last_updated": entry.last_updated.isoformat() if entry.last_updated else None,
        "library_id": entry.library_id,
        "rewatched_times": entry.rewatched_times,
        "notes": entry.notes,
    }


def entry_from_dict(data: dict) -> LibraryEntry:
    return LibraryEntry(
        media_id=int(data["media_id"]),
        watched_episodes=data.get("watched_episodes") or 0,
        status=LibraryStatus(data.get("status") or LibraryStatus.PLAN_TO_WATCH.value),
        score=data.get("score") or 0,
        start_date=parse_date(data.get("start_date")),
        finish_date=parse_date(data.get("finish_date")),
        last_updated=parse_timestamp(data.get("last_updated")),
        library_id=data.get("library_id"),
        rewatched_times=data.get("rewatched_times") or 0,
        notes=data.get("notes") or "",
    )


class JsonLibraryStore:
    """
    Writes one JSON document per service into a directory:
    <directory>/<service>.json
    """

    def __init__(self, directory: str):
        self.directory = directory

    def path_for(self, service_name: str) -> str:
        return os.path.join(self.directory, f"{service_name}.json")

    def load(self, service_name: str):
        """
        Returns:
            (entries, pending media ids, known media ids); empty when nothing is stored
        """
        path = self.path_for(service_name)
        if not os.path.exists(path):
            return [], set(), set()
        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
            entries: List[LibraryEntry] = [entry_from_dict(item) for item in document.get("entries", [])]
            pending = {int(m) for m in document.get("pending", [])}
            known = {int(m) for m in document.get("known_media", [])}
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"❌ Could not read library file {path}: {e}")
            return [], set(), set()
        return entries, pending, known

    def save(self, library: LocalLibrary):
        path = self.path_for(library.service_name)
        document = {
            "service": library.service_name,
            "entries": [entry_to_dict(e) for e in library],
            "pending": sorted(library.pending),
            "known_media": sorted(library.known_media),
        }
        try:
            os.makedirs(self.directory, exist_ok=True)
            tmp_path = f"{path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.debug(f"Saved {len(library)} {library.service_name} entries to {path}")
        except OSError as e:
            logger.error(f"❌ Could not write library file {path}: {e}")
