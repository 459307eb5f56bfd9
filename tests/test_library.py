"""
Tests for the local library table and its JSON store.
"""

import json
from datetime import date, datetime, timezone

import pytest

from core.library import JsonLibraryStore, LocalLibrary
from core.models import LibraryEntry, LibraryStatus

UPDATED = datetime(2024, 1, 5, 8, 30, tzinfo=timezone.utc)


def entry(media_id=5114, **kwargs) -> LibraryEntry:
    kwargs.setdefault("status", LibraryStatus.WATCHING)
    return LibraryEntry(media_id, **kwargs)


@pytest.fixture
def store(tmp_path):
    return JsonLibraryStore(str(tmp_path / "library"))


class TestLocalLibrary:
    """Entries, pending marks and optimistic deletes."""

    def test_put_tracks_known_media_and_entry_ids(self):
        library = LocalLibrary("anilist")
        library.put(entry(library_id=77), pending=True)

        assert 5114 in library
        assert len(library) == 1
        assert library.is_known(5114)
        assert library.is_pending(5114)
        assert library.library_id_for(5114) == 77

    def test_remembered_entry_id_fills_missing_one(self):
        library = LocalLibrary("kitsu")
        library.put(entry())

        library.remember_library_id(5114, "900")

        assert library.get(5114).library_id == "900"
        assert library.library_id_for(5114) == "900"

    def test_delete_snapshot_keeps_entry_and_pending_mark(self):
        library = LocalLibrary("anilist")
        original = entry(library_id=77)
        library.put(original, pending=True)

        assert library.begin_delete(5114) is original
        assert 5114 not in library
        assert not library.is_pending(5114)
        assert library.is_deleting(5114)
        assert library.library_id_for(5114) == 77

        snapshot = library.take_delete_snapshot(5114)
        library.restore(5114, snapshot)

        assert library.get(5114) is original
        assert library.is_pending(5114)
        assert not library.is_deleting(5114)

    def test_restore_of_absent_snapshot_removes_entry(self):
        library = LocalLibrary("anilist")
        before = library.snapshot(5114)
        library.put(entry(), pending=True)

        library.restore(5114, before)

        assert 5114 not in library
        assert not library.is_pending(5114)

    def test_restore_clears_a_pending_mark_the_snapshot_did_not_have(self):
        library = LocalLibrary("anilist")
        original = entry()
        library.put(original)
        before = library.snapshot(5114)
        library.put(entry(watched_episodes=3), pending=True)

        library.restore(5114, before)

        assert library.get(5114) is original
        assert not library.is_pending(5114)

    def test_rebase_delete_replaces_what_comes_back(self):
        library = LocalLibrary("anilist")
        library.put(entry(watched_episodes=4))
        library.begin_delete(5114)
        older = entry(watched_episodes=1)

        library.rebase_delete(5114, (older, False))
        assert library.take_delete_snapshot(5114) == (older, False)

        library.put(entry())
        library.begin_delete(5114)
        library.rebase_delete(5114, (None, False))
        assert not library.is_deleting(5114)

    def test_commit_forgets_entry_id(self):
        library = LocalLibrary("anilist")
        library.put(entry(library_id=77))
        library.begin_delete(5114)

        library.commit_delete(5114)

        assert library.library_id_for(5114) is None
        assert library.take_delete_snapshot(5114) is None

    def test_begin_delete_of_absent_entry(self):
        library = LocalLibrary("anilist")
        assert library.begin_delete(1) is None
        assert not library.is_deleting(1)

    def test_iteration_tolerates_removal(self):
        library = LocalLibrary("anilist")
        library.put(entry(1))
        library.put(entry(2))

        for item in library:
            library.remove(item.media_id)

        assert len(library) == 0


class TestJsonLibraryStore:
    """Persistence of one JSON document per service."""

    def test_round_trip(self, store):
        library = LocalLibrary("kitsu", store)
        library.put(entry(3936, watched_episodes=12, score=85, start_date=date(2024, 1, 2),
                          last_updated=UPDATED, library_id="900", notes="rewatch with friends"))
        library.put(entry(1, status=LibraryStatus.PLAN_TO_WATCH), pending=True)
        library.remember_media([42])
        library.save()

        loaded = LocalLibrary("kitsu", store)
        loaded.load()

        assert loaded.get(3936) == library.get(3936)
        assert loaded.get(1).status is LibraryStatus.PLAN_TO_WATCH
        assert loaded.pending == {1}
        assert loaded.is_known(42)

    def test_services_are_stored_separately(self, store):
        anilist = LocalLibrary("anilist", store)
        anilist.put(entry())
        anilist.save()

        kitsu = LocalLibrary("kitsu", store)
        kitsu.load()

        assert len(kitsu) == 0

    def test_missing_file_loads_empty(self, store):
        assert store.load("anilist") == ([], set(), set())

    def test_corrupt_file_loads_empty(self, store, tmp_path):
        path = tmp_path / "library" / "anilist.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")

        library = LocalLibrary("anilist", store)
        library.load()

        assert len(library) == 0

    def test_pending_marks_without_entries_are_dropped(self, store, tmp_path):
        path = tmp_path / "library" / "anilist.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({
            "entries": [{"media_id": 5114, "status": "completed"}],
            "pending": [5114, 999],
        }), encoding="utf-8")

        library = LocalLibrary("anilist", store)
        library.load()

        assert library.pending == {5114}
        assert library.get(5114).status is LibraryStatus.COMPLETED

    def test_save_replaces_file_atomically(self, store, tmp_path):
        library = LocalLibrary("anilist", store)
        library.put(entry())
        library.save()
        library.remove(5114)
        library.save()

        directory = tmp_path / "library"
        assert sorted(p.name for p in directory.iterdir()) == ["anilist.json"]
        assert json.loads((directory / "anilist.json").read_text(encoding="utf-8"))["entries"] == []
