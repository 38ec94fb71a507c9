"""Tests for the retention purger cascade.

Order per entry: archive file → stored object → row. A failure at any step
keeps the row so the next cycle retries.
"""
from unittest.mock import MagicMock

from secure_entry.models.base import utcnow
from secure_entry.models.entry import Entry
from secure_entry.models.visit_log import VisitLog
from secure_entry.modules.archive_client import ArchiveError, DeleteReply
from secure_entry.modules.retention import purge_expired, retention_cutoff


def _exists(db, entry_id):
    db.expire_all()
    return db.get(Entry, entry_id) is not None


def _purge(test_settings, store, objects, archive, **kw):
    return purge_expired(settings=test_settings, store=store, objects=objects, client=archive, **kw)


def _with_object(objects, key):
    objects.put(key, b"\xff\xd8jpeg", "image/jpeg")
    return key


class TestCutoff:
    def test_cutoff_uses_retention_days(self, test_settings):
        now = utcnow()
        assert (now - retention_cutoff(test_settings, now)).days == 120


class TestPurge:
    def test_recent_entries_untouched(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        entry_id = make_entry(doc_no="A1", created_at=days_ago(30))
        report = _purge(test_settings, store, objects, archive)
        assert report.examined == 0
        assert _exists(db, entry_id)

    def test_unlinked_entry_deleted_with_object(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        key = _with_object(objects, "entries/old/a.jpg")
        entry_id = make_entry(doc_no="A1", image_key=key, created_at=days_ago(200))

        report = _purge(test_settings, store, objects, archive)

        assert report.rows_deleted == 1
        assert report.objects_deleted == 1
        assert objects.get(key) is None
        assert not _exists(db, entry_id)
        archive.delete_files.assert_not_called()

    def test_linked_entry_deleted_after_archive_confirms(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        key = _with_object(objects, "entries/old/b.jpg")
        entry_id = make_entry(doc_no="A1", image_key=key, external_file_id="f1",
                              external_url="https://drive.example/f1", created_at=days_ago(200))

        report = _purge(test_settings, store, objects, archive)

        archive.delete_files.assert_called_once_with(["f1"])
        assert report.archive_deleted == 1
        assert report.rows_deleted == 1
        assert not _exists(db, entry_id)
        assert objects.get(key) is None

    def test_archive_delete_failure_defers_entry(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        key = _with_object(objects, "entries/old/c.jpg")
        entry_id = make_entry(doc_no="A1", image_key=key, external_file_id="f1", created_at=days_ago(200))
        archive.delete_files.side_effect = lambda ids: DeleteReply(failed=list(ids))

        report = _purge(test_settings, store, objects, archive)

        assert report.deferred == 1
        assert report.rows_deleted == 0
        assert _exists(db, entry_id)
        assert objects.get(key) is not None

    def test_archive_error_defers_all_linked(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        linked = make_entry(doc_no="A1", external_file_id="f1", created_at=days_ago(200))
        unlinked = make_entry(doc_no="A2", created_at=days_ago(200))
        archive.delete_files.side_effect = ArchiveError("archive delete http failed: 500")

        report = _purge(test_settings, store, objects, archive)

        assert report.deferred == 1
        assert _exists(db, linked)
        assert not _exists(db, unlinked)

    def test_partial_archive_failure(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        ok = make_entry(doc_no="A1", external_file_id="f1", created_at=days_ago(201))
        bad = make_entry(doc_no="A2", external_file_id="f2", created_at=days_ago(200))
        archive.delete_files.side_effect = lambda ids: DeleteReply(deleted=["f1"], failed=["f2"])

        report = _purge(test_settings, store, objects, archive)

        assert report.rows_deleted == 1
        assert not _exists(db, ok)
        assert _exists(db, bad)

    def test_archive_not_configured_keeps_linked_rows(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        cfg = test_settings.model_copy(update={"ARCHIVE_SYNC_URL": None, "ARCHIVE_DELETE_URL": None})
        linked = make_entry(doc_no="A1", external_file_id="f1", created_at=days_ago(200))
        unlinked = make_entry(doc_no="A2", created_at=days_ago(200))

        report = _purge(cfg, store, objects, archive)

        archive.delete_files.assert_not_called()
        assert report.deferred == 1
        assert _exists(db, linked)
        assert not _exists(db, unlinked)

    def test_object_delete_failure_keeps_row(self, db, store, archive, make_entry, test_settings, days_ago):
        objects = MagicMock()
        objects.delete.side_effect = OSError("disk busy")
        entry_id = make_entry(doc_no="A1", image_key="entries/old/d.jpg", created_at=days_ago(200))

        report = _purge(test_settings, store, objects, archive)

        assert report.deferred == 1
        assert report.rows_deleted == 0
        assert _exists(db, entry_id)

    def test_confirmed_archive_delete_is_not_repeated(self, db, store, archive, make_entry, test_settings, days_ago):
        """Once the archive confirms, the link is cleared even if the object step fails."""
        objects = MagicMock()
        objects.delete.side_effect = OSError("disk busy")
        entry_id = make_entry(doc_no="A1", image_key="entries/old/e.jpg",
                              external_file_id="f1", created_at=days_ago(200))

        _purge(test_settings, store, objects, archive)
        db.expire_all()
        assert db.get(Entry, entry_id).external_file_id is None

        objects.delete.side_effect = None
        report = _purge(test_settings, store, objects, archive)
        assert archive.delete_files.call_count == 1
        assert report.rows_deleted == 1

    def test_batch_is_oldest_first(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        cfg = test_settings.model_copy(update={"PURGE_BATCH": 2})
        oldest = make_entry(doc_no="A1", created_at=days_ago(300))
        middle = make_entry(doc_no="A2", created_at=days_ago(250))
        newest = make_entry(doc_no="A3", created_at=days_ago(200))

        report = _purge(cfg, store, objects, archive)

        assert report.examined == 2
        assert not _exists(db, oldest)
        assert not _exists(db, middle)
        assert _exists(db, newest)

    def test_rerun_is_idempotent(self, store, objects, archive, make_entry, test_settings, days_ago):
        make_entry(doc_no="A1", created_at=days_ago(200))
        _purge(test_settings, store, objects, archive)
        report = _purge(test_settings, store, objects, archive)
        assert report.examined == 0
        assert report.rows_deleted == 0

    def test_visit_logs_purged_and_swept(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        expired = make_entry(doc_no="A1", created_at=days_ago(200))
        kept = make_entry(doc_no="A2", created_at=days_ago(1))
        db.add(VisitLog(action="SUBMIT", entry_id=expired, created_at=days_ago(1)))
        db.add(VisitLog(action="SUBMIT", entry_id=kept, created_at=days_ago(1)))
        db.add(VisitLog(action="SEARCH", lookup_key="A9", created_at=days_ago(300)))
        db.commit()

        report = _purge(test_settings, store, objects, archive)

        assert report.visit_logs_purged == 1
        assert report.dangling_logs_swept == 1
        db.expire_all()
        assert [log.entry_id for log in db.query(VisitLog).all()] == [kept]

    def test_deferred_entry_moves_behind_newer_ones(self, db, store, objects, archive, make_entry, test_settings, days_ago):
        cfg = test_settings.model_copy(update={"PURGE_BATCH": 1})
        blocked = make_entry(doc_no="A1", external_file_id="f-bad", created_at=days_ago(300))
        newer = make_entry(doc_no="A2", created_at=days_ago(200))
        archive.delete_files.side_effect = lambda ids: DeleteReply(failed=list(ids))

        first = _purge(cfg, store, objects, archive)
        assert (first.examined, first.deferred, first.rows_deleted) == (1, 1, 0)
        db.expire_all()
        assert db.get(Entry, blocked).purge_attempts == 1

        second = _purge(cfg, store, objects, archive)
        assert second.rows_deleted == 1
        assert not _exists(db, newer)
        assert _exists(db, blocked)

    def test_repeatedly_deferred_entry_is_reported(self, store, objects, archive, make_entry, test_settings, days_ago):
        cfg = test_settings.model_copy(update={"PURGE_STUCK_AFTER": 2})
        blocked = make_entry(doc_no="A1", external_file_id="f-bad", created_at=days_ago(300))
        archive.delete_files.side_effect = ArchiveError("archive delete http failed: 500")

        assert _purge(cfg, store, objects, archive).stuck == []
        assert _purge(cfg, store, objects, archive).stuck == [blocked]
