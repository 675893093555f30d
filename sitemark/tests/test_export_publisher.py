"""
Tests for the Export Publisher.

Tests:
- File name sanitising
- Publish stores the object, then records history on the FileRecord
- Failure handling leaves no half-written state
- Orphan sweep

Run with: python -m pytest sitemark/tests/test_export_publisher.py -v
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from sitemark.db import ExportHistoryEntry, FileRecord, StoredObject
from sitemark.errors import PublishError, StorageError
from sitemark.services.identity import resolve_file_id
from sitemark.services.report_export import ExportPublisher
from sitemark.services.report_export.publisher import export_stamp, safe_path_segment, sanitize_file_name
from sitemark.tests.conftest import PLAN_URL_AAA, PLAN_URL_BBB

PDF_BYTES = b"%PDF-1.7\n%test\n"


@pytest.fixture
def publisher(storage, session_factory):
    return ExportPublisher(storage=storage, session_factory=session_factory, prefix="project-report-exports")


def stored_paths(session_factory):
    session = session_factory()
    paths = session.execute(select(StoredObject.path)).scalars().all()
    session.close()
    return paths


class TestSanitizeFileName:
    """Tests for sanitize_file_name()."""

    @pytest.mark.parametrize("name,expected", [
        ("plan.pdf", "plan.pdf"),
        ("plan", "plan.pdf"),
        ("Plan.PDF", "Plan.pdf"),
        ("a/b:c*d?.pdf", "a_b_c_d_.pdf"),
        ("  site   walk  notes  ", "site walk notes.pdf"),
        ("line\nbreak", "line_break.pdf"),
        ("", "Project Report.pdf"),
        (None, "Project Report.pdf"),
        (".pdf", "Project Report.pdf"),
    ])
    def test_names(self, name, expected):
        assert sanitize_file_name(name) == expected


class TestSafePathSegment:
    """Tests for safe_path_segment()."""

    @pytest.mark.parametrize("value,expected", [
        ("P1", "P1"),
        ("a/b", "a_b"),
        ("../../etc", ".._.._etc"),
        ("..", "_"),
        ("", "_"),
        (None, "_"),
    ])
    def test_values(self, value, expected):
        assert safe_path_segment(value) == expected


class TestExportStamp:
    """Tests for export_stamp()."""

    def test_path_safe(self):
        stamp = export_stamp(datetime(2024, 5, 1, 9, 30, 15, 123000, tzinfo=timezone.utc))
        assert stamp == "2024-05-01T09-30-15-123Z"


class TestPublish:
    """Tests for publish()."""

    def test_records_history(self, publisher, storage, session_factory):
        """The FileRecord points at the new export and gains a history entry."""
        result = publisher.publish(
            PDF_BYTES, project_id="P1", exported_by="user-1",
            file_name="plan.pdf", file_url=PLAN_URL_AAA, pdf_id="pdf-9",
        )

        assert result.file_name == "plan.pdf"
        assert result.storage_path.startswith("project-report-exports/P1/")
        assert result.storage_path.endswith("-plan.pdf")
        assert storage.read_bytes(result.storage_path) == PDF_BYTES
        assert result.file_id == resolve_file_id(PLAN_URL_AAA, "plan.pdf")

        session = session_factory()
        record = session.get(FileRecord, result.file_id)
        history = session.execute(select(ExportHistoryEntry)).scalars().all()
        session.close()
        assert record.exported_pdf_url == result.url
        assert record.exported_by == "user-1"
        assert record.project_id == "P1"
        assert [(h.storage_path, h.pdf_id) for h in history] == [(result.storage_path, "pdf-9")]

    def test_project_id_cannot_escape_prefix(self, publisher, storage):
        """Separators in the project id stay inside one path segment."""
        result = publisher.publish(PDF_BYTES, "a/../b", "user-1", file_name="plan.pdf")
        assert result.storage_path.startswith("project-report-exports/a_.._b/")
        assert result.storage_path.count("/") == 2
        assert storage.read_bytes(result.storage_path) == PDF_BYTES

    def test_download_url_carries_token(self, publisher, storage):
        result = publisher.publish(PDF_BYTES, "P1", "user-1", file_name="plan.pdf")
        obj = storage.get(result.storage_path)
        assert result.url.endswith(f"token={obj.download_token}")
        assert storage.open_with_token("sitemark-local", result.storage_path, obj.download_token).data == PDF_BYTES

    def test_repeat_exports_keep_history(self, publisher, session_factory):
        """Two exports with refreshed tokens produce distinct objects on one record."""
        first = publisher.publish(PDF_BYTES, "P1", "user-1", file_name="plan.pdf", file_url=PLAN_URL_AAA)
        second = publisher.publish(PDF_BYTES, "P1", "user-2", file_name="plan.pdf", file_url=PLAN_URL_BBB)

        assert first.storage_path != second.storage_path
        assert first.file_id == second.file_id

        session = session_factory()
        record = session.get(FileRecord, first.file_id)
        entries = session.execute(
            select(ExportHistoryEntry).where(ExportHistoryEntry.file_id == first.file_id)
        ).scalars().all()
        session.close()
        assert len(entries) == 2
        assert record.exported_pdf_url == second.url
        assert record.exported_by == "user-2"

    def test_without_file_url_skips_history(self, publisher, session_factory):
        result = publisher.publish(PDF_BYTES, "P1", "user-1", file_name="plan.pdf")
        assert result.file_id is None

        session = session_factory()
        assert session.execute(select(FileRecord)).scalars().all() == []
        session.close()
        assert stored_paths(session_factory) == [result.storage_path]

    def test_storage_failure_leaves_record_untouched(self, publisher, storage, session_factory):
        """If the object cannot be stored, the FileRecord is not modified."""
        publisher.publish(PDF_BYTES, "P1", "user-1", file_name="plan.pdf", file_url=PLAN_URL_AAA)
        file_id = resolve_file_id(PLAN_URL_AAA, "plan.pdf")
        session = session_factory()
        before = session.get(FileRecord, file_id).exported_pdf_url
        session.close()

        with patch.object(storage, "put", side_effect=StorageError("disk full")):
            with pytest.raises(StorageError):
                publisher.publish(PDF_BYTES, "P1", "user-2", file_name="plan.pdf", file_url=PLAN_URL_AAA)

        session = session_factory()
        record = session.get(FileRecord, file_id)
        count = len(session.execute(select(ExportHistoryEntry)).scalars().all())
        session.close()
        assert record.exported_pdf_url == before
        assert record.exported_by == "user-1"
        assert count == 1

    def test_history_failure_removes_object(self, publisher, session_factory):
        """A failed history write raises PublishError and deletes the stored export."""
        error = OperationalError("INSERT", {}, Exception("database is locked"))
        with patch.object(ExportPublisher, "_record_history", side_effect=error):
            with pytest.raises(PublishError):
                publisher.publish(PDF_BYTES, "P1", "user-1", file_name="plan.pdf", file_url=PLAN_URL_AAA)

        assert stored_paths(session_factory) == []


class TestSweep:
    """Tests for sweep_orphaned_exports()."""

    def test_deletes_only_unreferenced(self, publisher, storage, session_factory):
        kept = publisher.publish(PDF_BYTES, "P1", "user-1", file_name="plan.pdf", file_url=PLAN_URL_AAA)
        no_history = publisher.publish(PDF_BYTES, "P1", "user-1", file_name="loose.pdf")
        storage.put(
            "project-report-exports/P1/orphan.pdf", PDF_BYTES,
            metadata={"projectId": "P1", "recordsHistory": True},
        )
        storage.put("projects/P1/files/x/pins/1/p.jpg", b"jpeg")

        cutoff = timedelta(seconds=-60)
        assert publisher.sweep_orphaned_exports(older_than=cutoff, dry_run=True) == [
            "project-report-exports/P1/orphan.pdf"
        ]
        assert "project-report-exports/P1/orphan.pdf" in stored_paths(session_factory)

        assert publisher.sweep_orphaned_exports(older_than=cutoff) == ["project-report-exports/P1/orphan.pdf"]
        remaining = stored_paths(session_factory)
        assert kept.storage_path in remaining
        assert no_history.storage_path in remaining
        assert "projects/P1/files/x/pins/1/p.jpg" in remaining
        assert "project-report-exports/P1/orphan.pdf" not in remaining

    def test_grace_period(self, publisher, storage):
        """Recent objects are never swept."""
        storage.put("project-report-exports/P1/fresh.pdf", PDF_BYTES, metadata={"recordsHistory": True})
        assert publisher.sweep_orphaned_exports(older_than=timedelta(hours=1)) == []
