"""Tests for the transactional state store."""

import hashlib

import pytest

from core.chunking import ContentChunker
from core.errors import ProjectNotFoundError, ScanAlreadyRunningError
from core.ingestion import FileRecord
from core.models import ProjectStatus, ScanStatus, ScanTrigger
from core.store import ProjectStore, ScanTotals


def make_file(path: str, content: str) -> FileRecord:
    data = content.encode("utf-8")
    return FileRecord(
        path=path,
        size_bytes=len(data),
        sha1=hashlib.sha1(data).hexdigest(),
        line_count=content.count("\n") + 1,
        language="python",
        content=content,
    )


@pytest.fixture
def project(store: ProjectStore):
    return store.create_project(
        "shop", "https://github.com/acme/shop.git", repo_full_name="acme/shop"
    )


# =============================================================================
# Project Tests
# =============================================================================


class TestProjects:
    """Tests for project rows."""

    def test_create_and_get(self, store: ProjectStore, project):
        """Test that a new project starts pending on the default branch."""
        fetched = store.get_project(project.id)

        assert fetched.name == "shop"
        assert fetched.status == ProjectStatus.PENDING
        assert fetched.branch == "main"
        assert len(fetched.id) == 12

    def test_selected_branch_overrides_default(self, store: ProjectStore):
        """Test the tracked branch property."""
        project = store.create_project("shop", "/tmp/x", selected_branch="develop")
        assert project.branch == "develop"

    def test_get_missing(self, store: ProjectStore):
        """Test that unknown ids raise ProjectNotFoundError."""
        with pytest.raises(ProjectNotFoundError):
            store.get_project("missing")

    def test_find_by_repo_case_insensitive(self, store: ProjectStore, project):
        """Test lookup by owner/name."""
        assert [p.id for p in store.find_projects_by_repo("ACME/Shop")] == [project.id]
        assert store.find_projects_by_repo("acme/other") == []

    def test_list_projects(self, store: ProjectStore, project):
        """Test listing projects."""
        other = store.create_project("blog", "/srv/blog")
        assert {p.id for p in store.list_projects()} == {project.id, other.id}

    def test_delete_removes_everything(self, store: ProjectStore, project):
        """Test that deleting a project removes scans, files and chunks."""
        record = make_file("a.py", "x = 1\n")
        store.replace_manifest(project.id, [record])
        store.replace_chunks(project.id, ContentChunker().chunk_file(record))
        scan = store.begin_scan(project.id, ScanTrigger.MANUAL)
        store.fail_scan(project.id, scan.id, "boom")

        store.delete_project(project.id)

        with pytest.raises(ProjectNotFoundError):
            store.get_project(project.id)
        assert store.list_files(project.id) == []
        assert store.list_chunks(project.id) == []
        assert store.list_scans(project.id) == []

    def test_delete_while_scanning(self, store: ProjectStore, project):
        """Test that a scanning project cannot be deleted."""
        store.begin_scan(project.id, ScanTrigger.MANUAL)
        with pytest.raises(ScanAlreadyRunningError):
            store.delete_project(project.id)


# =============================================================================
# Scan Tests
# =============================================================================


class TestScans:
    """Tests for scan lifecycle."""

    def test_begin_scan_marks_scanning(self, store: ProjectStore, project):
        """Test that starting a scan flips the project status."""
        scan = store.begin_scan(project.id, ScanTrigger.WEBHOOK, meta={"ref": "refs/heads/main"})

        assert scan.status == ScanStatus.RUNNING
        assert scan.attempts == 1
        assert scan.meta == {"ref": "refs/heads/main"}
        assert store.get_project(project.id).status == ProjectStatus.SCANNING

    def test_only_one_running_scan(self, store: ProjectStore, project):
        """Test that a second scan is refused while one is running."""
        store.begin_scan(project.id, ScanTrigger.MANUAL)
        with pytest.raises(ScanAlreadyRunningError):
            store.begin_scan(project.id, ScanTrigger.WEBHOOK)

    def test_begin_scan_missing_project(self, store: ProjectStore):
        """Test that starting a scan of an unknown project fails."""
        with pytest.raises(ProjectNotFoundError):
            store.begin_scan("missing", ScanTrigger.MANUAL)

    def test_complete_scan(self, store: ProjectStore, project):
        """Test that completion updates the scan and the project."""
        scan = store.begin_scan(project.id, ScanTrigger.MANUAL)
        totals = ScanTotals(files_scanned=3, chunks_created=4, total_lines=30, total_bytes=300)

        completed = store.complete_scan(
            project.id,
            scan.id,
            commit_sha="abc123",
            totals=totals,
            duration_ms=42,
            kb_scan_id="20260101T000000Z",
            kb_valid=True,
            warnings=["x"],
        )

        assert completed.status == ScanStatus.COMPLETED
        assert completed.stage_percent == 100
        assert completed.kb_valid is True
        assert completed.warnings == ["x"]
        refreshed = store.get_project(project.id)
        assert refreshed.status == ProjectStatus.READY
        assert refreshed.last_commit_sha == "abc123"
        assert refreshed.total_files == 3
        assert refreshed.last_kb_scan_id == "20260101T000000Z"
        assert store.last_completed_scan(project.id).id == scan.id

    def test_next_scan_records_previous_revision(self, store: ProjectStore, project):
        """Test that a new scan remembers the last scanned revision."""
        scan = store.begin_scan(project.id, ScanTrigger.MANUAL)
        store.complete_scan(project.id, scan.id, "abc123", ScanTotals(), 1)

        second = store.begin_scan(project.id, ScanTrigger.WEBHOOK)

        assert second.previous_commit_sha == "abc123"

    def test_fail_scan_releases_project(self, store: ProjectStore, project):
        """Test that a failed scan records the error and allows a new scan."""
        scan = store.begin_scan(project.id, ScanTrigger.MANUAL)
        store.fail_scan(project.id, scan.id, "clone failed", duration_ms=5)

        failed = store.get_scan(scan.id)
        assert failed.status == ScanStatus.FAILED
        assert failed.last_error == "clone failed"
        refreshed = store.get_project(project.id)
        assert refreshed.status == ProjectStatus.FAILED
        assert refreshed.last_error == "clone failed"
        assert store.last_completed_scan(project.id) is None

        store.begin_scan(project.id, ScanTrigger.MANUAL)

    def test_progress_timings_and_attempts(self, store: ProjectStore, project):
        """Test progress, stage timing and attempt bookkeeping."""
        scan = store.begin_scan(project.id, ScanTrigger.MANUAL)

        store.update_progress(project.id, scan.id, "scan", 140)
        store.record_stage_timing(scan.id, "sync", 10)
        store.record_stage_timing(scan.id, "scan", 20)
        attempts = store.increment_attempts(scan.id)

        refreshed = store.get_scan(scan.id)
        assert refreshed.current_stage == "scan"
        assert refreshed.stage_percent == 100
        assert refreshed.stage_timings == {"sync": 10, "scan": 20}
        assert attempts == refreshed.attempts == 2

    def test_list_scans_newest_first(self, store: ProjectStore, project):
        """Test scan history ordering."""
        first = store.begin_scan(project.id, ScanTrigger.MANUAL)
        store.fail_scan(project.id, first.id, "boom")
        second = store.begin_scan(project.id, ScanTrigger.MANUAL)

        assert [s.id for s in store.list_scans(project.id)] == [second.id, first.id]
        assert [s.id for s in store.list_scans(project.id, limit=1)] == [second.id]

    def test_completed_bundle_ids(self, store: ProjectStore, project):
        """Test that only bundles of completed scans are reported."""
        done = store.begin_scan(project.id, ScanTrigger.MANUAL)
        store.complete_scan(project.id, done.id, "abc123", ScanTotals(), 1, kb_scan_id="scan_a")
        unchanged = store.begin_scan(project.id, ScanTrigger.WEBHOOK)
        store.complete_scan(project.id, unchanged.id, "abc123", ScanTotals(), 1)
        failed = store.begin_scan(project.id, ScanTrigger.MANUAL)
        store.update_scan(failed.id, kb_scan_id="scan_b")
        store.fail_scan(project.id, failed.id, "boom")

        assert store.completed_bundle_ids(project.id) == {"scan_a"}

    def test_get_scan_missing(self, store: ProjectStore):
        """Test that unknown scan ids raise LookupError."""
        with pytest.raises(LookupError):
            store.get_scan(999)


# =============================================================================
# Manifest and Chunk Tests
# =============================================================================


class TestManifestAndChunks:
    """Tests for file and chunk rows."""

    def test_replace_manifest(self, store: ProjectStore, project):
        """Test that the manifest is stored in path order without content."""
        store.replace_manifest(
            project.id, [make_file("b.py", "y = 2\n"), make_file("a.py", "x = 1\n")]
        )

        files = store.list_files(project.id)

        assert [f.path for f in files] == ["a.py", "b.py"]
        assert files[0].content is None
        assert files[0].sha1 == hashlib.sha1(b"x = 1\n").hexdigest()

    def test_apply_changes(self, store: ProjectStore, project):
        """Test deleting and upserting files by path."""
        chunker = ContentChunker()
        a, b = make_file("a.py", "x = 1\n"), make_file("b.py", "y = 2\n")
        store.replace_manifest(project.id, [a, b])
        store.replace_chunks(project.id, chunker.chunk_file(a) + chunker.chunk_file(b))

        changed = make_file("b.py", "y = 3\n")
        added = make_file("c.py", "z = 4\n")
        store.apply_changes(project.id, deleted_paths=["a.py"], files=[changed, added])
        stored = store.replace_chunks_for_paths(
            project.id,
            ["a.py", "b.py", "c.py"],
            chunker.chunk_file(changed) + chunker.chunk_file(added),
        )

        files = store.list_files(project.id)
        assert [f.path for f in files] == ["b.py", "c.py"]
        assert files[0].sha1 == changed.sha1
        assert stored == 2
        assert store.chunk_ids_by_path(project.id) == {
            "b.py": [chunker.chunk_file(changed)[0].chunk_id],
            "c.py": [chunker.chunk_file(added)[0].chunk_id],
        }

    def test_chunks_round_trip(self, store: ProjectStore, project):
        """Test that stored chunks come back equal and ordered."""
        record = make_file("a.py", "def a():\n    return 1\n")
        chunks = ContentChunker().chunk_file(record)
        store.replace_manifest(project.id, [record])

        assert store.replace_chunks(project.id, chunks) == 1
        assert store.list_chunks(project.id) == chunks
        assert store.list_chunks(project.id, path="a.py") == chunks
        assert store.chunk_ids_by_path(project.id) == {"a.py": [chunks[0].chunk_id]}

    def test_chunk_without_file_is_skipped(self, store: ProjectStore, project):
        """Test that chunks whose file is not in the manifest are dropped."""
        chunks = ContentChunker().chunk_file(make_file("ghost.py", "x = 1\n"))
        assert store.replace_chunks(project.id, chunks) == 0

    def test_recalculate_stats(self, store: ProjectStore, project):
        """Test that totals are recomputed from the manifest."""
        a, b = make_file("a.py", "x = 1\n"), make_file("b.py", "y = 2\nz = 3\n")
        store.replace_manifest(project.id, [a, b])
        store.replace_chunks(project.id, ContentChunker().chunk_file(a))

        totals = store.recalculate_stats(project.id)

        assert totals.files_scanned == 2
        assert totals.total_lines == a.line_count + b.line_count
        assert totals.total_bytes == a.size_bytes + b.size_bytes
        assert totals.chunks_created == 1
        assert store.get_project(project.id).total_files == 2
