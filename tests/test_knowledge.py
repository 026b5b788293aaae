"""Tests for knowledge-base bundle assembly and validation."""

import hashlib
import json
import threading
from pathlib import Path

import pytest

from core.chunking import ContentChunker
from core.errors import ScanIntegrityError
from core.ingestion import FileRecord
from core.knowledge import (
    AssemblerConfig,
    BuildCancelledError,
    KnowledgeBaseAssembler,
    load_bundle,
    resolve_head,
)
from core.knowledge.models import CHUNKS_FILE, FILES_INDEX_JSON, FILES_INDEX_NDJSON
from core.models import ScanTrigger

HEAD_SHA = "0123456789abcdef0123456789abcdef01234567"


def make_file(path: str, content: str) -> FileRecord:
    data = content.encode("utf-8")
    return FileRecord(
        path=path,
        extension=path.rsplit(".", 1)[-1],
        size_bytes=len(data),
        sha1=hashlib.sha1(data).hexdigest(),
        line_count=content.count("\n") + 1,
        language="python",
        content=content,
    )


@pytest.fixture
def fake_repo(tmp_path: Path) -> Path:
    """Working copy whose HEAD is a loose branch ref."""
    repo = tmp_path / "repo"
    (repo / ".git" / "refs" / "heads").mkdir(parents=True)
    (repo / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
    (repo / ".git" / "refs" / "heads" / "main").write_text(HEAD_SHA + "\n")
    return repo


@pytest.fixture
def scan_inputs(store):
    project = store.create_project("shop", "/srv/shop", repo_full_name="acme/shop")
    scan = store.begin_scan(project.id, ScanTrigger.MANUAL, rules_version="1.0.0")

    files = [
        make_file("README.md", "# Shop\n"),
        make_file("src/app.py", "class Cart:\n    pass\n"),
        make_file("src/utils.py", "def total(values):\n    return sum(values)\n"),
    ]
    chunker = ContentChunker()
    chunks = [chunk for record in files for chunk in chunker.chunk_file(record)]
    ids: dict[str, list[str]] = {}
    for chunk in chunks:
        ids.setdefault(chunk.path, []).append(chunk.chunk_id)
    return project, scan, files, ids, chunks


# =============================================================================
# resolve_head Tests
# =============================================================================


class TestResolveHead:
    """Tests for reading HEAD without git."""

    def test_loose_ref(self, fake_repo: Path):
        """Test resolving HEAD through a loose ref."""
        assert resolve_head(fake_repo) == HEAD_SHA

    def test_packed_ref(self, fake_repo: Path):
        """Test resolving HEAD through packed-refs."""
        (fake_repo / ".git" / "refs" / "heads" / "main").unlink()
        (fake_repo / ".git" / "packed-refs").write_text(
            "# pack-refs with: peeled fully-peeled sorted\n" f"{HEAD_SHA} refs/heads/main\n"
        )
        assert resolve_head(fake_repo) == HEAD_SHA

    def test_detached_head(self, fake_repo: Path):
        """Test a detached HEAD holding the revision directly."""
        (fake_repo / ".git" / "HEAD").write_text(HEAD_SHA + "\n")
        assert resolve_head(fake_repo) == HEAD_SHA

    def test_real_clone(self, origin_repo: Path, run_git):
        """Test agreement with git on a real repository."""
        assert resolve_head(origin_repo) == run_git(origin_repo, "rev-parse", "HEAD")

    def test_unknown_ref(self, fake_repo: Path):
        """Test that a dangling ref is an integrity error."""
        (fake_repo / ".git" / "HEAD").write_text("ref: refs/heads/gone\n")
        with pytest.raises(ScanIntegrityError):
            resolve_head(fake_repo)

    def test_missing_git_dir(self, tmp_path: Path):
        """Test that a directory without git metadata is an integrity error."""
        with pytest.raises(ScanIntegrityError):
            resolve_head(tmp_path)


# =============================================================================
# Build Tests
# =============================================================================


class TestBuild:
    """Tests for KnowledgeBaseAssembler.build."""

    def test_build_writes_valid_bundle(self, fake_repo: Path, tmp_path: Path, scan_inputs):
        """Test that a fresh bundle is complete and passes validation."""
        project, scan, files, ids, chunks = scan_inputs
        kb_root = tmp_path / "kb"

        summary = KnowledgeBaseAssembler().build(
            project, scan, fake_repo, kb_root, files, ids, chunks, files_excluded=2
        )

        assert summary.is_valid
        assert summary.files_index_entries == 3
        assert summary.chunks_count == len(chunks)
        assert summary.coverage_percent == 100.0
        assert summary.scan_id.startswith(f"scan_{project.id}_{HEAD_SHA[:8]}_")

        bundle = load_bundle(summary.output_path)
        assert bundle.meta.head_commit_sha == HEAD_SHA
        assert bundle.meta.selected_branch == "main"
        assert bundle.meta.exclusion_rules_version == "1.0.0"
        assert bundle.meta.stats.total_files_scanned == 3
        assert bundle.meta.stats.total_files_excluded == 2
        assert [entry.file_path for entry in bundle.files] == [f.path for f in files]
        assert [c.chunk_id for c in bundle.iter_chunks()] == [c.chunk_id for c in chunks]
        assert bundle.directory_stats is not None
        assert bundle.directory_stats.by_extension["py"].files == 2
        assert [s.directory for s in bundle.directory_stats.by_top_level] == ["src", "(root)"]

    def test_corrupted_chunk_store_is_invalid(self, fake_repo: Path, tmp_path: Path, scan_inputs):
        """Test that removing a chunk line flips the validation result."""
        project, scan, files, ids, chunks = scan_inputs
        assembler = KnowledgeBaseAssembler()
        summary = assembler.build(project, scan, fake_repo, tmp_path / "kb", files, ids, chunks)

        chunks_file = Path(summary.output_path) / CHUNKS_FILE
        lines = chunks_file.read_text().splitlines()
        removed = json.loads(lines[0])["chunk_id"]
        chunks_file.write_text("\n".join(lines[1:]) + "\n")

        result = assembler.validate(summary.output_path)

        assert not result.is_valid
        assert result.missing_in_chunks == 1
        assert result.warnings[0].missing_in_chunks == [removed]

    def test_inconsistent_bundle_never_published(
        self, fake_repo: Path, tmp_path: Path, scan_inputs
    ):
        """Test that a bundle failing validation is removed before it reaches kb."""
        project, scan, files, ids, chunks = scan_inputs
        kb_root = tmp_path / "kb"
        assembler = KnowledgeBaseAssembler()
        ids = {**ids, "src/app.py": ids["src/app.py"][1:]}

        summary = assembler.build(project, scan, fake_repo, kb_root, files, ids, chunks)

        assert not summary.is_valid
        assert summary.orphaned_chunks == 1
        assert summary.scan_id.startswith(f"scan_{project.id}_")
        assert not Path(summary.output_path).exists()
        assert list(kb_root.iterdir()) == []

    def test_orphaned_and_duplicated_ids(self, fake_repo: Path, tmp_path: Path, scan_inputs):
        """Test detection of unreferenced and repeated chunk ids."""
        project, scan, files, ids, chunks = scan_inputs
        assembler = KnowledgeBaseAssembler()
        summary = assembler.build(project, scan, fake_repo, tmp_path / "kb", files, ids, chunks)

        chunks_file = Path(summary.output_path) / CHUNKS_FILE
        first_line = chunks_file.read_text().splitlines()[0]
        orphan = json.loads(first_line) | {"chunk_id": "ffffffffffffffff"}
        with open(chunks_file, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(orphan) + "\n")
            handle.write(first_line + "\n")

        result = assembler.validate(summary.output_path)

        assert not result.is_valid
        assert result.orphaned_chunks == 1
        assert result.duplicated_ids == 1
        assert result.coverage_percent < 100.0

    def test_large_index_uses_ndjson(self, fake_repo: Path, tmp_path: Path, scan_inputs):
        """Test that the file index switches format above the threshold."""
        project, scan, files, ids, chunks = scan_inputs
        assembler = KnowledgeBaseAssembler(AssemblerConfig(ndjson_threshold=2))

        summary = assembler.build(project, scan, fake_repo, tmp_path / "kb", files, ids, chunks)

        output = Path(summary.output_path)
        assert (output / FILES_INDEX_NDJSON).is_file()
        assert not (output / FILES_INDEX_JSON).exists()
        assert summary.is_valid
        assert len(load_bundle(output).files) == 3

    def test_same_second_builds_get_distinct_ids(
        self, fake_repo: Path, tmp_path: Path, scan_inputs
    ):
        """Test that two builds never share a bundle directory."""
        project, scan, files, ids, chunks = scan_inputs
        assembler = KnowledgeBaseAssembler()
        kb_root = tmp_path / "kb"

        first = assembler.build(project, scan, fake_repo, kb_root, files, ids, chunks)
        second = assembler.build(project, scan, fake_repo, kb_root, files, ids, chunks)

        assert first.scan_id != second.scan_id
        assert len(assembler.list_bundles(kb_root)) == 2

    def test_cancelled_build_leaves_nothing(self, fake_repo: Path, tmp_path: Path, scan_inputs):
        """Test that a cancelled build removes its staging directory."""
        project, scan, files, ids, chunks = scan_inputs
        kb_root = tmp_path / "kb"
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(BuildCancelledError):
            KnowledgeBaseAssembler().build(
                project, scan, fake_repo, kb_root, files, ids, chunks, cancel=cancel
            )

        assert list(kb_root.iterdir()) == []

    def test_build_without_head_fails(self, tmp_path: Path, scan_inputs):
        """Test that an unresolvable HEAD aborts before writing."""
        project, scan, files, ids, chunks = scan_inputs
        with pytest.raises(ScanIntegrityError):
            KnowledgeBaseAssembler().build(
                project, scan, tmp_path / "nothing", tmp_path / "kb", files, ids, chunks
            )


# =============================================================================
# Retention Tests
# =============================================================================


class TestRetention:
    """Tests for pruning and staging cleanup."""

    def _make_bundles(self, kb_root: Path, stamps: list[str]) -> None:
        for stamp in stamps:
            (kb_root / f"scan_p1_abcdef12_{stamp}").mkdir(parents=True)

    def test_prune_keeps_newest(self, tmp_path: Path):
        """Test that only the newest bundles survive."""
        kb_root = tmp_path / "kb"
        self._make_bundles(
            kb_root, ["20260101000000", "20260301000000", "20260201000000", "20260401000000"]
        )

        removed = KnowledgeBaseAssembler(AssemblerConfig(retention=2)).prune(kb_root)

        assert removed == [
            "scan_p1_abcdef12_20260101000000",
            "scan_p1_abcdef12_20260201000000",
        ]
        assert sorted(p.name for p in kb_root.iterdir()) == [
            "scan_p1_abcdef12_20260301000000",
            "scan_p1_abcdef12_20260401000000",
        ]

    def test_prune_counts_only_completed_bundles(self, tmp_path: Path):
        """Test that bundles without a completed scan are removed and not retained."""
        kb_root = tmp_path / "kb"
        self._make_bundles(
            kb_root, ["20260101000000", "20260201000000", "20260301000000", "20260401000000"]
        )
        completed = {"scan_p1_abcdef12_20260101000000", "scan_p1_abcdef12_20260201000000"}

        removed = KnowledgeBaseAssembler(AssemblerConfig(retention=2)).prune(
            kb_root, completed=completed
        )

        assert removed == [
            "scan_p1_abcdef12_20260301000000",
            "scan_p1_abcdef12_20260401000000",
        ]
        assert sorted(p.name for p in kb_root.iterdir()) == sorted(completed)

    def test_prune_ignores_foreign_directories(self, tmp_path: Path):
        """Test that unrelated directories are never deleted."""
        kb_root = tmp_path / "kb"
        self._make_bundles(kb_root, ["20260101000000"])
        (kb_root / "notes").mkdir()

        assert KnowledgeBaseAssembler().prune(kb_root, keep=0) == [
            "scan_p1_abcdef12_20260101000000"
        ]
        assert (kb_root / "notes").is_dir()

    def test_sweep_partial(self, tmp_path: Path):
        """Test removal of staging directories from interrupted builds."""
        kb_root = tmp_path / "kb"
        self._make_bundles(kb_root, ["20260101000000"])
        (kb_root / ".scan_p1_abcdef12_20260102000000.partial").mkdir()

        assert KnowledgeBaseAssembler().sweep_partial(kb_root) == 1
        assert [p.name for p in kb_root.iterdir()] == ["scan_p1_abcdef12_20260101000000"]

    def test_missing_root(self, tmp_path: Path):
        """Test that a missing bundle root is empty."""
        assembler = KnowledgeBaseAssembler()
        assert assembler.list_bundles(tmp_path / "none") == []
        assert assembler.sweep_partial(tmp_path / "none") == 0
