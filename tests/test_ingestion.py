"""Tests for the ingestion module.

This module contains tests for:
- ExclusionMatcher (rules, toggles, language and binary classification)
- FileScanner (manifests, exclusion log, incremental updates)
- RepositorySync (clone, fetch and reset against a local remote)
- DiffAnalyzer (change sets between revisions)
- FrameworkDetector (file hints and stack detection)
"""

import hashlib
import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from core.errors import ScanIntegrityError, SyncError
from core.ingestion import (
    ChangeSet,
    ExclusionMatcher,
    ExclusionRules,
    ExclusionToggles,
    FileRecord,
    FileScanner,
    FrameworkDetector,
    RepositorySync,
    ScannerConfig,
    authenticated_url,
    file_id_for,
    touches_stack_files,
)
from core.ingestion.exclusion import glob_to_regex

SAMPLE_PATHS = ["README.md", "app/Models/User.php", "src/app.py", "src/utils.py"]


# =============================================================================
# Model Tests
# =============================================================================


class TestFileRecord:
    """Tests for FileRecord model."""

    def test_file_id_derived_from_path(self):
        """Test that the surrogate id is computed from the path when omitted."""
        record = FileRecord(path="src/app.py", size_bytes=10)
        assert record.file_id == file_id_for("src/app.py")
        assert record.file_id.startswith("f_")

    def test_content_not_serialized(self):
        """Test that decoded content never leaks into dumps."""
        record = FileRecord(path="a.py", size_bytes=3, content="x=1")
        assert "content" not in record.model_dump()
        assert record.is_chunkable

    def test_binary_record_not_chunkable(self):
        """Test that binary records are skipped by the chunker."""
        record = FileRecord(path="a.png", size_bytes=3, is_binary=True, content=None)
        assert not record.is_chunkable

    def test_forbids_extra_fields(self):
        """Test that extra fields are not allowed."""
        with pytest.raises(ValidationError):
            FileRecord(path="a.py", size_bytes=1, unknown="x")


class TestChangeSet:
    """Tests for ChangeSet model."""

    def test_totals_and_paths(self):
        """Test counting and collecting changed paths."""
        changes = ChangeSet(added=["a.py"], modified=["b.py"], deleted=["c.py", "d.py"])
        assert changes.total == 4
        assert changes.all_paths() == {"a.py", "b.py", "c.py", "d.py"}
        assert not changes.is_empty

    def test_empty(self):
        """Test an empty change set."""
        assert ChangeSet().is_empty


# =============================================================================
# ExclusionMatcher Tests
# =============================================================================


class TestGlobToRegex:
    """Tests for the glob translation."""

    def test_double_star_matches_any_depth(self):
        """Test that **/dir/** matches the directory at any depth."""
        pattern = glob_to_regex("**/node_modules/**")
        assert pattern.match("node_modules/react/index.js")
        assert pattern.match("web/node_modules/react/index.js")
        assert not pattern.match("src/node_modules_backup/index.js")

    def test_single_star_stays_in_segment(self):
        """Test that * does not cross a path separator."""
        pattern = glob_to_regex("*.py")
        assert pattern.match("app.py")
        assert not pattern.match("src/app.py")


class TestExclusionMatcher:
    """Tests for ExclusionMatcher."""

    @pytest.fixture
    def matcher(self) -> ExclusionMatcher:
        return ExclusionMatcher()

    def test_vendor_directory_excluded(self, matcher: ExclusionMatcher):
        """Test that files under vendor are excluded by directory rule."""
        assert matcher.exclusion_reason("vendor/laravel/framework/src/App.php") == "directory:vendor"

    def test_nested_excluded_directory(self, matcher: ExclusionMatcher):
        """Test that excluded directories match at any depth."""
        assert matcher.should_exclude("web/node_modules/react/index.js")
        assert matcher.should_exclude("public/build/assets/app.js")
        assert matcher.should_exclude("storage/logs/laravel.log")

    def test_excluded_file_name(self, matcher: ExclusionMatcher):
        """Test exact file name rules."""
        assert matcher.exclusion_reason(".gitignore") == "filename:.gitignore"
        assert matcher.exclusion_reason("src/.DS_Store") == "filename:.DS_Store"

    def test_multi_part_extension_reported(self, matcher: ExclusionMatcher):
        """Test that the longest matching extension is reported."""
        assert matcher.exclusion_reason("resources/js/app.min.js") == "extension:min.js"
        assert matcher.exclusion_reason("composer.lock") == "extension:lock"

    def test_source_file_included(self, matcher: ExclusionMatcher):
        """Test that ordinary source files are not excluded."""
        assert matcher.exclusion_reason("src/app.py") is None
        assert matcher.exclusion_reason("app/Http/Controllers/HomeController.php") is None

    def test_directory_exclusion_reason(self, matcher: ExclusionMatcher):
        """Test directory-level pruning decisions."""
        assert matcher.directory_exclusion_reason("") is None
        assert matcher.directory_exclusion_reason("node_modules") == "directory:node_modules"
        assert matcher.directory_exclusion_reason("src") is None

    def test_toggles_reinclude_groups(self):
        """Test that toggles re-include vendor, lock files and minified assets."""
        matcher = ExclusionMatcher(
            ExclusionRules(
                toggles=ExclusionToggles(
                    include_vendor=True, include_lock_files=True, include_minified=True
                )
            )
        )
        assert matcher.exclusion_reason("vendor/lib.php") is None
        assert matcher.exclusion_reason("composer.lock") is None
        assert matcher.exclusion_reason("public/app.min.js") is None
        assert matcher.should_exclude("node_modules/react/index.js")

    def test_rules_version(self):
        """Test that the matcher reports the configured rule version."""
        matcher = ExclusionMatcher(ExclusionRules(schema_version="9.9.9"))
        assert matcher.rules_version == "9.9.9"

    def test_language_detection(self, matcher: ExclusionMatcher):
        """Test extension and file name based language detection."""
        assert matcher.language_for("src/app.py") == "python"
        assert matcher.language_for("resources/views/home.blade.php") == "blade"
        assert matcher.language_for("app/User.php") == "php"
        assert matcher.language_for("Makefile") == "makefile"
        assert matcher.language_for(".env") == "dotenv"
        assert matcher.language_for("notes.unknownext") == "plaintext"

    def test_extension_of(self, matcher: ExclusionMatcher):
        """Test multi-part and missing extensions."""
        assert matcher.extension_of("resources/views/home.blade.php") == "blade.php"
        assert matcher.extension_of("src/App.PY") == "py"
        assert matcher.extension_of("Dockerfile") is None

    def test_binary_detection(self, matcher: ExclusionMatcher):
        """Test binary classification by extension and content sniffing."""
        assert matcher.is_binary("logo.png", b"not really a png")
        assert matcher.is_binary("data.txt", b"abc\x00def")
        assert matcher.is_binary("unreadable.txt", None)
        assert not matcher.is_binary("notes.txt", b"hello world\n")

    def test_classify_without_header(self, matcher: ExclusionMatcher):
        """Test that classify accepts a path alone, treating the content as unreadable."""
        classification = matcher.classify("src/app.py")
        assert classification.language == "python"
        assert classification.is_binary
        assert not matcher.classify("src/app.py", b"print(1)\n").is_binary


# =============================================================================
# FileScanner Tests
# =============================================================================


class TestFileScanner:
    """Tests for FileScanner."""

    @pytest.mark.asyncio
    async def test_scan_builds_ordered_manifest(self, sample_tree: Path):
        """Test that the manifest lists included files in path order."""
        manifest = await FileScanner().scan(sample_tree)

        assert [f.path for f in manifest.files] == SAMPLE_PATHS
        assert manifest.stats.total_files == 4
        assert manifest.rules_version == ExclusionRules().schema_version

    @pytest.mark.asyncio
    async def test_scan_records_file_metadata(self, sample_tree: Path):
        """Test size, hash, line count, language and symbols of a record."""
        manifest = await FileScanner().scan(sample_tree)
        record = next(f for f in manifest.files if f.path == "src/app.py")
        data = (sample_tree / "src/app.py").read_bytes()

        assert record.size_bytes == len(data)
        assert record.sha1 == hashlib.sha1(data).hexdigest()
        assert record.line_count == data.count(b"\n") + 1
        assert record.language == "python"
        assert record.extension == "py"
        assert not record.is_binary
        assert "Cart" in record.symbols_declared
        assert "from src.utils import total" in record.imports
        assert record.content == data.decode("utf-8")

    @pytest.mark.asyncio
    async def test_scan_logs_exclusions(self, sample_tree: Path):
        """Test that excluded directories and files land in the exclusion log."""
        manifest = await FileScanner().scan(sample_tree)
        reasons = {entry.path: entry.reason for entry in manifest.excluded}

        assert reasons["vendor/"] == "directory:vendor"
        assert reasons["composer.lock"] == "extension:lock"
        assert manifest.stats.files_excluded == len(manifest.excluded)

    @pytest.mark.asyncio
    async def test_vendor_toggle_adds_exactly_vendor_files(self, sample_tree: Path):
        """Test that un-excluding vendor contributes exactly the vendor files."""
        default = await FileScanner().scan(sample_tree)
        assert not any(f.path.startswith("vendor/") for f in default.files)

        scanner = FileScanner(
            ExclusionMatcher(ExclusionRules(toggles=ExclusionToggles(include_vendor=True)))
        )
        with_vendor = await scanner.scan(sample_tree)

        added = {f.path for f in with_vendor.files} - {f.path for f in default.files}
        assert added == {"vendor/lib.php"}
        assert with_vendor.stats.total_files == default.stats.total_files + 1

    @pytest.mark.asyncio
    async def test_binary_file_metadata_only(self, sample_tree: Path):
        """Test that binary files keep metadata but no content."""
        blob = sample_tree / "assets" / "raw.dat"
        blob.parent.mkdir()
        blob.write_bytes(b"\x00\x01\x02binary\n")

        manifest = await FileScanner().scan(sample_tree)
        record = next(f for f in manifest.files if f.path == "assets/raw.dat")

        assert record.is_binary
        assert record.content is None
        assert record.line_count == 0
        assert record.sha1 == hashlib.sha1(blob.read_bytes()).hexdigest()

    @pytest.mark.asyncio
    async def test_oversized_file_not_read(self, sample_tree: Path):
        """Test that files above the content ceiling are hashed but not read."""
        scanner = FileScanner(config=ScannerConfig(max_file_size=40))
        manifest = await scanner.scan(sample_tree)
        record = next(f for f in manifest.files if f.path == "src/app.py")

        assert record.content is None
        assert record.sha1 == hashlib.sha1((sample_tree / "src/app.py").read_bytes()).hexdigest()
        assert record.line_count > 0
        assert manifest.stats.oversized_files >= 1

    @pytest.mark.asyncio
    async def test_undecodable_file_warns(self, sample_tree: Path):
        """Test that non UTF-8 text keeps metadata and produces a warning."""
        (sample_tree / "latin.txt").write_bytes(b"caf\xe9\n")

        manifest = await FileScanner().scan(sample_tree)
        record = next(f for f in manifest.files if f.path == "latin.txt")

        assert record.content is None
        assert not record.is_binary
        assert any(w.path == "latin.txt" and "UTF-8" in w.message for w in manifest.warnings)

    @pytest.mark.asyncio
    async def test_symlink_outside_repository_skipped(self, sample_tree: Path, tmp_path: Path):
        """Test that symlinks escaping the repository are not followed."""
        outside = tmp_path / "secret.txt"
        outside.write_text("secret\n")
        os.symlink(outside, sample_tree / "leak.txt")

        manifest = await FileScanner().scan(sample_tree)

        assert "leak.txt" not in [f.path for f in manifest.files]
        assert any(w.path == "leak.txt" for w in manifest.warnings)

    @pytest.mark.asyncio
    async def test_symlinked_directory_inside_repository(self, sample_tree: Path):
        """Test that files behind an in-repository directory link keep their real paths."""
        os.symlink(sample_tree / "src", sample_tree / "alias", target_is_directory=True)

        manifest = await FileScanner().scan(sample_tree)

        assert [f.path for f in manifest.files] == SAMPLE_PATHS
        assert not any(w.path == "alias" for w in manifest.warnings)

    @pytest.mark.asyncio
    async def test_progress_reports_completion(self, sample_tree: Path):
        """Test that the progress callback receives the final count."""
        calls: list[tuple[int, int]] = []
        await FileScanner().scan(sample_tree, progress=lambda done, total: calls.append((done, total)))
        assert calls[-1] == (4, 4)

    @pytest.mark.asyncio
    async def test_scan_missing_root(self, tmp_path: Path):
        """Test that scanning a missing directory raises."""
        with pytest.raises(FileNotFoundError):
            await FileScanner().scan(tmp_path / "missing")

    @pytest.mark.asyncio
    async def test_update_changed_files(self, sample_tree: Path, store):
        """Test applying a change set to the stored manifest."""
        project = store.create_project("shop", "https://example.com/shop.git")
        scanner = FileScanner()
        await scanner.persist_manifest(store, project.id, await scanner.scan(sample_tree))

        (sample_tree / "README.md").unlink()
        (sample_tree / "src/utils.py").write_text("def total(values):\n    return 0\n")
        (sample_tree / "src/new.py").write_text("VALUE = 1\n")
        changes = ChangeSet(
            added=["src/new.py"], modified=["src/utils.py"], deleted=["README.md"]
        )

        manifest = await scanner.update_changed_files(store, project.id, sample_tree, changes)

        assert sorted(f.path for f in manifest.files) == ["src/new.py", "src/utils.py"]
        stored = store.list_files(project.id)
        assert [f.path for f in stored] == [
            "app/Models/User.php",
            "src/app.py",
            "src/new.py",
            "src/utils.py",
        ]
        utils = next(f for f in stored if f.path == "src/utils.py")
        assert utils.sha1 == hashlib.sha1((sample_tree / "src/utils.py").read_bytes()).hexdigest()

    def test_directory_summary(self):
        """Test aggregation by immediate directory."""
        files = [
            FileRecord(path="a.py", size_bytes=1, line_count=1),
            FileRecord(path="src/b.py", size_bytes=2, line_count=2),
            FileRecord(path="src/c.py", size_bytes=3, line_count=3),
            FileRecord(path="src/x/d.py", size_bytes=4, line_count=4),
        ]
        summary = FileScanner.directory_summary(files)

        assert [s.directory for s in summary] == ["(root)", "src", "src/x"]
        src = summary[1]
        assert (src.file_count, src.total_lines, src.total_bytes, src.depth) == (2, 5, 5, 1)
        assert summary[2].depth == 2

    def test_top_level_summary(self):
        """Test aggregation by top-level directory, largest first."""
        files = [
            FileRecord(path="a.py", size_bytes=1, line_count=1),
            FileRecord(path="src/b.py", size_bytes=2, line_count=2),
            FileRecord(path="src/x/d.py", size_bytes=4, line_count=4),
            FileRecord(path="docs/c.md", size_bytes=3, line_count=3),
        ]
        summary = FileScanner.top_level_summary(files)

        assert [s.directory for s in summary] == ["src", "(root)", "docs"]
        assert (summary[0].file_count, summary[0].total_bytes) == (2, 6)


# =============================================================================
# RepositorySync Tests
# =============================================================================


class TestAuthenticatedUrl:
    """Tests for token embedding."""

    def test_https_url_gets_token(self):
        """Test that the token becomes the user-info part of an HTTPS URL."""
        url = authenticated_url("https://github.com/acme/shop.git", "tok123")
        assert url == "https://tok123@github.com/acme/shop.git"

    def test_local_path_unchanged(self):
        """Test that local paths never carry a token."""
        assert authenticated_url("/srv/git/shop", "tok123") == "/srv/git/shop"

    def test_no_token(self):
        """Test that anonymous access keeps the URL as is."""
        assert authenticated_url("https://github.com/acme/shop.git", None) == (
            "https://github.com/acme/shop.git"
        )


class TestRepositorySync:
    """Tests for RepositorySync against a local remote."""

    @pytest.fixture
    def project(self, store, origin_repo: Path):
        return store.create_project("shop", str(origin_repo))

    @pytest.mark.asyncio
    async def test_ensure_workspace_creates_layout(self, storage_root: Path, project):
        """Test that the project directories are created."""
        paths = await RepositorySync(storage_root).ensure_workspace(project)

        assert paths.root == storage_root / project.id
        assert paths.knowledge.is_dir()
        assert paths.kb.is_dir()

    @pytest.mark.asyncio
    async def test_first_sync_clones(self, storage_root: Path, project, origin_repo: Path, run_git):
        """Test that the first sync clones the tracked branch."""
        sync = RepositorySync(storage_root)
        await sync.ensure_workspace(project)
        assert not sync.has_working_copy(project)

        sha = await sync.sync_to_latest(project)

        assert sync.has_working_copy(project)
        assert sha == run_git(origin_repo, "rev-parse", "HEAD")
        assert (sync.paths_for(project).repo / "src/app.py").is_file()
        assert await sync.head_revision(project) == sha

    @pytest.mark.asyncio
    async def test_clone_process_bounded_by_timeout(self, storage_root: Path, project):
        """Test that the git clone process itself is killed at the clone timeout."""
        from git import Git

        sync = RepositorySync(storage_root, clone_timeout=42)
        await sync.ensure_workspace(project)

        with patch.object(
            Git,
            "clone",
            create=True,
            side_effect=lambda *args, **kwargs: Git()._call_process("clone", *args, **kwargs),
        ) as clone:
            await sync.sync_to_latest(project)

        assert clone.call_args.kwargs["kill_after_timeout"] == 42
        assert (sync.paths_for(project).repo / "src/app.py").is_file()

    @pytest.mark.asyncio
    async def test_later_sync_fetches_and_resets(
        self, storage_root: Path, project, origin_repo: Path, commit
    ):
        """Test that later syncs move to the new tip and drop untracked files."""
        sync = RepositorySync(storage_root)
        await sync.ensure_workspace(project)
        await sync.sync_to_latest(project)
        repo = sync.paths_for(project).repo
        (repo / "stray.txt").write_text("untracked\n")

        (origin_repo / "src/new.py").write_text("VALUE = 2\n")
        new_sha = commit(origin_repo, "Add new module")

        sha = await sync.sync_to_latest(project)

        assert sha == new_sha
        assert (repo / "src/new.py").is_file()
        assert not (repo / "stray.txt").exists()

    @pytest.mark.asyncio
    async def test_missing_branch_raises_sync_error(self, storage_root: Path, store, origin_repo):
        """Test that an unknown branch fails with a SyncError."""
        project = store.create_project("shop", str(origin_repo), selected_branch="does-not-exist")
        sync = RepositorySync(storage_root)
        await sync.ensure_workspace(project)

        with pytest.raises(SyncError) as exc_info:
            await sync.sync_to_latest(project)
        assert exc_info.value.retryable

    def test_validate_repo_path_rejects_escape(self, storage_root: Path):
        """Test that paths outside the storage root are rejected."""
        sync = RepositorySync(storage_root)
        with pytest.raises(ScanIntegrityError):
            sync.validate_repo_path(storage_root / ".." / "elsewhere")

    @pytest.mark.asyncio
    async def test_remove_workspace(self, storage_root: Path, project):
        """Test that all project storage is deleted."""
        sync = RepositorySync(storage_root)
        paths = await sync.ensure_workspace(project)

        await sync.remove_workspace(project)

        assert not paths.root.exists()


# =============================================================================
# DiffAnalyzer Tests
# =============================================================================


class TestDiff:
    """Tests for change sets between synced revisions."""

    @pytest.mark.asyncio
    async def test_diff_reports_changes(
        self, storage_root: Path, store, origin_repo: Path, run_git, commit
    ):
        """Test added, modified, deleted and renamed paths."""
        project = store.create_project("shop", str(origin_repo))
        sync = RepositorySync(storage_root)
        await sync.ensure_workspace(project)
        before = await sync.sync_to_latest(project)

        (origin_repo / "src/utils.py").write_text("def total(values):\n    return 0\n")
        (origin_repo / "src/extra.py").write_text("EXTRA = True\n")
        (origin_repo / "README.md").unlink()
        run_git(origin_repo, "mv", "app/Models/User.php", "app/Models/Account.php")
        commit(origin_repo, "Change things")
        after = await sync.sync_to_latest(project)

        changes = await sync.diff(project, before, after)

        assert "src/extra.py" in changes.added
        assert "src/utils.py" in changes.modified
        assert "README.md" in changes.deleted
        assert "app/Models/Account.php" in changes.added + changes.modified
        assert "app/Models/User.php" in changes.deleted

    @pytest.mark.asyncio
    async def test_diff_same_revision_is_empty(self, storage_root: Path, store, origin_repo):
        """Test that an unchanged tree yields an empty change set."""
        project = store.create_project("shop", str(origin_repo))
        sync = RepositorySync(storage_root)
        await sync.ensure_workspace(project)
        sha = await sync.sync_to_latest(project)

        changes = await sync.diff(project, sha, sha)

        assert changes.is_empty

    @pytest.mark.asyncio
    async def test_diff_unknown_revision(self, storage_root: Path, store, origin_repo):
        """Test that a missing base revision raises SyncError."""
        project = store.create_project("shop", str(origin_repo))
        sync = RepositorySync(storage_root)
        await sync.ensure_workspace(project)
        sha = await sync.sync_to_latest(project)

        with pytest.raises(SyncError):
            await sync.diff(project, "0" * 40, sha)


# =============================================================================
# FrameworkDetector Tests
# =============================================================================


class TestFrameworkDetector:
    """Tests for FrameworkDetector."""

    def test_path_hints(self):
        """Test framework hints from path globs."""
        detector = FrameworkDetector()
        assert "blade" in detector.hints_for("resources/views/welcome.blade.php", None)
        assert "livewire" in detector.hints_for("app/Livewire/Counter.php", None)
        assert detector.hints_for("src/app.py", None) == []

    def test_content_hints(self):
        """Test framework hints from content markers."""
        detector = FrameworkDetector()
        hints = detector.hints_for("main.py", "from fastapi import FastAPI\napp = FastAPI()\n")
        assert hints == ["fastapi"]

    def test_detect_stack_from_manifests(self, tmp_path: Path):
        """Test stack detection from composer.json and package.json."""
        (tmp_path / "composer.json").write_text(
            json.dumps({"require": {"laravel/framework": "^11.0"}})
        )
        (tmp_path / "package.json").write_text(json.dumps({"devDependencies": {"vue": "^3"}}))
        files = [
            FileRecord(path="app/User.php", size_bytes=1, language="php"),
            FileRecord(path="app/Post.php", size_bytes=1, language="php"),
            FileRecord(path="composer.json", size_bytes=1, language="json"),
        ]

        stack = FrameworkDetector().detect_stack(tmp_path, files)

        assert {"laravel", "vue"} <= set(stack.frameworks)
        assert stack.manifests == ["composer.json", "package.json"]
        assert stack.primary_language == "php"
        assert stack.languages["php"] == 2

    def test_unreadable_manifest_is_skipped(self, tmp_path: Path):
        """Test that a malformed manifest does not abort detection."""
        (tmp_path / "package.json").write_text("{not json")
        stack = FrameworkDetector().detect_stack(tmp_path, [])
        assert stack.manifests == ["package.json"]
        assert stack.frameworks == []

    def test_touches_stack_files(self):
        """Test detection of dependency manifest changes."""
        assert touches_stack_files({"web/package.json"})
        assert touches_stack_files(["composer.lock"])
        assert not touches_stack_files({"src/app.py"})
