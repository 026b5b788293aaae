"""Git diff parsing for incremental updates.

This module computes path-level change sets between two revisions of a
working copy, enabling incremental scans that only touch files changed
since the last scanned revision.
"""

import asyncio
from pathlib import Path

import structlog

from core.errors import SyncError, redact

from .models import ChangeSet

logger = structlog.get_logger(__name__)

# How far a shallow clone is deepened when the base revision is missing.
DEEPEN_COMMITS = 200


class DiffAnalyzer:
    """Analyzes Git diffs to detect file changes.

    Compares the trees of two commits and reports added, modified and
    deleted paths. Renames are reported as a modification of the new path
    together with a deletion of the old one, so incremental updates drop
    the stale record.

    Attributes:
        timeout: Timeout in seconds for diff and deepening fetches.
    """

    def __init__(self, timeout: int = 120) -> None:
        """Initialize the DiffAnalyzer.

        Args:
            timeout: Timeout in seconds for diff and deepening fetches.
        """
        self.timeout = timeout
        logger.debug("DiffAnalyzer initialized")

    async def changes_between(
        self,
        repo_path: str | Path,
        from_revision: str,
        to_revision: str,
        fetch_url: str | None = None,
        project_id: str | None = None,
        secrets: list[str | None] | None = None,
    ) -> ChangeSet:
        """Get all file changes between two revisions.

        Args:
            repo_path: Path to the working copy.
            from_revision: The base revision (exclusive).
            to_revision: The target revision (inclusive).
            fetch_url: URL used to deepen a shallow history if the base
                revision is not available locally.
            project_id: Project identifier for error context.
            secrets: Values to redact from error messages.

        Returns:
            ChangeSet describing all changes.

        Raises:
            SyncError: If a revision cannot be resolved or the diff fails.
        """
        from git import InvalidGitRepositoryError, NoSuchPathError, Repo

        root = Path(repo_path) if isinstance(repo_path, str) else repo_path
        path_str = str(root.resolve())

        if from_revision == to_revision:
            return ChangeSet(from_revision=from_revision, to_revision=to_revision)

        logger.info(f"Getting changes from {from_revision[:8]} to {to_revision[:8]}")

        def _resolve(repo: "Repo", revision: str):
            try:
                return repo.commit(revision)
            except Exception:
                if not fetch_url:
                    raise SyncError(f"Revision not found: {revision}", project_id=project_id)

            # Shallow working copies may not contain the base revision yet.
            try:
                repo.git.fetch(
                    f"--deepen={DEEPEN_COMMITS}",
                    fetch_url,
                    kill_after_timeout=self.timeout,
                )
                return repo.commit(revision)
            except Exception:
                raise SyncError(f"Revision not found: {revision}", project_id=project_id)

        def _get_diff() -> ChangeSet:
            try:
                repo = Repo(path_str)
            except NoSuchPathError:
                raise SyncError(f"Path does not exist: {path_str}", project_id=project_id)
            except InvalidGitRepositoryError:
                raise SyncError(f"Not a valid Git repository: {path_str}", project_id=project_id)

            base_commit = _resolve(repo, from_revision)
            target_commit = _resolve(repo, to_revision)

            if base_commit.tree.hexsha == target_commit.tree.hexsha:
                return ChangeSet(from_revision=from_revision, to_revision=to_revision)

            added: set[str] = set()
            modified: set[str] = set()
            deleted: set[str] = set()

            for item in base_commit.diff(target_commit):
                change = item.change_type
                if change == "A":
                    added.add(item.b_path)
                elif change == "D":
                    deleted.add(item.a_path)
                elif change == "R":
                    modified.add(item.b_path)
                    if item.a_path != item.b_path:
                        deleted.add(item.a_path)
                else:
                    # M, T (type change) and C (copy) all update the new path.
                    modified.add(item.b_path or item.a_path)

            return ChangeSet(
                from_revision=from_revision,
                to_revision=to_revision,
                added=sorted(added),
                modified=sorted(modified - added),
                deleted=sorted(deleted - added - modified),
            )

        try:
            changes = await asyncio.wait_for(
                asyncio.get_event_loop().run_in_executor(None, _get_diff),
                timeout=self.timeout,
            )
        except TimeoutError:
            raise SyncError(f"Diff timed out after {self.timeout}s", project_id=project_id)
        except SyncError:
            raise
        except Exception as e:
            raise SyncError(redact(f"Failed to get diff: {e}", secrets), project_id=project_id)

        logger.info(
            f"Found {changes.total} changed files",
            added=len(changes.added),
            modified=len(changes.modified),
            deleted=len(changes.deleted),
        )

        return changes
