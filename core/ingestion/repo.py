"""Git working-copy synchronization.

This module materializes a project's working copy under the storage root:
shallow single-branch clone on first sync, then fetch plus hard reset on
later syncs. Uses GitPython for Git operations. Access tokens are passed by
value into each call, embedded only into the URL of that call, and scrubbed
from every error message.
"""

import asyncio
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar
from urllib.parse import urlsplit, urlunsplit

import structlog

from core.errors import ScanIntegrityError, SyncError, redact
from core.models import ProjectPaths, ProjectRecord

from .diff import DiffAnalyzer
from .models import ChangeSet

if TYPE_CHECKING:
    from git import Repo

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def authenticated_url(remote_url: str, token: str | None) -> str:
    """Embed an access token into an HTTPS remote URL.

    Local paths, SSH remotes and calls without a token are returned as is.

    Args:
        remote_url: Credential-free remote URL.
        token: Access token, or None.

    Returns:
        URL to use for a single git invocation.
    """
    if not token:
        return remote_url

    parts = urlsplit(remote_url)
    if parts.scheme not in ("http", "https"):
        return remote_url

    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))


class RepositorySync:
    """Keeps project working copies in sync with their remotes.

    All blocking Git operations are executed in the default thread pool and
    bounded by per-operation timeouts.

    Attributes:
        storage_root: Directory that holds every project's storage.
        clone_timeout: Timeout in seconds for clone operations.
        fetch_timeout: Timeout in seconds for fetch operations.
        reset_timeout: Timeout in seconds for reset and clean operations.
    """

    def __init__(
        self,
        storage_root: str | Path,
        clone_timeout: int = 300,
        fetch_timeout: int = 120,
        reset_timeout: int = 60,
        diff_analyzer: DiffAnalyzer | None = None,
    ) -> None:
        """Initialize the RepositorySync.

        Args:
            storage_root: Directory that holds every project's storage.
            clone_timeout: Timeout in seconds for clone operations.
            fetch_timeout: Timeout in seconds for fetch operations.
            reset_timeout: Timeout in seconds for reset and clean operations.
            diff_analyzer: Diff analyzer instance. Creates one if not provided.
        """
        self.storage_root = Path(storage_root)
        self.clone_timeout = clone_timeout
        self.fetch_timeout = fetch_timeout
        self.reset_timeout = reset_timeout
        self.diff_analyzer = diff_analyzer or DiffAnalyzer(timeout=fetch_timeout)
        logger.debug("RepositorySync initialized", storage_root=str(self.storage_root))

    def paths_for(self, project: ProjectRecord) -> ProjectPaths:
        """Return the on-disk layout for a project."""
        return ProjectPaths.for_project(self.storage_root, project.id)

    def validate_repo_path(self, path: str | Path, project_id: str | None = None) -> Path:
        """Ensure a path resolves inside the storage root.

        Symlinks are resolved before the check, so a link planted in the
        storage tree cannot redirect writes elsewhere.

        Args:
            path: Path to check.
            project_id: Project the path belongs to, for error context.

        Returns:
            The resolved path.

        Raises:
            ScanIntegrityError: If the path escapes the storage root.
        """
        root = self.storage_root.resolve()
        resolved = Path(path).resolve()

        if resolved != root and not resolved.is_relative_to(root):
            logger.error("path_escapes_storage_root", path=str(resolved), root=str(root))
            raise ScanIntegrityError(
                "Resolved path escapes the storage root",
                project_id=project_id,
                path=str(resolved),
            )
        return resolved

    async def _run(
        self,
        fn: Callable[[], T],
        timeout: float,
        operation: str,
        project: ProjectRecord,
        token: str | None = None,
    ) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.get_event_loop().run_in_executor(None, fn),
                timeout=timeout,
            )
        except TimeoutError:
            raise SyncError(
                f"{operation} timed out after {timeout}s",
                project_id=project.id,
            )
        except (SyncError, ScanIntegrityError):
            raise
        except Exception as e:
            message = redact(f"{operation} failed: {e}", [token])
            logger.warning("git_operation_failed", operation=operation, error=message)
            raise SyncError(message, project_id=project.id)

    async def ensure_workspace(self, project: ProjectRecord) -> ProjectPaths:
        """Create the directory layout for a project.

        Idempotent and safe to call concurrently.

        Args:
            project: Project to prepare.

        Returns:
            The project's paths.
        """
        paths = self.paths_for(project)
        self.validate_repo_path(paths.root, project.id)

        def _do_create() -> None:
            for directory in (paths.root, paths.knowledge, paths.kb):
                directory.mkdir(parents=True, exist_ok=True)

        await asyncio.get_event_loop().run_in_executor(None, _do_create)
        logger.debug("workspace_ready", project_id=project.id, root=str(paths.root))
        return paths

    def has_working_copy(self, project: ProjectRecord) -> bool:
        return (self.paths_for(project).repo / ".git").exists()

    async def sync_to_latest(self, project: ProjectRecord, token: str | None = None) -> str:
        """Bring the working copy to the tip of the tracked branch.

        Performs a shallow single-branch clone if no working copy exists.
        Otherwise refreshes the remote URL, fetches the branch, hard-resets
        to the fetched tip and removes untracked files.

        Args:
            project: Project to synchronize.
            token: Access token for this call only.

        Returns:
            The full 40-character revision of the working copy.

        Raises:
            SyncError: On authentication, network or missing-branch failures.
            ScanIntegrityError: If the working copy path escapes the storage root.
        """
        paths = self.paths_for(project)
        repo_path = self.validate_repo_path(paths.repo, project.id)
        branch = project.branch
        auth_url = authenticated_url(project.remote_url, token)

        if not self.has_working_copy(project):
            sha = await self._clone(project, repo_path, branch, auth_url, token)
        else:
            sha = await self._update(project, repo_path, branch, auth_url, token)

        logger.info("repository_synced", project_id=project.id, branch=branch, sha=sha[:8])
        return sha

    async def _clone(
        self,
        project: ProjectRecord,
        repo_path: Path,
        branch: str,
        auth_url: str,
        token: str | None,
    ) -> str:
        from git import Git, Repo

        logger.info("cloning_repository", project_id=project.id, branch=branch)

        def _do_clone() -> str:
            if repo_path.exists():
                shutil.rmtree(repo_path)
            # Repo.clone_from runs git as a detached process and ignores
            # kill_after_timeout, so the clone command is invoked directly.
            Git.check_unsafe_protocols(auth_url)
            Git().clone(
                "--",
                auth_url,
                str(repo_path),
                depth=1,
                branch=branch,
                single_branch=True,
                kill_after_timeout=self.clone_timeout,
            )
            repo = Repo(str(repo_path))
            # Only the credential-free URL is stored in the repository config.
            repo.remotes.origin.set_url(project.remote_url)
            return repo.head.commit.hexsha

        return await self._run(_do_clone, self.clone_timeout, "Clone", project, token)

    async def _update(
        self,
        project: ProjectRecord,
        repo_path: Path,
        branch: str,
        auth_url: str,
        token: str | None,
    ) -> str:
        from git import Repo

        repo: Repo = await self._run(lambda: Repo(str(repo_path)), 30, "Open", project, token)

        def _do_fetch() -> None:
            repo.remotes.origin.set_url(project.remote_url)
            repo.git.fetch(
                auth_url,
                f"+refs/heads/{branch}:refs/remotes/origin/{branch}",
                kill_after_timeout=self.fetch_timeout,
            )

        def _do_reset() -> str:
            repo.git.reset("--hard", f"origin/{branch}", kill_after_timeout=self.reset_timeout)
            repo.git.clean("-fd", kill_after_timeout=self.reset_timeout)
            return repo.head.commit.hexsha

        await self._run(_do_fetch, self.fetch_timeout, "Fetch", project, token)
        return await self._run(_do_reset, self.reset_timeout, "Reset", project, token)

    async def head_revision(self, project: ProjectRecord) -> str:
        """Return the revision currently checked out in the working copy."""
        from git import Repo

        repo_path = self.validate_repo_path(self.paths_for(project).repo, project.id)
        return await self._run(
            lambda: Repo(str(repo_path)).head.commit.hexsha, 10, "Read HEAD", project
        )

    async def diff(
        self,
        project: ProjectRecord,
        from_revision: str,
        to_revision: str,
        token: str | None = None,
    ) -> ChangeSet:
        """Compute path-level changes between two revisions.

        Args:
            project: Project whose working copy is compared.
            from_revision: Base revision.
            to_revision: Target revision.
            token: Access token used if the shallow history must be deepened.

        Returns:
            ChangeSet with added, modified and deleted paths.

        Raises:
            SyncError: If a revision is unavailable.
        """
        repo_path = self.validate_repo_path(self.paths_for(project).repo, project.id)
        return await self.diff_analyzer.changes_between(
            repo_path,
            from_revision,
            to_revision,
            fetch_url=authenticated_url(project.remote_url, token),
            project_id=project.id,
            secrets=[token],
        )

    async def remove_workspace(self, project: ProjectRecord) -> None:
        """Delete all storage of a project."""
        paths = self.paths_for(project)
        root = self.validate_repo_path(paths.root, project.id)

        def _do_remove() -> None:
            if root.exists():
                shutil.rmtree(root)

        await asyncio.get_event_loop().run_in_executor(None, _do_remove)
        logger.info("workspace_removed", project_id=project.id)

