"""Pytest configuration and shared fixtures.

This module provides fixtures used across the test modules: throwaway git
repositories acting as remotes, storage roots, and project stores backed by
SQLite.
"""

import subprocess
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from core.store import Database, ProjectStore

# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------

GitRunner = Callable[..., str]


def _git(repo_path: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=repo_path,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


def _write_files(repo_path: Path, files: dict[str, str]) -> None:
    for relative, content in files.items():
        target = repo_path / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


SAMPLE_FILES: dict[str, str] = {
    "README.md": "# Shop\n\nA small sample project.\n",
    "src/app.py": (
        '"""Application entry point."""\n'
        "\n"
        "from src.utils import total\n"
        "\n"
        "\n"
        "class Cart:\n"
        '    """A shopping cart."""\n'
        "\n"
        "    def __init__(self):\n"
        "        self.items = []\n"
        "\n"
        "    def add(self, price):\n"
        "        self.items.append(price)\n"
        "\n"
        "    def sum(self):\n"
        "        return total(self.items)\n"
    ),
    "src/utils.py": (
        '"""Helpers."""\n'
        "\n"
        "\n"
        "def total(values):\n"
        "    return sum(values)\n"
    ),
    "app/Models/User.php": (
        "<?php\n"
        "\n"
        "namespace App\\Models;\n"
        "\n"
        "use Illuminate\\Database\\Eloquent\\Model;\n"
        "\n"
        "class User extends Model\n"
        "{\n"
        "    public function name(): string\n"
        "    {\n"
        "        return $this->name;\n"
        "    }\n"
        "}\n"
    ),
    "vendor/lib.php": "<?php\n\nfunction vendored() {}\n",
    "composer.lock": "{}\n",
}


@pytest.fixture
def run_git() -> GitRunner:
    """Run a git command in a repository and return its stdout."""
    return _git


@pytest.fixture
def write_files() -> Callable[[Path, dict[str, str]], None]:
    """Write a mapping of relative paths to contents into a directory."""
    return _write_files


@pytest.fixture
def commit(run_git: GitRunner) -> Callable[[Path, str], str]:
    """Stage everything in a repository, commit, and return the new revision."""

    def _commit(repo_path: Path, message: str = "update") -> str:
        run_git(repo_path, "add", "-A")
        run_git(repo_path, "commit", "-q", "-m", message)
        return run_git(repo_path, "rev-parse", "HEAD")

    return _commit


@pytest.fixture
def origin_repo(
    tmp_path: Path,
    run_git: GitRunner,
    write_files: Callable[[Path, dict[str, str]], None],
    commit: Callable[[Path, str], str],
) -> Path:
    """Create a git repository on branch ``main`` that serves as the remote."""
    repo_path = tmp_path / "origin"
    repo_path.mkdir()

    run_git(repo_path, "init", "-q", "-b", "main")
    run_git(repo_path, "config", "user.email", "test@example.com")
    run_git(repo_path, "config", "user.name", "Test User")
    run_git(repo_path, "config", "commit.gpgsign", "false")

    write_files(repo_path, SAMPLE_FILES)
    commit(repo_path, "Initial commit")
    return repo_path


@pytest.fixture
def sample_tree(tmp_path: Path, write_files: Callable[[Path, dict[str, str]], None]) -> Path:
    """Plain directory with the sample files, without git metadata."""
    root = tmp_path / "tree"
    root.mkdir()
    write_files(root, SAMPLE_FILES)
    return root


# ---------------------------------------------------------------------------
# Storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    """Empty storage root for project working copies and bundles."""
    root = tmp_path / "storage"
    root.mkdir()
    return root


@pytest.fixture
def store() -> Generator[ProjectStore, None, None]:
    """Project store backed by an in-memory SQLite database."""
    database = Database("sqlite://")
    database.create_all()
    yield ProjectStore(database)
    database.dispose()


@pytest.fixture
def file_store(tmp_path: Path) -> Generator[ProjectStore, None, None]:
    """Project store backed by a SQLite file, for tests that use worker threads."""
    database = Database(f"sqlite:///{tmp_path / 'kb.db'}")
    database.create_all()
    yield ProjectStore(database)
    database.dispose()
