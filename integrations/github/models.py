"""Pydantic models for GitHub webhook payloads.

Only the parts of the payload the scan trigger needs are modelled; every
other field is kept as an extra attribute.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class WebhookEvent(str, Enum):
    """GitHub webhook event types."""

    PING = "ping"
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    CREATE = "create"
    DELETE = "delete"
    INSTALLATION = "installation"
    INSTALLATION_REPOSITORIES = "installation_repositories"


class FileStatus(str, Enum):
    """File change status in a pushed commit."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


class GitHubUser(BaseModel):
    """GitHub user model."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="User ID")
    login: str = Field(..., description="Username")
    avatar_url: str | None = Field(None, description="Avatar URL")


class GitHubRepository(BaseModel):
    """GitHub repository model."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Repository ID")
    name: str = Field(..., description="Repository name")
    full_name: str = Field(..., description="Full name (owner/repo)")
    owner: GitHubUser = Field(..., description="Repository owner")
    private: bool = Field(default=False, description="Is private repository")
    html_url: str | None = Field(None, description="Repository URL")
    clone_url: str | None = Field(None, description="Clone URL")
    default_branch: str = Field(default="main", description="Default branch")


class GitHubFile(BaseModel):
    """A path changed by a pushed commit."""

    model_config = ConfigDict(frozen=True)

    filename: str = Field(..., description="File path")
    status: FileStatus = Field(..., description="Change status")


class GitHubCommit(BaseModel):
    """A pushed commit."""

    model_config = ConfigDict(frozen=True)

    sha: str = Field(..., description="Commit SHA")
    message: str = Field(default="", description="Commit message")
    files: list[GitHubFile] = Field(default_factory=list, description="Changed files")


class WebhookPayload(BaseModel):
    """GitHub webhook payload."""

    model_config = ConfigDict(frozen=False, extra="allow")

    action: str | None = Field(None, description="Webhook action")
    sender: GitHubUser | None = Field(None, description="Event sender")
    repository: GitHubRepository | None = Field(None, description="Repository")
    commits: list[GitHubCommit] | None = Field(None, description="Commits for push events")
    ref: str | None = Field(None, description="Git ref for push events")
    before: str | None = Field(None, description="Before SHA for push events")
    after: str | None = Field(None, description="After SHA for push events")
    deleted: bool = Field(default=False, description="Push deleted the ref")

    @property
    def branch(self) -> str | None:
        """Branch name of a ``refs/heads/...`` ref."""
        prefix = "refs/heads/"
        if self.ref and self.ref.startswith(prefix):
            return self.ref[len(prefix) :]
        return None

    def changed_paths(self) -> set[str]:
        """Paths named by the pushed commits."""
        return {file.filename for commit in self.commits or [] for file in commit.files}
