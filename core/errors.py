"""Error taxonomy for the knowledge-base pipeline.

Every pipeline failure is expressed as one of the exceptions below so the
orchestrator can decide between retrying a stage and failing the scan. All
exceptions keep the raw ``message`` attribute and build a detailed string
representation with whatever context was supplied.
"""

import re

REDACTED = "[REDACTED]"


class KnowledgeBaseError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        message: Explanation of the error.
        project_id: Project the error relates to, if known.
        retryable: Whether the orchestrator may retry the failing stage.
    """

    retryable: bool = False

    def __init__(self, message: str, project_id: str | None = None) -> None:
        """Initialize the error.

        Args:
            message: Explanation of the error.
            project_id: Project the error relates to.
        """
        self.message = message
        self.project_id = project_id

        full_message = f"{message} (project={project_id})" if project_id else message
        super().__init__(full_message)


class SyncError(KnowledgeBaseError):
    """Repository synchronization failed.

    Raised for authentication failures, network failures, missing branches
    and missing revisions. The message is always redacted before the error
    is constructed.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        project_id: str | None = None,
        repo_path: str | None = None,
    ) -> None:
        self.repo_path = repo_path
        if repo_path:
            message = f"{message} (repo={repo_path})"
        super().__init__(message, project_id=project_id)


class ScanIntegrityError(KnowledgeBaseError):
    """The working copy is in a state the pipeline must not process.

    Raised for unresolvable HEAD revisions and for paths that escape the
    storage root. Never retried.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        project_id: str | None = None,
        path: str | None = None,
    ) -> None:
        self.path = path
        if path:
            message = f"{message} (path={path})"
        super().__init__(message, project_id=project_id)


class ScanFailure(KnowledgeBaseError):
    """A stage failed with an error that has no more specific class.

    Attributes:
        stage: Name of the stage that failed.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        project_id: str | None = None,
        stage: str | None = None,
    ) -> None:
        self.stage = stage
        if stage:
            message = f"[{stage}] {message}"
        super().__init__(message, project_id=project_id)


class ScanTimeoutError(ScanFailure):
    """A stage exceeded the orchestrator-level timeout."""

    retryable = False


class NoValidTokenError(KnowledgeBaseError):
    """No usable repository access token is available for the project."""

    retryable = False


class ScanAlreadyRunningError(KnowledgeBaseError):
    """A scan is already running for the project."""

    retryable = False


class ProjectNotFoundError(KnowledgeBaseError):
    """The requested project does not exist."""

    retryable = False


_URL_CREDENTIALS = re.compile(r"(https?://)[^/@\s]+@")


def redact(text: str, secrets: list[str | None] | None = None) -> str:
    """Strip credential material from a message.

    Replaces every known secret and any user-info part of an HTTP(S) URL
    with ``[REDACTED]``.

    Args:
        text: Message that may contain credentials.
        secrets: Secret values to remove verbatim.

    Returns:
        The redacted message.
    """
    for secret in secrets or []:
        if secret:
            text = text.replace(secret, REDACTED)
    return _URL_CREDENTIALS.sub(rf"\1{REDACTED}@", text)
