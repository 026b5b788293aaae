"""GitHub webhook handling.

This module verifies webhook signatures, parses push payloads and routes
push events to the scan trigger of every project tracking the pushed
repository and branch.
"""

import asyncio
import hashlib
import hmac
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from core.models import ProjectRecord

from .models import (
    FileStatus,
    GitHubCommit,
    GitHubFile,
    GitHubRepository,
    GitHubUser,
    WebhookEvent,
    WebhookPayload,
)

logger = structlog.get_logger(__name__)

# Called with (project_id, trigger, payload); returns the scan outcome.
TriggerCallback = Callable[[str, str, dict[str, Any]], Awaitable[Any]]
ProjectLookup = Callable[[str], list[ProjectRecord]]


def verify_signature(secret: str | None, body: bytes, signature: str | None) -> bool:
    """Verify a webhook payload signature.

    Args:
        secret: Configured webhook secret.
        body: Raw request body.
        signature: X-Hub-Signature-256 header value.

    Returns:
        True if the signature matches. False when no secret is configured.
    """
    if not secret or not signature:
        return False

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature)


def parse_push_payload(raw_payload: dict[str, Any]) -> WebhookPayload:
    """Parse a raw push payload into models.

    Args:
        raw_payload: Decoded JSON payload.

    Returns:
        WebhookPayload.

    Raises:
        KeyError: If a required repository field is missing.
    """
    sender = None
    if raw_payload.get("sender"):
        sender_data = raw_payload["sender"]
        sender = GitHubUser(
            id=sender_data["id"],
            login=sender_data["login"],
            avatar_url=sender_data.get("avatar_url"),
        )

    repository = None
    if raw_payload.get("repository"):
        repo_data = raw_payload["repository"]
        owner_data = repo_data.get("owner", {})
        owner = GitHubUser(
            id=owner_data.get("id", 0),
            login=owner_data.get("login") or owner_data.get("name") or "unknown",
        )
        repository = GitHubRepository(
            id=repo_data["id"],
            name=repo_data["name"],
            full_name=repo_data["full_name"],
            owner=owner,
            private=repo_data.get("private", False),
            html_url=repo_data.get("html_url"),
            clone_url=repo_data.get("clone_url"),
            default_branch=repo_data.get("default_branch") or repo_data.get("master_branch") or "main",
        )

    commits = None
    if raw_payload.get("commits") is not None:
        commits = []
        for commit_data in raw_payload["commits"]:
            files = []
            for added in commit_data.get("added", []):
                files.append(GitHubFile(filename=added, status=FileStatus.ADDED))
            for modified in commit_data.get("modified", []):
                files.append(GitHubFile(filename=modified, status=FileStatus.MODIFIED))
            for removed in commit_data.get("removed", []):
                files.append(GitHubFile(filename=removed, status=FileStatus.REMOVED))

            commits.append(
                GitHubCommit(
                    sha=commit_data["id"],
                    message=commit_data.get("message", ""),
                    files=files,
                )
            )

    return WebhookPayload(
        action=raw_payload.get("action"),
        sender=sender,
        repository=repository,
        commits=commits,
        ref=raw_payload.get("ref"),
        before=raw_payload.get("before"),
        after=raw_payload.get("after"),
        deleted=bool(raw_payload.get("deleted", False)),
    )


class WebhookResult(BaseModel):
    """Result of processing a webhook."""

    model_config = ConfigDict(frozen=True)

    success: bool = Field(..., description="Whether processing succeeded")
    event_type: str = Field(..., description="Event type processed")
    message: str = Field(default="", description="Result message")
    data: dict[str, Any] = Field(default_factory=dict, description="Result data")


class PushEventHandler:
    """Triggers scans for projects tracking a pushed branch.

    Args:
        trigger_callback: Async callback starting a scan, typically
            ``PipelineOrchestrator.run_scan``.
        project_lookup: Returns the projects tracking a repository full name.
    """

    def __init__(self, trigger_callback: TriggerCallback, project_lookup: ProjectLookup) -> None:
        self._trigger_callback = trigger_callback
        self._project_lookup = project_lookup
        self._logger = logger.bind(handler="push")

    async def handle(self, payload: WebhookPayload) -> WebhookResult:
        """Handle a push event.

        Pushes that delete a branch, pushes to tags and pushes to branches
        no project tracks are ignored.

        Args:
            payload: Parsed push payload.

        Returns:
            WebhookResult listing the triggered projects.
        """
        repo = payload.repository
        if not repo:
            return WebhookResult(
                success=False,
                event_type=WebhookEvent.PUSH.value,
                message="No repository in payload",
            )

        branch = payload.branch
        self._logger.info(
            "push_received",
            repo=repo.full_name,
            ref=payload.ref,
            commits=len(payload.commits or []),
        )

        if branch is None or payload.deleted:
            return WebhookResult(
                success=True,
                event_type=WebhookEvent.PUSH.value,
                message=f"Ignored push to {payload.ref}",
            )

        tracking = await asyncio.get_event_loop().run_in_executor(
            None, self._project_lookup, repo.full_name
        )
        projects = [p for p in tracking if p.branch == branch]
        if not projects:
            self._logger.debug("push_untracked", repo=repo.full_name, branch=branch)
            return WebhookResult(
                success=True,
                event_type=WebhookEvent.PUSH.value,
                message=f"No project tracks {repo.full_name}@{branch}",
            )

        trigger_payload = {
            "ref": payload.ref,
            "before": payload.before,
            "after": payload.after,
            "changed_paths": sorted(payload.changed_paths()),
        }
        triggered: list[str] = []
        failed: list[str] = []
        for project in projects:
            try:
                await self._trigger_callback(project.id, "webhook", trigger_payload)
            except Exception as e:
                self._logger.error(
                    "webhook_trigger_failed",
                    project_id=project.id,
                    repo=repo.full_name,
                    error=str(e),
                )
                failed.append(project.id)
                continue
            triggered.append(project.id)

        message = f"Triggered {len(triggered)} project(s) for {repo.full_name}@{branch}"
        if failed:
            message += f", {len(failed)} failed"
        return WebhookResult(
            success=not failed,
            event_type=WebhookEvent.PUSH.value,
            message=message,
            data={
                "repo": repo.full_name,
                "branch": branch,
                "projects": triggered,
                "failed": failed,
            },
        )


class WebhookProcessor:
    """Routes webhook deliveries to the push handler.

    Events other than ``push`` are acknowledged and ignored.
    """

    def __init__(self, push_handler: PushEventHandler) -> None:
        self._push_handler = push_handler
        self._logger = logger.bind(component="webhook_processor")

    async def process(self, event_type: str, raw_payload: dict[str, Any]) -> WebhookResult:
        """Process a webhook delivery.

        Args:
            event_type: X-GitHub-Event header value.
            raw_payload: Decoded JSON payload.

        Returns:
            WebhookResult from the handler; a malformed payload or a handler
            error yields an unsuccessful result.
        """
        self._logger.info("processing_webhook", event_type=event_type)

        if event_type != WebhookEvent.PUSH.value:
            return WebhookResult(
                success=True,
                event_type=event_type,
                message="Event ignored",
            )

        try:
            payload = parse_push_payload(raw_payload)
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            self._logger.warning("webhook_payload_invalid", event_type=event_type, error=repr(e))
            return WebhookResult(
                success=False,
                event_type=event_type,
                message=f"Invalid payload: {e!r}",
            )

        try:
            return await self._push_handler.handle(payload)
        except Exception as e:
            self._logger.error("handler_error", event_type=event_type, error=str(e))
            return WebhookResult(
                success=False,
                event_type=event_type,
                message=f"Handler error: {e}",
            )
