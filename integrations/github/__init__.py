"""GitHub integration for the knowledge-base builder.

This module provides:
- Push payload models
- Webhook signature verification
- Push handling that triggers scans for tracked branches
"""

from .models import (
    FileStatus,
    GitHubCommit,
    GitHubFile,
    GitHubRepository,
    GitHubUser,
    WebhookEvent,
    WebhookPayload,
)
from .webhooks import (
    PushEventHandler,
    WebhookProcessor,
    WebhookResult,
    parse_push_payload,
    verify_signature,
)

__all__ = [
    # Models
    "GitHubUser",
    "GitHubRepository",
    "GitHubCommit",
    "GitHubFile",
    "FileStatus",
    "WebhookEvent",
    "WebhookPayload",
    # Webhooks
    "PushEventHandler",
    "WebhookProcessor",
    "WebhookResult",
    "parse_push_payload",
    "verify_signature",
]
