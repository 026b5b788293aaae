"""Tests for GitHub integration module."""

import hashlib
import hmac
from unittest.mock import AsyncMock

import pytest

from integrations.github.models import (
    FileStatus,
    GitHubRepository,
    GitHubUser,
    WebhookEvent,
    WebhookPayload,
)
from integrations.github.webhooks import (
    PushEventHandler,
    WebhookProcessor,
    WebhookResult,
    parse_push_payload,
    verify_signature,
)


def push_payload(ref: str = "refs/heads/main", **overrides) -> dict:
    payload = {
        "ref": ref,
        "before": "a" * 40,
        "after": "b" * 40,
        "repository": {
            "id": 1,
            "name": "shop",
            "full_name": "acme/shop",
            "owner": {"id": 2, "login": "acme"},
            "default_branch": "main",
            "clone_url": "https://github.com/acme/shop.git",
        },
        "sender": {"id": 3, "login": "dev"},
        "commits": [
            {
                "id": "b" * 40,
                "message": "Update cart",
                "added": ["src/new.py"],
                "modified": ["src/app.py"],
                "removed": ["README.md"],
            },
            {
                "id": "c" * 40,
                "message": "Touch cart again",
                "added": [],
                "modified": ["src/app.py"],
                "removed": [],
            },
        ],
    }
    payload.update(overrides)
    return payload


# =============================================================================
# Signature Tests
# =============================================================================


class TestVerifySignature:
    """Tests for webhook signature verification."""

    def _sign(self, secret: str, body: bytes) -> str:
        return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        """Test that a correctly signed body verifies."""
        body = b'{"ref": "refs/heads/main"}'
        assert verify_signature("s3cret", body, self._sign("s3cret", body))

    def test_invalid_signature(self):
        """Test that a wrong signature fails."""
        body = b'{"ref": "refs/heads/main"}'
        assert not verify_signature("s3cret", body, self._sign("other", body))
        assert not verify_signature("s3cret", body, "sha256=deadbeef")

    def test_tampered_body(self):
        """Test that a modified body fails."""
        signature = self._sign("s3cret", b"original")
        assert not verify_signature("s3cret", b"tampered", signature)

    def test_missing_secret_or_header(self):
        """Test that verification fails closed."""
        assert not verify_signature(None, b"{}", self._sign("s3cret", b"{}"))
        assert not verify_signature("s3cret", b"{}", None)


# =============================================================================
# Payload Tests
# =============================================================================


class TestParsePushPayload:
    """Tests for push payload parsing."""

    def test_parse(self):
        """Test parsing repository, commits and refs."""
        payload = parse_push_payload(push_payload())

        assert payload.repository.full_name == "acme/shop"
        assert payload.sender.login == "dev"
        assert payload.branch == "main"
        assert len(payload.commits) == 2
        statuses = {f.filename: f.status for f in payload.commits[0].files}
        assert statuses == {
            "src/new.py": FileStatus.ADDED,
            "src/app.py": FileStatus.MODIFIED,
            "README.md": FileStatus.REMOVED,
        }
        assert payload.changed_paths() == {"src/new.py", "src/app.py", "README.md"}

    def test_tag_ref_has_no_branch(self):
        """Test that tag pushes have no branch."""
        payload = parse_push_payload(push_payload(ref="refs/tags/v1.0"))
        assert payload.branch is None

    def test_deleted_flag(self):
        """Test that branch deletions are flagged."""
        payload = parse_push_payload(push_payload(deleted=True, commits=[]))
        assert payload.deleted
        assert payload.changed_paths() == set()


# =============================================================================
# Handler Tests
# =============================================================================


class TestPushEventHandler:
    """Tests for PushEventHandler."""

    @pytest.fixture
    def tracked(self, store):
        main = store.create_project("shop", "https://github.com/acme/shop.git", "acme/shop")
        develop = store.create_project(
            "shop-dev", "https://github.com/acme/shop.git", "acme/shop", selected_branch="develop"
        )
        return main, develop

    @pytest.mark.asyncio
    async def test_triggers_projects_on_branch(self, store, tracked):
        """Test that only projects tracking the pushed branch are triggered."""
        main, _ = tracked
        trigger = AsyncMock()
        handler = PushEventHandler(trigger, store.find_projects_by_repo)

        result = await handler.handle(parse_push_payload(push_payload()))

        assert result.success
        assert result.data == {
            "repo": "acme/shop",
            "branch": "main",
            "projects": [main.id],
            "failed": [],
        }
        trigger.assert_awaited_once()
        project_id, trigger_name, payload = trigger.await_args.args
        assert (project_id, trigger_name) == (main.id, "webhook")
        assert payload["after"] == "b" * 40
        assert payload["changed_paths"] == ["README.md", "src/app.py", "src/new.py"]

    @pytest.mark.asyncio
    async def test_untracked_branch(self, store, tracked):
        """Test that pushes to untracked branches trigger nothing."""
        trigger = AsyncMock()
        handler = PushEventHandler(trigger, store.find_projects_by_repo)

        result = await handler.handle(parse_push_payload(push_payload(ref="refs/heads/feature")))

        assert result.success
        assert "No project tracks" in result.message
        trigger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deleted_branch_ignored(self, store, tracked):
        """Test that branch deletions do not trigger scans."""
        trigger = AsyncMock()
        handler = PushEventHandler(trigger, store.find_projects_by_repo)

        result = await handler.handle(parse_push_payload(push_payload(deleted=True)))

        assert result.success
        assert result.message.startswith("Ignored push")
        trigger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_repository(self):
        """Test that payloads without a repository fail."""
        handler = PushEventHandler(AsyncMock(), lambda name: [])

        result = await handler.handle(WebhookPayload(ref="refs/heads/main"))

        assert not result.success
        assert result.event_type == WebhookEvent.PUSH.value

    @pytest.mark.asyncio
    async def test_repository_lookup_uses_full_name(self):
        """Test that the lookup receives the pushed repository's full name."""
        lookup_calls: list[str] = []

        def lookup(name: str):
            lookup_calls.append(name)
            return []

        handler = PushEventHandler(AsyncMock(), lookup)
        payload = WebhookPayload(
            ref="refs/heads/main",
            repository=GitHubRepository(
                id=1, name="shop", full_name="acme/shop", owner=GitHubUser(id=2, login="acme")
            ),
        )

        await handler.handle(payload)

        assert lookup_calls == ["acme/shop"]

    @pytest.mark.asyncio
    async def test_failing_trigger_does_not_block_others(self, store):
        """Test that one project's trigger error leaves the other projects triggered."""
        first = store.create_project("shop", "https://github.com/acme/shop.git", "acme/shop")
        second = store.create_project("shop-mirror", "/srv/git/shop", "acme/shop")

        async def trigger_scan(project_id: str, trigger: str, payload: dict) -> None:
            if project_id == first.id:
                raise RuntimeError("boom")

        trigger = AsyncMock(side_effect=trigger_scan)
        handler = PushEventHandler(trigger, store.find_projects_by_repo)

        result = await handler.handle(parse_push_payload(push_payload()))

        assert trigger.await_count == 2
        assert not result.success
        assert result.data["projects"] == [second.id]
        assert result.data["failed"] == [first.id]
        assert "1 failed" in result.message


# =============================================================================
# Processor Tests
# =============================================================================


class TestWebhookProcessor:
    """Tests for WebhookProcessor."""

    @pytest.mark.asyncio
    async def test_routes_push(self):
        """Test that push events reach the push handler."""
        handler = AsyncMock(spec=PushEventHandler)
        handler.handle.return_value = WebhookResult(success=True, event_type="push")
        processor = WebhookProcessor(handler)

        result = await processor.process("push", push_payload())

        assert result.success
        handler.handle.assert_awaited_once()
        assert handler.handle.await_args.args[0].repository.full_name == "acme/shop"

    @pytest.mark.asyncio
    async def test_ignores_other_events(self):
        """Test that non-push events are acknowledged and ignored."""
        handler = AsyncMock(spec=PushEventHandler)
        processor = WebhookProcessor(handler)

        result = await processor.process("pull_request", {"action": "opened"})

        assert result.success
        assert result.message == "Event ignored"
        handler.handle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_payload_is_rejected(self):
        """Test that a push payload missing required fields yields a failed result."""
        handler = AsyncMock(spec=PushEventHandler)
        processor = WebhookProcessor(handler)

        result = await processor.process("push", push_payload(commits=[{"message": "no id"}]))

        assert not result.success
        assert result.event_type == "push"
        assert result.message.startswith("Invalid payload")
        handler.handle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_handler_error_becomes_result(self):
        """Test that a handler exception is reported instead of raised."""
        handler = AsyncMock(spec=PushEventHandler)
        handler.handle.side_effect = RuntimeError("store offline")
        processor = WebhookProcessor(handler)

        result = await processor.process("push", push_payload())

        assert not result.success
        assert result.message == "Handler error: store offline"
