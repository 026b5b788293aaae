"""Repository access credentials.

Tokens are requested per sync attempt and handed to RepositorySync by value;
nothing in the pipeline keeps them afterwards.
"""

from typing import Protocol, runtime_checkable

from core.errors import NoValidTokenError
from core.models import ProjectRecord


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of repository access tokens."""

    async def get_access_token(self, project: ProjectRecord) -> str | None:
        """Return a token for the project, or None for anonymous access.

        Raises:
            NoValidTokenError: If a token is required but absent or expired.
        """
        ...


class StaticTokenProvider:
    """Hands out one configured token for every project.

    Args:
        token: Token to hand out. None means anonymous access.
        required: Raise NoValidTokenError instead of returning None.
    """

    def __init__(self, token: str | None = None, required: bool = False) -> None:
        self._token = token or None
        self.required = required

    async def get_access_token(self, project: ProjectRecord) -> str | None:
        if self._token is None and self.required:
            raise NoValidTokenError("No access token configured", project_id=project.id)
        return self._token

    def __repr__(self) -> str:
        return f"StaticTokenProvider(token={'set' if self._token else None}, required={self.required})"
