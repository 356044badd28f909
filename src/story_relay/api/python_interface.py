"""Python-first client for the story_relay HTTP API."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from story_relay.api.contracts import (
    AccessGrantRequest,
    AccessLevelName,
    AccessResponse,
    LockGrantResponse,
    SnippetCreateRequest,
    SnippetResponse,
    StoryCreateRequest,
    StoryResponse,
)


@dataclass(frozen=True)
class AuthSession:
    """Authenticated client session."""

    access_token: str
    api_base_url: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


@dataclass(frozen=True)
class LockDenied:
    """Why a lock request was refused: `conflict` or `cooldown`."""

    reason: str
    owner: str | None = None
    expires: str | None = None


class StoryRelayClient:
    """Tiny typed API client for Python users.

    Lock refusals (HTTP 409 with a `lock` payload) come back as `LockDenied`
    values rather than exceptions, since callers are expected to retry later.
    Every other error status raises `httpx.HTTPStatusError`.
    """

    def __init__(self, api_base_url: str = "http://127.0.0.1:8000") -> None:
        """Initialize client with an API base URL."""
        self._api_base_url = api_base_url.rstrip("/")

    @property
    def api_base_url(self) -> str:
        """Return normalized API base URL."""
        return self._api_base_url

    def register(self, *, email: str, password: str, display_name: str) -> None:
        """Create an account for bearer-token authentication."""
        response = httpx.post(
            f"{self._api_base_url}/api/v1/auth/register",
            json={
                "email": email,
                "password": password,
                "display_name": display_name,
            },
            timeout=30.0,
        )
        response.raise_for_status()

    def login(self, *, email: str, password: str) -> AuthSession:
        """Authenticate and return a reusable auth session."""
        response = httpx.post(
            f"{self._api_base_url}/api/v1/auth/login",
            json={"email": email, "password": password},
            timeout=30.0,
        )
        response.raise_for_status()
        payload = response.json()
        token = str(payload["access_token"])
        return AuthSession(access_token=token, api_base_url=self._api_base_url)

    def begin_story(
        self, *, session: AuthSession, title: str | None = None, opening: str | None = None
    ) -> StoryResponse:
        """Begin a story owned by the session user."""
        request = StoryCreateRequest(title=title, opening=opening)
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories",
            json=request.model_dump(mode="json"),
            headers=session.headers,
            timeout=30.0,
        )
        response.raise_for_status()
        return StoryResponse.model_validate(response.json())

    def acquire_lock(
        self, *, session: AuthSession, story_id: int
    ) -> LockGrantResponse | LockDenied:
        """Request the turn lock on a story."""
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/lock",
            headers=session.headers,
            timeout=30.0,
        )
        if response.status_code == 409:
            detail = response.json().get("detail")
            if isinstance(detail, dict) and isinstance(detail.get("lock"), dict):
                lock = detail["lock"]
                return LockDenied(
                    reason=str(lock.get("reason", "")),
                    owner=lock.get("owner"),
                    expires=lock.get("expires"),
                )
        response.raise_for_status()
        return LockGrantResponse.model_validate(response.json())

    def release_lock(self, *, session: AuthSession, story_id: int) -> None:
        """Give up a lock held by the session user."""
        response = httpx.delete(
            f"{session.api_base_url}/api/v1/stories/{story_id}/lock",
            headers=session.headers,
            timeout=30.0,
        )
        response.raise_for_status()

    def contribute(self, *, session: AuthSession, story_id: int, content: str) -> SnippetResponse:
        """Append a snippet to a story the session user has locked."""
        request = SnippetCreateRequest(content=content)
        response = httpx.post(
            f"{session.api_base_url}/api/v1/stories/{story_id}/snippets",
            json=request.model_dump(mode="json"),
            headers=session.headers,
            timeout=30.0,
        )
        response.raise_for_status()
        return SnippetResponse.model_validate(response.json())

    def grant_access(
        self,
        *,
        session: AuthSession,
        story_id: int,
        user_id: str,
        level: AccessLevelName,
    ) -> AccessResponse:
        """Set another user's access level on a story the session user owns."""
        request = AccessGrantRequest(level=level)
        response = httpx.put(
            f"{session.api_base_url}/api/v1/stories/{story_id}/access/{user_id}",
            json=request.model_dump(mode="json"),
            headers=session.headers,
            timeout=30.0,
        )
        response.raise_for_status()
        return AccessResponse.model_validate(response.json())
