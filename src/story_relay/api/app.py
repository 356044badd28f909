"""FastAPI application for turn-based collaborative story writing."""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import secrets
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Literal, NoReturn

from fastapi import Depends, FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from story_relay.adapters.sqlite_story_store import SQLiteStoryStore, StoredUser
from story_relay.api.contracts import (
    AccessGrantRequest,
    AccessResponse,
    AuthLoginRequest,
    AuthRegisterRequest,
    AuthTokenResponse,
    LockGrantResponse,
    LockResponse,
    SnippetCreateRequest,
    SnippetResponse,
    StoryCreateRequest,
    StoryDetailResponse,
    StoryResponse,
    StoryUpdateRequest,
    UserResponse,
)
from story_relay.application.turns import StoryTurnService
from story_relay.core.locking import Clock
from story_relay.domain.errors import (
    AlreadyLocked,
    Cooldown,
    LockError,
    NotFound,
    ReleaseFailed,
    StorageFailure,
    Unlocked,
)
from story_relay.domain.models import AccessLevel, Snippet, Story, UserRef, lock_state

DEFAULT_DB_PATH = Path("work/local/story_relay.db")
PBKDF2_ITERATIONS = 310_000

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Simple health payload used by probes."""

    status: Literal["ok"] = "ok"
    service: str = "story_relay"


class ApiRootResponse(BaseModel):
    """Describes currently available API capabilities and runtime mode."""

    name: str = "story_relay"
    persistence: Literal["sqlite"] = "sqlite"
    auth: Literal["bearer-token"] = "bearer-token"
    endpoints: list[str] = Field(
        default_factory=lambda: [
            "/healthz",
            "/api/v1",
            "/api/v1/auth/register",
            "/api/v1/auth/login",
            "/api/v1/me",
            "/api/v1/stories",
            "/api/v1/stories/{story_id}",
            "/api/v1/stories/{story_id}/lock",
            "/api/v1/stories/{story_id}/snippets",
            "/api/v1/stories/{story_id}/access",
            "/api/v1/stories/{story_id}/access/{user_id}",
        ]
    )


def _resolve_db_path(db_path: Path | None) -> Path:
    """Resolve DB path from explicit arg, env var, then default path."""
    if db_path is not None:
        return db_path
    env_value = os.environ.get("STORY_RELAY_DB_PATH", "").strip()
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def _cors_origins() -> list[str]:
    raw = os.environ.get("STORY_RELAY_CORS_ORIGINS", "").strip()
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


def _int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, min(maximum, value))


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return None if value is None else value.astimezone(UTC).isoformat()


def _hash_password(password: str) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algorithm, iterations, salt_hex, digest_hex = password_hash.split("$", maxsplit=3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    recomputed = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        bytes.fromhex(salt_hex),
        int(iterations),
    )
    return hmac.compare_digest(recomputed.hex(), digest_hex)


def _user_ref(user: StoredUser) -> UserRef:
    return UserRef(user_id=user.user_id, display_name=user.display_name)


def _user_response(user: StoredUser) -> UserResponse:
    return UserResponse(
        user_id=user.user_id,
        email=user.email,
        display_name=user.display_name,
        created_at_utc=user.created_at_utc,
    )


def _story_response(story: Story, *, viewer_id: str, now: datetime) -> StoryResponse:
    return StoryResponse(
        story_id=story.story_id,
        title=story.title,
        published=story.published,
        world_readable=story.world_readable,
        lock_duration_s=int(story.lock_duration.total_seconds()),
        revision_count=story.revision_count,
        created_at_utc=_iso(story.created_at) or "",
        updated_at_utc=_iso(story.updated_at) or "",
        published_at_utc=_iso(story.published_at),
        lock=LockResponse(
            state=lock_state(story, viewer_id, now).value,
            holder_id=story.lock_holder,
            expires_at_utc=_iso(story.lock_expiration),
        ),
    )


def _snippet_response(snippet: Snippet | None) -> SnippetResponse | None:
    if snippet is None:
        return None
    return SnippetResponse(
        snippet_id=snippet.snippet_id,
        story_id=snippet.story_id,
        user_id=snippet.user_id,
        ordinal=snippet.ordinal,
        content=snippet.content,
        created_at_utc=_iso(snippet.created_at) or "",
    )


def _access_response(story_id: int, user_id: str, level: AccessLevel) -> AccessResponse:
    return AccessResponse(
        story_id=story_id,
        user_id=user_id,
        level=level.name.lower(),
        can_read=level.grants_read,
        can_write=level.grants_write,
        can_admin=level.grants_admin,
    )


def _raise_for_lock_error(exc: LockError) -> NoReturn:
    """Translate a core error into the matching HTTP failure."""
    if isinstance(exc, NotFound):
        raise HTTPException(status_code=404, detail="Story not found") from exc
    if isinstance(exc, Unlocked):
        raise HTTPException(status_code=403, detail="Story is not locked by you") from exc
    if isinstance(exc, AlreadyLocked):
        raise HTTPException(
            status_code=409,
            detail={
                "lock": {
                    "state": "denied",
                    "reason": "conflict",
                    "owner": exc.holder_name,
                    "expires": _iso(exc.expiration),
                }
            },
        ) from exc
    if isinstance(exc, Cooldown):
        raise HTTPException(
            status_code=409,
            detail={"lock": {"state": "denied", "reason": "cooldown"}},
        ) from exc
    if isinstance(exc, ReleaseFailed):
        raise HTTPException(status_code=409, detail="Unable to revoke lock") from exc
    if isinstance(exc, StorageFailure):
        logger.exception("store.failure error=%s", exc)
    else:
        logger.exception("lock.unexpected_error error=%s", exc)
    raise HTTPException(status_code=500, detail="Story store unavailable") from exc


def create_app(db_path: Path | None = None, *, clock: Clock | None = None) -> FastAPI:
    """Create the API application."""
    effective_db_path = _resolve_db_path(db_path)
    busy_timeout_seconds = _int_env(
        "STORY_RELAY_DB_BUSY_TIMEOUT_SECONDS", 30, minimum=1, maximum=600
    )
    lock_seconds = _int_env("STORY_RELAY_LOCK_SECONDS", 21_600, minimum=60, maximum=604_800)
    token_ttl_hours = _int_env("STORY_RELAY_TOKEN_TTL_HOURS", 24, minimum=1, maximum=24 * 90)
    now_fn: Clock = clock or _utc_now

    store = SQLiteStoryStore(
        db_path=effective_db_path, busy_timeout_seconds=float(busy_timeout_seconds)
    )
    turns = StoryTurnService(
        store, clock=now_fn, lock_duration=timedelta(seconds=lock_seconds)
    )
    bearer = HTTPBearer(auto_error=False)

    app = FastAPI(
        title="story_relay API",
        version="0.1.0",
        description=(
            "Turn-based collaborative writing: lock a story, add the next snippet, "
            "hand the turn to someone else."
        ),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "system", "description": "Service health and runtime metadata."},
            {"name": "api", "description": "API discovery and root-level capability listing."},
            {"name": "auth", "description": "Registration, login, and profile lookups."},
            {"name": "stories", "description": "Story creation, settings and reads."},
            {"name": "locks", "description": "Turn locks: acquire, renew and release."},
            {"name": "snippets", "description": "Contributions made under a held lock."},
            {"name": "access", "description": "Per-story access levels and grants."},
        ],
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    logger.info(
        "api.start db_path=%s lock_seconds=%s busy_timeout_seconds=%s",
        effective_db_path,
        lock_seconds,
        busy_timeout_seconds,
    )

    def current_user(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    ) -> StoredUser:
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing bearer token",
            )
        user = store.get_user_by_token(
            token_value=credentials.credentials, now_utc=_utc_now().isoformat()
        )
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
            )
        return user

    @app.get("/healthz", response_model=HealthResponse, tags=["system"])
    def healthz() -> HealthResponse:
        return HealthResponse()

    @app.get("/api/v1", response_model=ApiRootResponse, tags=["api"])
    def api_v1_root() -> ApiRootResponse:
        return ApiRootResponse()

    @app.post("/api/v1/auth/register", response_model=UserResponse, tags=["auth"], status_code=201)
    def register(payload: AuthRegisterRequest) -> UserResponse:
        created = store.create_user(
            email=payload.email,
            display_name=payload.display_name.strip(),
            password_hash=_hash_password(payload.password.get_secret_value()),
        )
        if created is None:
            raise HTTPException(status_code=409, detail="Email already registered")
        return _user_response(created)

    @app.post("/api/v1/auth/login", response_model=AuthTokenResponse, tags=["auth"])
    def login(payload: AuthLoginRequest) -> AuthTokenResponse:
        user = store.get_user_by_email(email=payload.email)
        if user is None or not _verify_password(
            payload.password.get_secret_value(), user.password_hash
        ):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        expires_at = _utc_now() + timedelta(hours=token_ttl_hours)
        token = store.create_token(
            user_id=user.user_id,
            token_value=secrets.token_urlsafe(32),
            expires_at_utc=expires_at.isoformat(),
        )
        return AuthTokenResponse(
            access_token=token.token_value, expires_at_utc=token.expires_at_utc
        )

    @app.get("/api/v1/me", response_model=UserResponse, tags=["auth"])
    def me(user: StoredUser = Depends(current_user)) -> UserResponse:
        return _user_response(user)

    @app.get("/api/v1/stories", response_model=list[StoryResponse], tags=["stories"])
    def list_stories(
        limit: int = Query(default=100, ge=1, le=500),
        user: StoredUser = Depends(current_user),
    ) -> list[StoryResponse]:
        now = now_fn()
        return [
            _story_response(story, viewer_id=user.user_id, now=now)
            for story in store.list_stories(user_id=user.user_id, limit=limit)
        ]

    @app.post("/api/v1/stories", response_model=StoryResponse, tags=["stories"], status_code=201)
    def create_story(
        payload: StoryCreateRequest,
        user: StoredUser = Depends(current_user),
    ) -> StoryResponse:
        try:
            story = turns.begin_story(_user_ref(user), title=payload.title, opening=payload.opening)
        except LockError as exc:
            _raise_for_lock_error(exc)
        return _story_response(story, viewer_id=user.user_id, now=now_fn())

    @app.get("/api/v1/stories/{story_id}", response_model=StoryDetailResponse, tags=["stories"])
    def get_story(story_id: int, user: StoredUser = Depends(current_user)) -> StoryDetailResponse:
        try:
            view = turns.story_view(story_id, _user_ref(user))
        except LockError as exc:
            _raise_for_lock_error(exc)
        return StoryDetailResponse(
            story=_story_response(view.story, viewer_id=user.user_id, now=now_fn()),
            latest_snippet=_snippet_response(view.prior_snippet),
        )

    @app.put("/api/v1/stories/{story_id}", response_model=StoryResponse, tags=["stories"])
    def update_story(
        story_id: int,
        payload: StoryUpdateRequest,
        user: StoredUser = Depends(current_user),
    ) -> StoryResponse:
        try:
            story = turns.update_story(
                story_id,
                _user_ref(user),
                title=payload.title,
                published=payload.published,
                world_readable=payload.world_readable,
                lock_duration=(
                    None
                    if payload.lock_duration_s is None
                    else timedelta(seconds=payload.lock_duration_s)
                ),
            )
        except LockError as exc:
            _raise_for_lock_error(exc)
        return _story_response(story, viewer_id=user.user_id, now=now_fn())

    @app.post(
        "/api/v1/stories/{story_id}/lock",
        response_model=LockGrantResponse,
        tags=["locks"],
    )
    def acquire_lock(story_id: int, user: StoredUser = Depends(current_user)) -> LockGrantResponse:
        logger.debug("lock.request story_id=%s user_id=%s", story_id, user.user_id)
        try:
            view = turns.acquire(story_id, _user_ref(user), want_acquire=True)
        except LockError as exc:
            _raise_for_lock_error(exc)
        story = view.story
        assert story.lock_expiration is not None
        return LockGrantResponse(
            expires_at_utc=_iso(story.lock_expiration) or "",
            story=_story_response(story, viewer_id=user.user_id, now=now_fn()),
            prior_snippet=_snippet_response(view.prior_snippet),
        )

    @app.delete("/api/v1/stories/{story_id}/lock", status_code=204, tags=["locks"])
    def release_lock(story_id: int, user: StoredUser = Depends(current_user)) -> Response:
        try:
            turns.release(story_id, _user_ref(user))
        except LockError as exc:
            _raise_for_lock_error(exc)
        return Response(status_code=204)

    @app.post(
        "/api/v1/stories/{story_id}/snippets",
        response_model=SnippetResponse,
        tags=["snippets"],
        status_code=201,
    )
    def contribute(
        story_id: int,
        payload: SnippetCreateRequest,
        user: StoredUser = Depends(current_user),
    ) -> SnippetResponse:
        try:
            snippet = turns.contribute(story_id, _user_ref(user), payload.content)
        except LockError as exc:
            _raise_for_lock_error(exc)
        response = _snippet_response(snippet)
        assert response is not None
        return response

    @app.get(
        "/api/v1/stories/{story_id}/access",
        response_model=AccessResponse,
        tags=["access"],
    )
    def get_access(story_id: int, user: StoredUser = Depends(current_user)) -> AccessResponse:
        try:
            level = turns.access_for(story_id, _user_ref(user))
        except LockError as exc:
            _raise_for_lock_error(exc)
        if not level.grants_read:
            raise HTTPException(status_code=404, detail="Story not found")
        return _access_response(story_id, user.user_id, level)

    @app.put(
        "/api/v1/stories/{story_id}/access/{user_id}",
        response_model=AccessResponse,
        tags=["access"],
    )
    def grant_access(
        story_id: int,
        user_id: str,
        payload: AccessGrantRequest,
        user: StoredUser = Depends(current_user),
    ) -> AccessResponse:
        target = store.get_user_by_id(user_id=user_id)
        if target is None:
            raise HTTPException(status_code=404, detail="User not found")
        level = AccessLevel.from_name(payload.level)
        try:
            turns.grant_access(story_id, _user_ref(user), _user_ref(target), level)
        except LockError as exc:
            _raise_for_lock_error(exc)
        return _access_response(
            story_id, target.user_id, turns.access_for(story_id, _user_ref(target))
        )

    return app


app = create_app()
