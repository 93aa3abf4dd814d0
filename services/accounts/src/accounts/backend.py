from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from common.errors import (
    AuthorizationError,
    NetworkError,
    NotFoundError,
    ParseError,
    error_for_status,
)
from common.utils import now_utc
from pydantic import ValidationError as PydanticValidationError

from accounts.models import (
    AuthEvent,
    AuthEventType,
    AuthUser,
    UserProfile,
    UserSession,
)

LOGGER = logging.getLogger("jobboard.accounts")
PROFILES_PATH = "/rest/v1/profiles"


class IdentityBackend(Protocol):
    events: asyncio.Queue[AuthEvent]

    async def get_session(self) -> UserSession | None: ...

    async def sign_up(
        self, email: str, password: str, metadata: dict[str, Any] | None = None
    ) -> tuple[AuthUser | None, UserSession | None]: ...

    async def sign_in(self, email: str, password: str) -> UserSession: ...

    async def sign_out(self) -> None: ...

    async def refresh_session(self) -> UserSession: ...

    async def reset_password(self, email: str, redirect_to: str | None = None) -> None: ...

    async def fetch_profile(self, user_id: str) -> UserProfile: ...

    async def create_profile(self, user_id: str, email: str, data: dict[str, Any]) -> None: ...

    async def update_profile(self, user_id: str, changes: dict[str, Any]) -> None: ...


def _error_message(payload: Any, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("msg", "error_description", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value
    return default


def parse_session(payload: Any) -> UserSession:
    if not isinstance(payload, dict):
        raise ParseError("Auth response is not a JSON object")
    expires_at: datetime | None = None
    if isinstance(payload.get("expires_at"), (int, float)):
        expires_at = datetime.fromtimestamp(payload["expires_at"], tz=UTC)
    elif isinstance(payload.get("expires_in"), (int, float)):
        expires_at = now_utc() + timedelta(seconds=payload["expires_in"])
    try:
        return UserSession(
            user=AuthUser.model_validate(payload.get("user")),
            access_token=payload.get("access_token"),
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
        )
    except PydanticValidationError as exc:
        raise ParseError(f"Auth response is missing session fields: {exc}") from exc


class SupabaseBackend:
    """Identity and profile calls against a Supabase project.

    Mirrors the JS client: a successful sign-in, refresh or sign-out is
    published on ``events`` so a single consumer can keep UI state in step.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        session: UserSession | None = None,
        timeout: float = 15.0,
    ) -> None:
        if not url or not anon_key:
            raise ValueError("Supabase url and anon key are required.")
        self.url = url.rstrip("/")
        self.anon_key = anon_key
        self.timeout = timeout
        self.events: asyncio.Queue[AuthEvent] = asyncio.Queue()
        self._session = session

    @classmethod
    def from_env(cls) -> SupabaseBackend:
        url = os.getenv("SUPABASE_URL", "").strip()
        anon_key = os.getenv("SUPABASE_ANON_KEY", "").strip()
        if not url or not anon_key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set.")
        return cls(url, anon_key)

    @property
    def session(self) -> UserSession | None:
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        access_token: str | None = None,
        prefer: str | None = None,
    ) -> Any:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token or self.anon_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        request_kwargs: dict[str, Any] = {"headers": headers}
        if payload is not None:
            request_kwargs["json"] = payload
        if params:
            request_kwargs["params"] = params

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method=method,
                    url=f"{self.url}{path}",
                    **request_kwargs,
                )
        except httpx.RequestError as exc:
            raise NetworkError(f"Supabase is unavailable: {exc}") from exc

        try:
            response_payload = response.json()
        except ValueError:
            response_payload = None

        if response.status_code >= 400:
            message = _error_message(response_payload, f"Supabase request failed: {method} {path}")
            raise error_for_status(response.status_code, message)
        return response_payload

    def _publish(self, event: AuthEventType, session: UserSession | None) -> None:
        self.events.put_nowait(AuthEvent(event=event, session=session))
        LOGGER.info(
            json.dumps(
                {
                    "event": "auth_event_published",
                    "auth_event": event.value,
                    "user_id": session.user_id if session else None,
                }
            )
        )

    def _access_token(self) -> str:
        if self._session is None:
            raise AuthorizationError("No active session", status=401)
        return self._session.access_token

    async def get_session(self) -> UserSession | None:
        if self._session is None:
            return None
        expires_at = self._session.expires_at
        if expires_at is not None and expires_at <= now_utc() and self._session.refresh_token:
            await self.refresh_session()

        payload = await self._request("GET", "/auth/v1/user", access_token=self._access_token())
        try:
            user = AuthUser.model_validate(payload)
        except PydanticValidationError as exc:
            raise ParseError(f"User response is invalid: {exc}") from exc
        self._session = self._session.model_copy(update={"user": user})
        return self._session

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[AuthUser | None, UserSession | None]:
        payload = await self._request(
            "POST",
            "/auth/v1/signup",
            payload={"email": email, "password": password, "data": metadata or {}},
        )
        if isinstance(payload, dict) and payload.get("access_token"):
            session = parse_session(payload)
            self._session = session
            self._publish(AuthEventType.SIGNED_IN, session)
            return session.user, session

        # Email confirmation pending: the response is the bare user record.
        user_payload = payload.get("user", payload) if isinstance(payload, dict) else None
        if not isinstance(user_payload, dict) or not user_payload.get("id"):
            return None, None
        return AuthUser.model_validate(user_payload), None

    async def sign_in(self, email: str, password: str) -> UserSession:
        payload = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            payload={"email": email, "password": password},
        )
        session = parse_session(payload)
        self._session = session
        self._publish(AuthEventType.SIGNED_IN, session)
        return session

    async def refresh_session(self) -> UserSession:
        if self._session is None or not self._session.refresh_token:
            raise AuthorizationError("No refresh token available", status=401)
        payload = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            payload={"refresh_token": self._session.refresh_token},
        )
        session = parse_session(payload)
        self._session = session
        self._publish(AuthEventType.TOKEN_REFRESHED, session)
        return session

    async def sign_out(self) -> None:
        session = self._session
        self._session = None
        try:
            if session is not None:
                await self._request("POST", "/auth/v1/logout", access_token=session.access_token)
        except AuthorizationError as exc:
            LOGGER.info(json.dumps({"event": "sign_out_token_already_invalid", "error": str(exc)}))
        finally:
            self._publish(AuthEventType.SIGNED_OUT, None)

    async def reset_password(self, email: str, redirect_to: str | None = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        await self._request("POST", "/auth/v1/recover", payload={"email": email}, params=params)

    async def fetch_profile(self, user_id: str) -> UserProfile:
        payload = await self._request(
            "GET",
            PROFILES_PATH,
            params={"id": f"eq.{user_id}", "select": "*"},
            access_token=self._access_token(),
        )
        if not isinstance(payload, list):
            raise ParseError("Profile response is not a JSON list")
        if not payload:
            raise NotFoundError(f"No profile found for user {user_id}", status=404)
        try:
            return UserProfile.model_validate(payload[0])
        except PydanticValidationError as exc:
            raise ParseError(f"Profile record is invalid: {exc}") from exc

    async def create_profile(self, user_id: str, email: str, data: dict[str, Any]) -> None:
        record = {**data, "id": user_id, "email": email}
        await self._request(
            "POST",
            PROFILES_PATH,
            payload=record,
            access_token=self._access_token(),
            prefer="return=minimal",
        )

    async def update_profile(self, user_id: str, changes: dict[str, Any]) -> None:
        await self._request(
            "PATCH",
            PROFILES_PATH,
            params={"id": f"eq.{user_id}"},
            payload=changes,
            access_token=self._access_token(),
            prefer="return=minimal",
        )
