from __future__ import annotations

import asyncio
from typing import Any

import pytest
from accounts.models import (
    AuthEvent,
    AuthEventType,
    AuthUser,
    UserProfile,
    UserSession,
    UserType,
)
from common.errors import ConflictError, NotFoundError, ValidationError


def make_session(
    user_id: str = "user-1",
    token: str = "access-1",
    metadata: dict[str, Any] | None = None,
) -> UserSession:
    return UserSession(
        user=AuthUser(
            id=user_id,
            email=f"{user_id}@example.com",
            user_metadata=metadata or {},
        ),
        access_token=token,
        refresh_token=f"refresh-{user_id}",
    )


def make_profile(
    user_id: str = "user-1",
    user_type: UserType = UserType.APPLICANT,
    **fields: Any,
) -> UserProfile:
    return UserProfile(
        id=user_id,
        email=f"{user_id}@example.com",
        full_name=fields.pop("full_name", "Ana Gomez"),
        user_type=user_type,
        **fields,
    )


class FakeBackend:
    def __init__(self, session: UserSession | None = None) -> None:
        self.events: asyncio.Queue[AuthEvent] = asyncio.Queue()
        self.session = session
        self.profiles: dict[str, UserProfile] = {}
        self.password = "correct-horse"
        self.confirm_email = False
        self.metadata: dict[str, dict[str, Any]] = {}
        self.created: list[str] = []
        self.session_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.update_error: Exception | None = None
        self.fetch_gate: asyncio.Event | None = None
        self.fetch_calls: list[str] = []
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.sign_out_calls = 0

    async def get_session(self) -> UserSession | None:
        if self.session_error is not None:
            raise self.session_error
        return self.session

    async def sign_up(
        self,
        email: str,
        password: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[AuthUser | None, UserSession | None]:
        del password
        user_id = email.split("@")[0]
        self.metadata[user_id] = metadata or {}
        if self.confirm_email:
            return AuthUser(id=user_id, email=email, user_metadata=self.metadata[user_id]), None
        self.session = make_session(user_id, metadata=self.metadata[user_id])
        self.events.put_nowait(AuthEvent(AuthEventType.SIGNED_IN, self.session))
        return self.session.user, self.session

    async def sign_in(self, email: str, password: str) -> UserSession:
        if password != self.password:
            raise ValidationError("Invalid login credentials", status=400)
        user_id = email.split("@")[0]
        self.session = make_session(user_id, metadata=self.metadata.get(user_id))
        self.events.put_nowait(AuthEvent(AuthEventType.SIGNED_IN, self.session))
        return self.session

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        self.session = None
        self.events.put_nowait(AuthEvent(AuthEventType.SIGNED_OUT))

    async def refresh_session(self) -> UserSession:
        raise NotImplementedError

    async def reset_password(self, email: str, redirect_to: str | None = None) -> None:
        del email, redirect_to

    async def fetch_profile(self, user_id: str) -> UserProfile:
        self.fetch_calls.append(user_id)
        if self.fetch_gate is not None:
            await self.fetch_gate.wait()
        if self.fetch_error is not None:
            raise self.fetch_error
        if user_id not in self.profiles:
            raise NotFoundError(f"No profile found for user {user_id}", status=404)
        return self.profiles[user_id]

    async def create_profile(self, user_id: str, email: str, data: dict[str, Any]) -> None:
        if user_id in self.profiles:
            raise ConflictError("duplicate key value violates unique constraint", status=409)
        self.created.append(user_id)
        self.profiles[user_id] = UserProfile(id=user_id, email=email, **data)

    async def update_profile(self, user_id: str, changes: dict[str, Any]) -> None:
        self.updates.append((user_id, changes))
        if self.update_error is not None:
            raise self.update_error
        self.profiles[user_id] = self.profiles[user_id].model_copy(update=changes)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture(name="make_session")
def make_session_fixture():
    return make_session


@pytest.fixture(name="make_profile")
def make_profile_fixture():
    return make_profile
