"""Keeps the UI-facing session/profile state in step with the identity backend.

Auth events are consumed from the backend's queue by ``run()`` one at a time.
Event handling and the explicit operations share one lock, so a profile
fetch started for one event always finishes, and its result is applied,
before the next event or operation touches the state.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from common.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ServiceError,
)

from accounts.backend import IdentityBackend
from accounts.errors import (
    AuthError,
    ProfileLoadError,
    ProfileNotFound,
    SessionError,
    SessionLoadError,
    UpdateError,
)
from accounts.models import (
    LOGIN_PATHS,
    AuthEvent,
    AuthEventType,
    NavigationIntent,
    ProfileUpdate,
    SessionState,
    UserProfile,
    UserSession,
    home_path_for,
    profile_seed,
)

LOGGER = logging.getLogger("jobboard.accounts")

# Events that only carry a fresh token for a user whose profile is loaded.
SESSION_ONLY_EVENTS = (AuthEventType.TOKEN_REFRESHED, AuthEventType.USER_UPDATED)


class SessionSynchronizer:
    def __init__(self, backend: IdentityBackend, *, location: str = "/") -> None:
        self.backend = backend
        self.events: asyncio.Queue[AuthEvent] = backend.events
        self.location = location
        self.session: UserSession | None = None
        self.profile: UserProfile | None = None
        self.loading = True
        self.failure: SessionError | None = None
        self._navigation: NavigationIntent | None = None
        self._lock = asyncio.Lock()

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    @property
    def error(self) -> str | None:
        return self.failure.message if self.failure else None

    def snapshot(self) -> SessionState:
        return SessionState(
            session=self.session,
            profile=self.profile,
            loading=self.loading,
            error=self.error,
            error_kind=self.failure.kind if self.failure else None,
            error_fatal=self.failure.fatal if self.failure else False,
            is_authenticated=self.is_authenticated,
        )

    def set_location(self, path: str) -> None:
        self.location = path

    def take_navigation(self) -> NavigationIntent | None:
        intent, self._navigation = self._navigation, None
        return intent

    def clear_error(self) -> None:
        self.failure = None

    def _fail(self, failure: SessionError) -> None:
        self.failure = failure
        LOGGER.warning(
            json.dumps(
                {
                    "event": "session_error",
                    "kind": failure.kind,
                    "fatal": failure.fatal,
                    "error": failure.message,
                    "user_id": self.session.user_id if self.session else None,
                }
            )
        )

    def _clear(self) -> None:
        self.session = None
        self.profile = None

    def _set_session(self, session: UserSession) -> None:
        if self.profile is not None and self.profile.id != session.user_id:
            self.profile = None
        self.session = session

    async def start(self) -> NavigationIntent | None:
        """Load the session the backend already holds, then its profile."""
        async with self._lock:
            self.loading = True
            self.clear_error()
            try:
                session = await self.backend.get_session()
            except AuthorizationError as exc:
                await self._force_sign_out()
                self._fail(AuthError(exc.message or "Your session has expired"))
                return None
            except ServiceError as exc:
                self._clear()
                self._fail(SessionLoadError(exc.message or "Failed to load the session"))
                return None
            else:
                if session is None:
                    self._clear()
                    return None
                self._set_session(session)
                return await self._load_profile()
            finally:
                self.loading = False

    async def run(self) -> None:
        while True:
            event = await self.events.get()
            try:
                await self.handle_event(event)
            finally:
                self.events.task_done()

    async def drain(self) -> None:
        await self.events.join()

    async def handle_event(self, event: AuthEvent) -> NavigationIntent | None:
        async with self._lock:
            LOGGER.info(
                json.dumps(
                    {
                        "event": "auth_event_received",
                        "auth_event": event.event.value,
                        "user_id": event.session.user_id if event.session else None,
                    }
                )
            )
            if event.event == AuthEventType.SIGNED_OUT or event.session is None:
                self._clear()
                return None

            self.clear_error()
            already_loaded = (
                self.profile is not None and self.profile.id == event.session.user_id
            )
            self._set_session(event.session)
            if event.event in SESSION_ONLY_EVENTS and already_loaded:
                return None
            self.loading = True
            try:
                return await self._load_profile()
            finally:
                self.loading = False

    async def _load_profile(self) -> NavigationIntent | None:
        session = self.session
        if session is None:
            return None
        try:
            profile = await self._fetch_or_seed_profile(session)
        except AuthorizationError as exc:
            await self._force_sign_out()
            self._fail(AuthError(exc.message or "Your session has expired"))
            return None
        except NotFoundError:
            self.profile = None
            self._fail(ProfileNotFound("No profile was found for this user"))
            return None
        except ServiceError as exc:
            self._fail(ProfileLoadError(exc.message or "Failed to load the user profile"))
            return None

        if profile.id != session.user_id:
            self.profile = None
            self._fail(ProfileLoadError("Profile does not belong to the signed-in user"))
            return None

        self.profile = profile
        self.clear_error()
        if self.location not in LOGIN_PATHS:
            return None
        self._navigation = NavigationIntent(path=home_path_for(profile.user_type))
        LOGGER.info(
            json.dumps(
                {
                    "event": "navigation_requested",
                    "from": self.location,
                    "to": self._navigation.path,
                }
            )
        )
        return self._navigation

    async def _fetch_or_seed_profile(self, session: UserSession) -> UserProfile:
        try:
            return await self.backend.fetch_profile(session.user_id)
        except NotFoundError:
            seed = profile_seed(session.user)
            if seed is None:
                raise

        try:
            await self.backend.create_profile(session.user_id, session.user.email, seed)
        except ConflictError:
            LOGGER.info(json.dumps({"event": "profile_already_exists", "user_id": session.user_id}))
        else:
            LOGGER.info(json.dumps({"event": "profile_seeded", "user_id": session.user_id}))
        return await self.backend.fetch_profile(session.user_id)

    async def _force_sign_out(self) -> None:
        self._clear()
        try:
            await self.backend.sign_out()
        except ServiceError as exc:
            LOGGER.warning(json.dumps({"event": "forced_sign_out_failed", "error": str(exc)}))

    async def sign_up(
        self,
        email: str,
        password: str,
        profile_data: dict[str, Any],
    ) -> NavigationIntent | None:
        async with self._lock:
            self.loading = True
            self.clear_error()
            try:
                user, session = await self.backend.sign_up(email, password, profile_data)
                if user is None or session is None:
                    # Awaiting email confirmation; the row is seeded from metadata on first sign-in.
                    return None
                try:
                    await self.backend.create_profile(user.id, email, profile_data)
                except ConflictError:
                    LOGGER.info(json.dumps({"event": "profile_already_exists", "user_id": user.id}))
                self._set_session(session)
                return await self._load_profile()
            except ServiceError as exc:
                self._fail(SessionLoadError(exc.message or "Failed to register the user"))
                raise
            finally:
                self.loading = False

    async def sign_in(self, email: str, password: str) -> UserSession:
        """Authenticate; the resulting SIGNED_IN event is applied by ``run()``."""
        async with self._lock:
            self.loading = True
            self.clear_error()
            try:
                return await self.backend.sign_in(email, password)
            except ServiceError as exc:
                self._fail(SessionLoadError(exc.message or "Failed to sign in"))
                raise
            finally:
                self.loading = False

    async def sign_out(self) -> None:
        async with self._lock:
            self.loading = True
            self.clear_error()
            try:
                await self.backend.sign_out()
            except ServiceError as exc:
                self._fail(SessionError(exc.message or "Failed to sign out"))
            finally:
                self._clear()
                self.loading = False

    async def update_profile(self, changes: ProfileUpdate) -> UserProfile | None:
        async with self._lock:
            self.loading = True
            self.clear_error()
            try:
                if self.session is None:
                    failure = UpdateError("No authenticated user")
                    self._fail(failure)
                    raise failure
                try:
                    await self.backend.update_profile(self.session.user_id, changes.changes())
                except AuthorizationError as exc:
                    await self._force_sign_out()
                    failure = AuthError(exc.message or "Your session has expired")
                    self._fail(failure)
                    raise failure from exc
                except ServiceError as exc:
                    failure = UpdateError(exc.message or "Failed to update the profile")
                    self._fail(failure)
                    raise failure from exc
                await self._load_profile()
                return self.profile
            finally:
                self.loading = False

    async def refresh_profile(self) -> UserProfile | None:
        async with self._lock:
            if self.session is None:
                return None
            self.loading = True
            try:
                await self._load_profile()
                return self.profile
            finally:
                self.loading = False

    async def reset_password(self, email: str, redirect_to: str | None = None) -> None:
        await self.backend.reset_password(email, redirect_to)
