"""Errors surfaced to the UI by the session synchronizer.

Each carries a human-readable message. Only ``AuthError`` is fatal: the
synchronizer has already dropped the session when it records one.
"""

from __future__ import annotations


class SessionError(Exception):
    kind = "SessionError"
    fatal = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SessionLoadError(SessionError):
    kind = "SessionLoadError"


class ProfileLoadError(SessionError):
    kind = "ProfileLoadError"


class ProfileNotFound(SessionError):
    kind = "ProfileNotFound"


class AuthError(SessionError):
    kind = "AuthError"
    fatal = True


class UpdateError(SessionError):
    kind = "UpdateError"
