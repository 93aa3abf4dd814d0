from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

from accounts.models import SessionState, UserType, home_path_for

LOGIN_PATH = "/login"


class AccessDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: Literal["allow", "loading", "error", "redirect"]
    path: str | None = None
    message: str | None = None


def resolve_access(
    state: SessionState,
    required_user_type: UserType | None = None,
) -> AccessDecision:
    """Decide what a protected view should render for the current state.

    Errors win over a missing session so the user sees why they were signed
    out, with a way back to the login view.
    """
    if state.loading:
        return AccessDecision(outcome="loading", message="Checking authentication")
    if state.error:
        return AccessDecision(outcome="error", path=LOGIN_PATH, message=state.error)
    if state.session is None:
        return AccessDecision(outcome="redirect", path=LOGIN_PATH)
    if state.profile is None:
        return AccessDecision(outcome="loading", message="Loading user profile")
    if required_user_type is not None and state.profile.user_type != required_user_type:
        return AccessDecision(outcome="redirect", path=home_path_for(state.profile.user_type))
    return AccessDecision(outcome="allow")
