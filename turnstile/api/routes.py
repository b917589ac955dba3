from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, Query, Response
from fastapi.responses import JSONResponse, RedirectResponse

from turnstile.api.schemas import (
    AddFriendRequest,
    ChangePasswordRequest,
    Envelope,
    FriendResponse,
    FriendsResponse,
    LoginRequest,
    PasswordRequest,
    RegisterRequest,
    SimpleUserResponse,
    TwoFactorChallengeRequest,
    TwoFactorConfirmRequest,
    TwoFactorPendingResponse,
    TwoFactorSetupResponse,
    UpdateProfileRequest,
    UserResponse,
    ValidationResponse,
)
from turnstile.logging import get_logger
from turnstile.service.auth import AuthContext
from turnstile.service.errors import ServiceError
from turnstile.service.runtime import get_runtime
from turnstile.service.sessions import SessionGrant

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

GOOGLE_CALLBACK_PATH = "/user/oauth-callback-google"
GOOGLE_CALLBACK_ERROR = "Failed to handle Google OAuth callback."


def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.accounts.authenticate(authorization)


def _ok(data=None) -> Envelope:
    return Envelope(status="ok", data=data)


def _grant_payload(grant: SessionGrant) -> dict:
    return UserResponse.from_user(grant.user, grant.token).model_dump(by_alias=True)


def _frontend_redirect(**params: str) -> RedirectResponse:
    base = get_runtime().settings.frontend_url.rstrip("/")
    return RedirectResponse(f"{base}{GOOGLE_CALLBACK_PATH}?{urlencode(params)}")


@router.get("/ping", response_model=Envelope, tags=["health"])
def ping():
    return _ok({"message": "pong"})


# Public user routes ----------------------------------------------------------


@router.post("/users/", response_model=Envelope, status_code=201, tags=["users"])
def register(body: RegisterRequest):
    """Create a password account. The client logs in afterwards."""
    runtime = get_runtime()
    user = runtime.accounts.register(
        body.username, body.email, body.password, avatar=body.avatar
    )
    return _ok(UserResponse.from_user(user).model_dump(by_alias=True))


@router.post("/users/loginByIdentifier", response_model=Envelope, tags=["users"])
def login(body: LoginRequest):
    """Log in by username or email.

    Accounts with 2FA enabled get a 428 carrying a short-lived challenge token
    that must be completed through ``POST /api/users/2fa``.
    """
    runtime = get_runtime()
    result = runtime.accounts.login(body.identifier, body.password)
    if result.two_factor_required:
        pending = TwoFactorPendingResponse(session_token=result.challenge_token)
        envelope = Envelope(status="2FA_REQUIRED", data=pending.model_dump(by_alias=True))
        return JSONResponse(status_code=428, content=envelope.model_dump())
    return _ok(_grant_payload(result.grant))


@router.post("/users/2fa", response_model=Envelope, tags=["users"])
def submit_two_factor_code(body: TwoFactorChallengeRequest):
    runtime = get_runtime()
    grant = runtime.accounts.complete_two_factor_challenge(body.session_token, body.code)
    return _ok(_grant_payload(grant))


@router.get("/users/google/login", tags=["users"])
def google_login():
    runtime = get_runtime()
    return RedirectResponse(runtime.accounts.google_login_url())


@router.get("/users/google/callback", tags=["users"])
def google_callback(code: str = Query(""), state: str = Query("")):
    """Finish the Google flow and hand the session to the frontend by redirect."""
    runtime = get_runtime()
    if not code or not state:
        logger.warning("google_callback_missing_params")
        return _frontend_redirect(error=GOOGLE_CALLBACK_ERROR)
    try:
        grant = runtime.accounts.google_callback(code, state)
    except ServiceError as exc:
        logger.warning(
            "google_callback_failed",
            status_code=exc.status_code,
            message=exc.message,
        )
        return _frontend_redirect(error=GOOGLE_CALLBACK_ERROR)
    return _frontend_redirect(token=grant.token)


# Authenticated user routes ---------------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
def get_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.accounts.get_profile(principal.user_id)
    return _ok(UserResponse.from_user(user).model_dump(by_alias=True))


@router.put("/users/me", response_model=Envelope, tags=["users"])
def update_me(body: UpdateProfileRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.accounts.update_profile(
        principal.user_id,
        username=body.username,
        email=body.email,
        avatar=body.avatar,
    )
    return _ok(UserResponse.from_user(user).model_dump(by_alias=True))


@router.put("/users/password", response_model=Envelope, tags=["users"])
def change_password(body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)):
    """Change the password; every other session is revoked and a fresh one returned."""
    runtime = get_runtime()
    grant = runtime.accounts.change_password(
        principal.user_id, body.old_password, body.new_password
    )
    return _ok(_grant_payload(grant))


@router.delete("/users/logout", status_code=204, tags=["users"])
def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.accounts.logout(principal.user_id)
    return Response(status_code=204)


@router.delete("/users/me", status_code=204, tags=["users"])
def delete_me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.accounts.delete_account(principal.user_id)
    return Response(status_code=204)


@router.post("/users/2fa/setup", response_model=Envelope, tags=["users"])
def start_two_factor_setup(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    setup = runtime.accounts.start_two_factor_setup(principal.user_id)
    data = TwoFactorSetupResponse(
        secret=setup.secret, setup_token=setup.setup_token, uri=setup.uri
    )
    return _ok(data.model_dump(by_alias=True))


@router.post("/users/2fa/confirm", response_model=Envelope, tags=["users"])
def confirm_two_factor_setup(
    body: TwoFactorConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    grant = runtime.accounts.confirm_two_factor_setup(
        principal.user_id, body.code, body.setup_token
    )
    return _ok(_grant_payload(grant))


@router.put("/users/2fa/disable", response_model=Envelope, tags=["users"])
def disable_two_factor(body: PasswordRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    grant = runtime.accounts.disable_two_factor(principal.user_id, body.password)
    return _ok(_grant_payload(grant))


@router.get("/users/friends", response_model=Envelope, tags=["friends"])
def list_friends(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    friends = runtime.accounts.list_friends(principal.user_id)
    data = FriendsResponse(
        friends=[
            FriendResponse(id=f.id, username=f.username, avatar=f.avatar, online=f.online)
            for f in friends
        ]
    )
    return _ok(data.model_dump(by_alias=True))


@router.post("/users/friends", response_model=Envelope, status_code=201, tags=["friends"])
def add_friend(body: AddFriendRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.accounts.add_friend(principal.user_id, body.user_id)
    return _ok({"message": "friend added"})


@router.post("/users/validate", response_model=Envelope, tags=["users"])
def validate_session(principal: AuthContext = Depends(get_user)):
    return _ok(ValidationResponse(user_id=principal.user_id).model_dump(by_alias=True))


@router.get("/users/", response_model=Envelope, tags=["users"])
def list_users(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    users = runtime.accounts.list_users()
    return _ok(
        [
            SimpleUserResponse(id=u.id, username=u.username, avatar=u.avatar).model_dump()
            for u in users
        ]
    )
