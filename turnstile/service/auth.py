from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import List, Optional, Protocol, Set

from turnstile.logging import get_logger
from turnstile.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
)
from turnstile.service.oauth import GoogleIdentity, GoogleOAuthClient, OAuthExchangeError
from turnstile.service.passwords import PasswordHashing
from turnstile.service.presence import PresenceTracker
from turnstile.service.sessions import SessionGrant, TokenStore
from turnstile.service.tokens import CredentialSigner, TokenKind
from turnstile.service.twofa import TwoFactorService, TwoFactorSetup
from turnstile.storage.errors import ConstraintViolation
from turnstile.storage.models import User, UserSummary

logger = get_logger(__name__)

_BEARER_PREFIX = "Bearer "
GOOGLE_USERNAME_PREFIX = "G_"


class AccountStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_username(self, username: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        ...

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Optional[User]:
        ...

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        ...

    def delete_user(self, user_id: str) -> bool:
        ...

    def list_users(self) -> List[UserSummary]:
        ...

    def add_friend(self, user_id: str, friend_id: str) -> None:
        ...

    def list_friends(self, user_id: str) -> List[UserSummary]:
        ...


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    token: str


@dataclass(frozen=True)
class LoginResult:
    """Either a session, or a challenge token when the account has 2FA enabled."""

    grant: Optional[SessionGrant] = None
    challenge_token: Optional[str] = None

    @property
    def two_factor_required(self) -> bool:
        return self.challenge_token is not None


@dataclass(frozen=True)
class FriendStatus:
    id: str
    username: str
    avatar: Optional[str]
    online: bool


class AccountService:
    """Account-level operations composed from the session primitives.

    Holds only the ``TokenStore`` and ``PresenceTracker`` interfaces; which
    backend sits behind them is decided once by the runtime factories.
    """

    def __init__(
        self,
        store: AccountStore,
        signer: CredentialSigner,
        tokens: TokenStore,
        presence: PresenceTracker,
        twofa: TwoFactorService,
        passwords: PasswordHashing,
        oauth: GoogleOAuthClient,
        *,
        oauth_state_ttl_seconds: int = 600,
    ) -> None:
        self.store = store
        self.signer = signer
        self.tokens = tokens
        self.presence = presence
        self.twofa = twofa
        self.passwords = passwords
        self.oauth = oauth
        self.oauth_state_ttl_seconds = oauth_state_ttl_seconds

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    # Registration and login --------------------------------------------------

    def register(
        self, username: str, email: str, password: str, *, avatar: Optional[str] = None
    ) -> User:
        password_hash = self.passwords.hash(password)
        try:
            user = self.store.create_user(
                username, email, password_hash=password_hash, avatar=avatar
            )
        except ConstraintViolation as exc:
            raise ConflictError("username or email already in use", detail=exc.detail)
        logger.info("user_registered", user_id=user.id)
        return user

    def login(self, identifier: str, password: str) -> LoginResult:
        if "@" in identifier:
            user = self.store.get_user_by_email(identifier.lower())
        else:
            user = self.store.get_user_by_username(identifier)
        if not user or user.is_federated_only:
            raise AuthenticationError("invalid credentials")
        if not self.passwords.verify(user.password_hash, password):
            logger.info("login_password_mismatch", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        if user.two_factor_enabled:
            logger.info("login_two_factor_required", user_id=user.id)
            return LoginResult(challenge_token=self.twofa.issue_challenge(user))
        token = self.tokens.issue_session(user.id, revoke_existing=False)
        return LoginResult(grant=SessionGrant(user=user, token=token))

    # Token validation --------------------------------------------------------

    def validate_token(self, token: str) -> str:
        """Verify a session token end to end and return its owner's id.

        The signed claim is checked first (signature, kind, expiry), then the
        token store (issued, not revoked, owned by the claimed user).
        """
        claims = self.signer.verify(token, TokenKind.USER)
        user_id = claims.get("sub")
        if not isinstance(user_id, str) or not user_id:
            raise InvalidTokenError()
        self.tokens.validate(token, user_id)
        return user_id

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not authorization or not authorization.startswith(_BEARER_PREFIX):
            raise AuthenticationError("invalid or expired token")
        token = authorization[len(_BEARER_PREFIX):].strip()
        try:
            user_id = self.validate_token(token)
        except AuthenticationError:
            raise AuthenticationError("invalid or expired token")
        return AuthContext(user_id=user_id, token=token)

    def logout(self, user_id: str) -> None:
        self.tokens.revoke_all(user_id)
        logger.info("user_logged_out", user_id=user_id)

    # Profile -----------------------------------------------------------------

    def get_profile(self, user_id: str) -> User:
        return self._require_user(user_id)

    def update_profile(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> User:
        try:
            user = self.store.update_profile(
                user_id, username=username, email=email, avatar=avatar
            )
        except ConstraintViolation as exc:
            raise ConflictError("username or email already in use", detail=exc.detail)
        if not user:
            raise NotFoundError("user not found")
        return user

    def change_password(self, user_id: str, old_password: str, new_password: str) -> SessionGrant:
        user = self._require_user(user_id)
        if user.is_federated_only:
            raise BadRequestError("password cannot be changed for OAuth users")
        if not self.passwords.verify(user.password_hash, old_password):
            raise AuthenticationError("invalid credentials")
        if not self.store.set_password_hash(user_id, self.passwords.hash(new_password)):
            raise NotFoundError("user not found")
        token = self.tokens.issue_session(user_id, revoke_existing=True)
        logger.info("password_changed", user_id=user_id)
        return SessionGrant(user=self._require_user(user_id), token=token)

    def delete_account(self, user_id: str) -> None:
        self._require_user(user_id)
        # Cache-backed sessions are not covered by the row cascade
        self.tokens.revoke_all(user_id)
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found")
        # Sweep again for a login that landed between revoke and delete
        self.tokens.revoke_all(user_id)
        self.presence.forget(user_id)
        logger.info("user_deleted", user_id=user_id)

    # Two-factor --------------------------------------------------------------

    def start_two_factor_setup(self, user_id: str) -> TwoFactorSetup:
        return self.twofa.start_setup(user_id)

    def confirm_two_factor_setup(self, user_id: str, code: str, setup_token: str) -> SessionGrant:
        return self.twofa.confirm_setup(user_id, code, setup_token)

    def complete_two_factor_challenge(self, challenge_token: str, code: str) -> SessionGrant:
        return self.twofa.complete_challenge(challenge_token, code)

    def disable_two_factor(self, user_id: str, password: str) -> SessionGrant:
        return self.twofa.disable(user_id, password)

    # Google federation -------------------------------------------------------

    def google_login_url(self) -> str:
        state = self.signer.issue(TokenKind.OAUTH_STATE, {}, self.oauth_state_ttl_seconds)
        return self.oauth.authorization_url(state)

    def google_callback(self, code: str, state: str) -> SessionGrant:
        try:
            self.signer.verify(state, TokenKind.OAUTH_STATE)
        except InvalidTokenError:
            raise BadRequestError("invalid oauth state")
        try:
            identity = self.oauth.exchange(code)
        except OAuthExchangeError as exc:
            raise AuthenticationError("google authentication failed") from exc

        user = self.store.get_user_by_google_id(identity.id)
        if user is None:
            if self.store.get_user_by_email(identity.email) is not None:
                # Linking onto an existing local account is refused on purpose
                logger.warning("google_link_refused_email_exists", google_id=identity.id)
                raise ConflictError("an account with the same email already exists")
            user = self._create_google_user(identity)
        token = self.tokens.issue_session(user.id, revoke_existing=False)
        return SessionGrant(user=user, token=token)

    def _create_google_user(self, identity: GoogleIdentity) -> User:
        candidates = (
            GOOGLE_USERNAME_PREFIX + identity.id[:8],
            GOOGLE_USERNAME_PREFIX + uuid.uuid4().hex[:16],
        )
        for attempt, username in enumerate(candidates):
            try:
                user = self.store.create_user(
                    username,
                    identity.email,
                    google_id=identity.id,
                    avatar=identity.picture,
                )
            except ConstraintViolation as exc:
                if exc.detail.get("field") == "username" and attempt + 1 < len(candidates):
                    logger.info("google_username_taken_retrying", username=username)
                    continue
                raise ConflictError("username or email already in use", detail=exc.detail)
            logger.info("google_user_created", user_id=user.id)
            return user
        raise ConflictError("username or email already in use")

    # Friends and directory ---------------------------------------------------

    def add_friend(self, user_id: str, friend_id: str) -> None:
        if user_id == friend_id:
            raise BadRequestError("cannot add yourself as a friend")
        if not self.store.get_user(friend_id):
            raise NotFoundError("user not found")
        try:
            self.store.add_friend(user_id, friend_id)
        except ConstraintViolation as exc:
            if exc.detail.get("reason") == "duplicate":
                raise ConflictError("friend already added")
            raise NotFoundError("user not found")

    def list_friends(self, user_id: str) -> List[FriendStatus]:
        friends = self.store.list_friends(user_id)
        online = self.presence.online_set()
        return [
            FriendStatus(id=f.id, username=f.username, avatar=f.avatar, online=f.id in online)
            for f in friends
        ]

    def list_users(self) -> List[UserSummary]:
        return self.store.list_users()

    def online_user_ids(self) -> Set[str]:
        return self.presence.online_set()


__all__ = [
    "AccountService",
    "AuthContext",
    "FriendStatus",
    "LoginResult",
]
