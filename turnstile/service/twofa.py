from __future__ import annotations

import hmac
from dataclasses import dataclass, replace
from typing import NoReturn, Optional, Protocol

from turnstile.logging import get_logger
from turnstile.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidTokenError,
    NotFoundError,
)
from turnstile.service.passwords import PasswordHashing
from turnstile.service.sessions import SessionGrant, TokenStore
from turnstile.service.tokens import CredentialSigner, TokenKind
from turnstile.service.totp import TotpAuthenticator
from turnstile.storage.models import (
    TwoFactorDisabled,
    TwoFactorEnabled,
    TwoFactorPending,
    TwoFactorState,
    User,
)

logger = get_logger(__name__)


class TwoFactorStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def set_two_factor(
        self, user_id: str, state: TwoFactorState, *, expected: Optional[TwoFactorState] = None
    ) -> bool:
        ...


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    setup_token: str
    uri: str


def _unexpected_state(state: object) -> NoReturn:
    raise TypeError(f"unknown 2FA state {state!r}")


class TwoFactorService:
    """2FA lifecycle: Disabled -> Pending -> Enabled -> Disabled.

    Setup and challenge steps are bound to purpose-typed signed tokens, so a
    setup token can never complete a login challenge and vice versa. Enabling or
    disabling revokes every existing session and issues exactly one new one; a
    login challenge adds a session without touching the others.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        signer: CredentialSigner,
        totp: TotpAuthenticator,
        tokens: TokenStore,
        passwords: PasswordHashing,
        *,
        token_ttl_seconds: int,
    ) -> None:
        self.store = store
        self.signer = signer
        self.totp = totp
        self.tokens = tokens
        self.passwords = passwords
        self.token_ttl_seconds = token_ttl_seconds

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    def _transition(self, user: User, state: TwoFactorState) -> User:
        # Compare-and-set on the whole state, secret included, so a setup restarted
        # after this request read the user cannot be confirmed with the old secret
        if not self.store.set_two_factor(user.id, state, expected=user.two_factor):
            logger.warning(
                "two_factor_transition_conflict",
                user_id=user.id,
                expected=user.two_factor.status,
                target=state.status,
            )
            raise ConflictError("2FA state changed concurrently, please retry")
        logger.info(
            "two_factor_transition",
            user_id=user.id,
            from_status=user.two_factor.status,
            to_status=state.status,
        )
        return replace(user, two_factor=state)

    def start_setup(self, user_id: str) -> TwoFactorSetup:
        user = self._require_user(user_id)
        state = user.two_factor
        if isinstance(state, TwoFactorEnabled):
            raise BadRequestError("2FA is already enabled")
        if not isinstance(state, (TwoFactorDisabled, TwoFactorPending)):
            _unexpected_state(state)
        if user.is_federated_only:
            raise BadRequestError("2FA cannot be enabled for Google OAuth users")

        # A second start simply replaces the pending secret; older setup tokens go stale
        generated = self.totp.generate_secret(user.email)
        self._transition(user, TwoFactorPending(generated.secret))
        setup_token = self.signer.issue(
            TokenKind.TWOFA_SETUP,
            {"sub": user.id, "secret": generated.secret},
            self.token_ttl_seconds,
        )
        return TwoFactorSetup(
            secret=generated.secret, setup_token=setup_token, uri=generated.uri
        )

    def confirm_setup(self, user_id: str, code: str, setup_token: str) -> SessionGrant:
        try:
            claims = self.signer.verify(setup_token, TokenKind.TWOFA_SETUP)
        except InvalidTokenError:
            raise AuthenticationError("invalid setup token")
        if claims.get("sub") != user_id:
            logger.warning("two_factor_setup_token_user_mismatch", user_id=user_id)
            raise AuthenticationError("invalid setup token")

        user = self._require_user(user_id)
        if user.is_federated_only:
            raise BadRequestError("2FA cannot be enabled for Google OAuth users")
        state = user.two_factor
        if isinstance(state, TwoFactorDisabled):
            raise BadRequestError("2FA setup was not initiated")
        if isinstance(state, TwoFactorEnabled):
            raise BadRequestError("2FA is already enabled")
        if not isinstance(state, TwoFactorPending):
            _unexpected_state(state)
        if not hmac.compare_digest(state.secret, str(claims.get("secret", ""))):
            # The pending secret was replaced by a later setup
            logger.warning("two_factor_setup_token_stale", user_id=user_id)
            raise AuthenticationError("invalid setup token")
        if not self.totp.validate(code, state.secret):
            raise AuthenticationError("invalid 2FA code")

        user = self._transition(user, TwoFactorEnabled(state.secret))
        token = self.tokens.issue_session(user.id, revoke_existing=True)
        return SessionGrant(user=user, token=token)

    def issue_challenge(self, user: User) -> str:
        """Short-lived token a login must redeem with a valid code."""
        return self.signer.issue(
            TokenKind.TWOFA_CHALLENGE, {"sub": user.id}, self.token_ttl_seconds
        )

    def complete_challenge(self, challenge_token: str, code: str) -> SessionGrant:
        try:
            claims = self.signer.verify(challenge_token, TokenKind.TWOFA_CHALLENGE)
        except InvalidTokenError:
            raise AuthenticationError("invalid session token")
        user = self._require_user(str(claims.get("sub", "")))
        state = user.two_factor
        if isinstance(state, (TwoFactorDisabled, TwoFactorPending)):
            raise BadRequestError("2FA is not enabled for this user")
        if not isinstance(state, TwoFactorEnabled):
            _unexpected_state(state)
        if not self.totp.validate(code, state.secret):
            raise AuthenticationError("invalid 2FA code")
        token = self.tokens.issue_session(user.id, revoke_existing=False)
        return SessionGrant(user=user, token=token)

    def disable(self, user_id: str, password: str) -> SessionGrant:
        user = self._require_user(user_id)
        if user.is_federated_only:
            raise BadRequestError("2FA cannot be disabled for OAuth users")
        state = user.two_factor
        if isinstance(state, (TwoFactorDisabled, TwoFactorPending)):
            raise BadRequestError("2FA is not enabled")
        if not isinstance(state, TwoFactorEnabled):
            _unexpected_state(state)
        if not self.passwords.verify(user.password_hash, password):
            raise AuthenticationError("invalid credentials")

        user = self._transition(user, TwoFactorDisabled())
        token = self.tokens.issue_session(user.id, revoke_existing=True)
        return SessionGrant(user=user, token=token)


__all__ = ["TwoFactorService", "TwoFactorSetup"]
