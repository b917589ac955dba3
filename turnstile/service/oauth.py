from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from turnstile.logging import get_logger

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"


class OAuthExchangeError(Exception):
    """The provider rejected the code or returned an unusable identity."""


@dataclass(frozen=True)
class GoogleIdentity:
    id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None


class GoogleOAuthClient:
    """Authorization-code exchange against Google, returning a verified identity."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "response_type": "code",
                "scope": GOOGLE_SCOPE,
                "state": state,
            }
        )
        return f"{GOOGLE_AUTH_URL}?{query}"

    def exchange(self, code: str) -> GoogleIdentity:
        if not self.configured:
            raise OAuthExchangeError("google oauth is not configured")
        try:
            with httpx.Client(
                timeout=self.timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                access_token = self._json(token_response).get("access_token")
                if not access_token:
                    raise OAuthExchangeError("token response missing access_token")

                userinfo_response = client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = self._json(userinfo_response)
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            raise OAuthExchangeError("google rejected the authorization code") from exc
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_transport_error", provider="google", error=str(exc))
            raise OAuthExchangeError("google oauth exchange failed") from exc
        return self._parse_userinfo(userinfo)

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise OAuthExchangeError("provider returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise OAuthExchangeError("provider returned unexpected payload")
        return payload

    @staticmethod
    def _parse_userinfo(userinfo: dict[str, Any]) -> GoogleIdentity:
        google_id = userinfo.get("id") or userinfo.get("sub")
        email = userinfo.get("email")
        if not google_id or not email:
            raise OAuthExchangeError("google identity is missing id or email")
        if userinfo.get("verified_email") is False:
            raise OAuthExchangeError("google email is not verified")
        return GoogleIdentity(
            id=str(google_id),
            email=str(email).lower(),
            name=userinfo.get("name"),
            picture=userinfo.get("picture"),
        )


__all__ = ["GoogleIdentity", "GoogleOAuthClient", "OAuthExchangeError"]
