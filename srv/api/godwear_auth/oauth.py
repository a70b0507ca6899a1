from __future__ import annotations

import functools
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional

from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from pydantic import BaseModel, ValidationError

from .config import DEFAULT_GOOGLE_ISSUERS, AuthConfig
from .errors import EmailNotVerified, TokenExchangeFailed, UserInfoFailed
from .models import Identity, ProviderTokens
from .utils import normalize_email


logger = logging.getLogger(__name__)

SCOPES = "openid email profile"


class ProviderRequestFailed(Exception):
    """Transport-level failure talking to the provider."""

    def __init__(self, reason: str, *, status: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status = status


class GoogleTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: str = ""


class GoogleUserInfo(BaseModel):
    id: str
    email: str = ""
    verified_email: bool = False
    name: str = ""
    picture: Optional[str] = None


class GoogleOAuthClient:
    """Authorization-code flow against Google's OAuth2 endpoints.

    Every outbound call goes through ``_send`` with the configured timeout, so
    a hung provider surfaces as ``TokenExchangeFailed`` or ``UserInfoFailed``
    rather than blocking the worker. Authorization codes are single use and
    are never retried here.
    """

    def __init__(self, config: AuthConfig):
        self.client_id = config.google_client_id
        self.client_secret = config.google_client_secret
        self.auth_url = config.auth_url
        self.token_url = config.token_url
        self.userinfo_url = config.userinfo_url
        self.timeout = config.http_timeout_seconds

    def build_authorization_url(self, redirect_uri: str, state: str, nonce: Optional[str] = None) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": SCOPES,
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        if nonce:
            params["nonce"] = nonce
        return f"{self.auth_url}?{urllib.parse.urlencode(params)}"

    def _send(self, req: urllib.request.Request) -> Dict[str, Any]:
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as exc:
            raise ProviderRequestFailed(f"http_{exc.code}", status=exc.code) from exc
        except OSError as exc:
            # URLError, connection resets and socket timeouts
            raise ProviderRequestFailed(f"transport: {exc}") from exc
        try:
            payload = json.loads(body.decode("utf-8"))
        except ValueError as exc:
            raise ProviderRequestFailed("invalid_json") from exc
        if not isinstance(payload, dict):
            raise ProviderRequestFailed("invalid_payload")
        return payload

    def exchange_code(self, code: str, redirect_uri: str) -> ProviderTokens:
        data = urllib.parse.urlencode(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
            }
        ).encode("utf-8")
        req = urllib.request.Request(
            self.token_url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"},
            method="POST",
        )
        try:
            payload = self._send(req)
            parsed = GoogleTokenResponse.model_validate(payload)
        except ProviderRequestFailed as exc:
            logger.warning("Token exchange failed: %s", exc.reason)
            raise TokenExchangeFailed(details={"reason": exc.reason}) from exc
        except ValidationError as exc:
            logger.warning("Token exchange returned an unexpected payload")
            raise TokenExchangeFailed(details={"reason": "invalid_token_response"}) from exc
        return ProviderTokens(
            access_token=parsed.access_token,
            token_type=parsed.token_type,
            expires_in=parsed.expires_in,
            refresh_token=parsed.refresh_token,
            id_token=parsed.id_token,
            scope=parsed.scope,
        )

    def fetch_identity(self, access_token: str) -> Identity:
        req = urllib.request.Request(
            self.userinfo_url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            method="GET",
        )
        try:
            payload = self._send(req)
            info = GoogleUserInfo.model_validate(payload)
        except ProviderRequestFailed as exc:
            logger.warning("User info request failed: %s", exc.reason)
            raise UserInfoFailed(details={"reason": exc.reason}) from exc
        except ValidationError as exc:
            logger.warning("User info response is missing required fields")
            raise UserInfoFailed(details={"reason": "invalid_user_info"}) from exc

        email = normalize_email(info.email)
        if not email:
            raise UserInfoFailed(details={"reason": "missing_email"})
        if not info.verified_email:
            raise EmailNotVerified(details={"email": email})
        return Identity(
            provider_id=info.id,
            email=email,
            display_name=info.name or email,
            avatar_url=info.picture or None,
            email_verified=True,
        )

    def _certs_transport(self):
        # google-auth fetches signing certs with a 120 s default timeout.
        return functools.partial(google_requests.Request(), timeout=self.timeout)

    def verify_id_token(self, raw_id_token: str, expected_nonce: str) -> Dict[str, Any]:
        try:
            claims = google_id_token.verify_oauth2_token(
                raw_id_token,
                self._certs_transport(),
                self.client_id,
            )
        except (ValueError, google_exceptions.GoogleAuthError) as exc:
            logger.warning("ID token verification failed: %s", exc)
            raise TokenExchangeFailed(details={"reason": "invalid_id_token"}) from exc
        if str(claims.get("iss", "")) not in DEFAULT_GOOGLE_ISSUERS:
            raise TokenExchangeFailed(details={"reason": "invalid_issuer"})
        if str(claims.get("nonce", "")) != expected_nonce:
            raise TokenExchangeFailed(details={"reason": "invalid_nonce"})
        return claims
