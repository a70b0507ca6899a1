"""Login orchestration.

A login attempt moves through: state verified, code exchanged, identity
fetched, user resolved, token issued, session persisted. Any failure before
the session write leaves no session behind, and every failed branch writes an
audit entry before returning. ``AuthService`` does not raise for
authentication failures: ``process_callback`` returns ``(result, error)`` and
``validate_session`` returns ``None``.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import logging
import secrets
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditLog
from .config import AuthConfig, safe_local_path
from .errors import (
    AuthError,
    ConfigurationError,
    DatabaseError,
    EmailNotVerified,
    InsufficientPermissions,
    InvalidState,
    InvalidToken,
    OAuthProviderError,
    TokenExchangeFailed,
    UserInfoFailed,
)
from .models import (
    AuditEntry,
    AuthorizationRedirect,
    CallbackResult,
    OAuthStateEntry,
    RequestInfo,
    SessionRecord,
    User,
)
from .notifications import LoggingNotifier, WelcomeNotifier
from .oauth import GoogleOAuthClient
from .sessions import SessionStore, hash_token
from .store import Database
from .tokens import TokenCodec
from .users import UserDirectory
from .utils import SERVICE_NAME, SERVICE_VERSION, b64url_decode, b64url_encode, to_iso, utc_now


logger = logging.getLogger(__name__)

STATE_COOKIE_MAX_AGE_SECONDS = 600

CallbackOutcome = Tuple[Optional[CallbackResult], Optional[AuthError]]


class AuthService:
    def __init__(
        self,
        config: AuthConfig,
        *,
        oauth_client: GoogleOAuthClient,
        users: UserDirectory,
        sessions: SessionStore,
        audit: AuditLog,
        codec: Optional[TokenCodec] = None,
        notifier: Optional[WelcomeNotifier] = None,
        database: Optional[Database] = None,
        clock: Callable[[], dt.datetime] = utc_now,
    ):
        self.config = config
        self.oauth_client = oauth_client
        self.users = users
        self.sessions = sessions
        self.audit = audit
        self.codec = codec
        self.notifier = notifier or LoggingNotifier()
        self.database = database
        self._clock = clock

    # state cookie

    def _state_signature(self, payload_b64: str) -> str:
        return hmac.new(
            self.config.jwt_secret.encode("utf-8"),
            payload_b64.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def seal_state(self, entry: OAuthStateEntry) -> str:
        payload = {"state": entry.state, "nonce": entry.nonce, "next": entry.next_path, "iat": entry.issued_at}
        raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        payload_b64 = b64url_encode(raw)
        return f"{payload_b64}.{self._state_signature(payload_b64)}"

    def open_state_cookie(self, cookie_value: Optional[str]) -> Optional[OAuthStateEntry]:
        """Return the sealed state, or None when missing, forged or older than ten minutes."""
        if not cookie_value or "." not in cookie_value or not self.config.signing_configured:
            return None
        payload_b64, sig = cookie_value.rsplit(".", 1)
        # Cookie values arrive latin-1 decoded and may hold any character.
        if not hmac.compare_digest(sig.encode("utf-8"), self._state_signature(payload_b64).encode("utf-8")):
            logger.warning("OAuth state cookie signature mismatch")
            return None
        try:
            payload = json.loads(b64url_decode(payload_b64))
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        try:
            issued_at = int(payload.get("iat", 0))
        except (TypeError, ValueError):
            return None
        age = int(self._clock().timestamp()) - issued_at
        if issued_at <= 0 or age > STATE_COOKIE_MAX_AGE_SECONDS:
            logger.info("OAuth state cookie expired (age=%ss)", age)
            return None
        return OAuthStateEntry(
            state=str(payload.get("state", "")),
            nonce=str(payload.get("nonce", "")),
            next_path=safe_local_path(str(payload.get("next", "")), self.config.success_redirect),
            issued_at=issued_at,
        )

    # login

    def generate_authorization_url(
        self,
        request: RequestInfo,
        next_path: Optional[str] = None,
    ) -> AuthorizationRedirect:
        if not self.config.provider_configured:
            raise ConfigurationError("Google OAuth credentials are not configured")
        if not self.config.signing_configured:
            raise ConfigurationError("Token signing secret is not configured")
        state = secrets.token_urlsafe(24)
        entry = OAuthStateEntry(
            state=state,
            nonce=secrets.token_urlsafe(24),
            next_path=safe_local_path(next_path, self.config.success_redirect),
            issued_at=int(self._clock().timestamp()),
        )
        redirect_uri = self.config.resolve_redirect_uri(request.base_url)
        url = self.oauth_client.build_authorization_url(redirect_uri, state, nonce=entry.nonce)
        logger.debug("Issued OAuth state for %s", request.ip_address or "unknown client")
        return AuthorizationRedirect(url=url, state=state, cookie_value=self.seal_state(entry))

    def reject_provider_error(
        self,
        error: str,
        description: Optional[str],
        request: RequestInfo,
    ) -> OAuthProviderError:
        logger.warning("OAuth provider returned error %s", error)
        self.audit.record(
            "oauth_provider_error",
            after={"error": error, "description": description},
            request=request,
        )
        return OAuthProviderError(details={"error": error, "description": description})

    def process_callback(
        self,
        code: str,
        state: Optional[str],
        stored_state: Optional[str],
        request: RequestInfo,
        *,
        nonce: Optional[str] = None,
        next_path: Optional[str] = None,
    ) -> CallbackOutcome:
        if not stored_state or not state or not hmac.compare_digest(
            state.encode("utf-8"), stored_state.encode("utf-8")
        ):
            reason = "missing_state" if not stored_state else "state_mismatch"
            logger.warning("OAuth state rejected (%s) from %s", reason, request.ip_address or "unknown client")
            self.audit.record("oauth_state_mismatch", after={"reason": reason}, request=request)
            return None, InvalidState()

        if self.codec is None:
            logger.error("OAuth callback cannot issue a session: signing secret missing")
            self.audit.record("oauth_callback_failed", after={"reason": "signing_not_configured"}, request=request)
            return None, ConfigurationError("Token signing secret is not configured")

        redirect_uri = self.config.resolve_redirect_uri(request.base_url)
        try:
            tokens = self.oauth_client.exchange_code(code, redirect_uri)
            if tokens.id_token and nonce:
                self.oauth_client.verify_id_token(tokens.id_token, nonce)
        except TokenExchangeFailed as exc:
            self.audit.record("oauth_token_exchange_failed", after=exc.details, request=request)
            return None, exc

        try:
            identity = self.oauth_client.fetch_identity(tokens.access_token)
        except EmailNotVerified as exc:
            self.audit.record("oauth_email_not_verified", after=exc.details, request=request)
            return None, exc
        except UserInfoFailed as exc:
            self.audit.record("oauth_user_info_failed", after=exc.details, request=request)
            return None, exc
        if not identity.email_verified:
            error = EmailNotVerified(details={"email": identity.email})
            self.audit.record("oauth_email_not_verified", after=error.details, request=request)
            return None, error

        try:
            # Refused accounts keep their stored profile and last login untouched.
            existing = self.users.find_by_email(identity.email)
            if existing is not None and not existing.is_active:
                return None, self._refuse_inactive(existing, request)
            user, is_new_user = self.users.upsert(identity)
            if not user.is_active:
                return None, self._refuse_inactive(user, request)

            now = self._clock().replace(microsecond=0)
            ttl = dt.timedelta(hours=self.config.token_ttl_hours)
            expires_at = now + ttl
            claims = {
                "sub": user.id,
                "email": user.email,
                "name": user.name,
                "iss": self.config.token_issuer,
                "aud": self.config.token_audience,
                "iat": int(now.timestamp()),
                "exp": int(expires_at.timestamp()),
                "jti": uuid.uuid4().hex,
            }
            if user.picture:
                claims["picture"] = user.picture
            token = self.codec.sign(claims)
            session_id = self.sessions.create(
                user.id,
                hash_token(token),
                ttl,
                request.ip_address,
                request.user_agent,
                now=now,
            )
        except DatabaseError as exc:
            self.audit.record("oauth_callback_failed", after={"reason": exc.message}, request=request)
            return None, exc

        self.audit.record(
            "user_registered" if is_new_user else "user_login",
            resource_type="user",
            user_id=user.id,
            resource_id=user.id,
            after={"email": user.email, "provider": self.config.provider, "session_id": session_id},
            request=request,
        )
        if is_new_user:
            self._send_welcome(user, request)

        logger.info("User %s logged in (new=%s)", user.id, is_new_user)
        return (
            CallbackResult(
                user=user,
                token=token,
                session_id=session_id,
                is_new_user=is_new_user,
                expires_at=expires_at,
                next_path=safe_local_path(next_path, self.config.success_redirect),
            ),
            None,
        )

    def _refuse_inactive(self, user: User, request: RequestInfo) -> InsufficientPermissions:
        logger.warning("Login refused for %s user %s", user.status, user.id)
        self.audit.record(
            "oauth_user_inactive",
            resource_type="user",
            user_id=user.id,
            resource_id=user.id,
            after={"status": user.status},
            request=request,
        )
        return InsufficientPermissions("User account is not active")

    def _send_welcome(self, user: User, request: RequestInfo) -> None:
        try:
            self.notifier.send_welcome_email(email=user.email, name=user.name)
        except Exception as exc:
            logger.exception("Welcome email failed for user %s", user.id)
            self.audit.record(
                "welcome_email_failed",
                resource_type="user",
                user_id=user.id,
                resource_id=user.id,
                after={"error": str(exc)},
                request=request,
            )

    # sessions

    def validate_session(self, token: Optional[str], session_id: Optional[str] = None) -> Optional[User]:
        if not token or self.codec is None:
            return None
        try:
            payload = self.codec.verify(token)
        except InvalidToken as exc:
            logger.debug("Session token rejected: %s", exc.message)
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        try:
            if session_id:
                record = self.sessions.find_by_id(session_id)
                if record is None or record.user_id != subject:
                    return None
                if not self.sessions.is_usable(record, token, now=self._clock()):
                    return None
            user = self.users.find_by_id(subject)
        except DatabaseError:
            logger.warning("Session validation skipped: database unavailable")
            return None
        if user is None or not user.is_active:
            return None
        return user

    def invalidate_session(self, session_id: str) -> bool:
        return self.sessions.invalidate(session_id)

    def find_session(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        return self.sessions.find_by_id(session_id)

    def logout(self, token: Optional[str], session_id: Optional[str], request: RequestInfo) -> None:
        """Invalidate whatever session the caller presents. Never fails."""
        user_id = None
        if token and self.codec is not None:
            try:
                user_id = self.codec.verify(token).get("sub")
            except InvalidToken:
                user_id = None
        if session_id:
            try:
                self.invalidate_session(session_id)
            except DatabaseError:
                logger.warning("Logout could not invalidate session record")
        self.audit.record(
            "user_logout",
            resource_type="session",
            user_id=user_id,
            resource_id=session_id,
            request=request,
        )

    # authorization

    def is_admin(self, user: User) -> bool:
        return self.config.is_admin(user.email)

    def record_access_denied(self, user: User, request: RequestInfo) -> None:
        logger.warning("Admin access denied for user %s", user.id)
        self.audit.record(
            "admin_access_denied",
            user_id=user.id,
            resource_id=request.path or None,
            after={"method": request.method, "path": request.path},
            request=request,
        )

    def list_audit_entries(
        self,
        *,
        limit: int = 50,
        action: Optional[str] = None,
        user_id: Optional[str] = None,
        before_id: Optional[int] = None,
    ) -> List[AuditEntry]:
        return self.audit.list_entries(limit=limit, action=action, user_id=user_id, before_id=before_id)

    def health(self) -> Dict[str, Any]:
        database_ok = self.database.ping() if self.database is not None else False
        dependencies = {
            "google_oauth": "configured" if self.config.provider_configured else "missing",
            "jwt": "configured" if self.codec is not None else "missing",
            "database": "ok" if database_ok else "unavailable",
        }
        if not database_ok:
            status = "unhealthy"
        elif self.config.provider_configured and self.codec is not None:
            status = "healthy"
        else:
            status = "degraded"
        return {
            "status": status,
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "timestamp": to_iso(utc_now()),
            "dependencies": dependencies,
        }


def build_service(config: AuthConfig, *, notifier: Optional[WelcomeNotifier] = None) -> AuthService:
    database = Database(config.db_path)
    database.initialize()
    codec = None
    if config.signing_configured:
        codec = TokenCodec(config.jwt_secret, issuer=config.token_issuer, audience=config.token_audience)
    return AuthService(
        config,
        oauth_client=GoogleOAuthClient(config),
        users=UserDirectory(database),
        sessions=SessionStore(database),
        audit=AuditLog(database),
        codec=codec,
        notifier=notifier,
        database=database,
    )
