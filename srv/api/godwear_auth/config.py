from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Optional

from .errors import ConfigurationError
from .utils import normalize_email


logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parents[3]
ENVIRONMENTS = ("production", "staging", "development")
DEFAULT_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
DEFAULT_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
CALLBACK_PATH = "/auth/callback"


def parse_env_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if lowered in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _parse_env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _parse_env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _parse_csv_env(var_name: str) -> List[str]:
    raw = os.getenv(var_name, "")
    if not raw:
        return []
    values = []
    for part in raw.split(","):
        item = part.strip()
        if item:
            values.append(item)
    return values


def _get_cookie_samesite() -> str:
    raw = os.getenv("GODWEAR_COOKIE_SAMESITE", "lax").strip().lower()
    if raw not in {"lax", "strict", "none"}:
        return "lax"
    return raw


def safe_local_path(path: str | None, fallback: str) -> str:
    if not path:
        return fallback
    value = path.strip()
    if not value.startswith("/"):
        return fallback
    if value.startswith("//"):
        return fallback
    return value


def _origin_for_domain(domain: str) -> str:
    value = domain.strip().rstrip("/")
    if "://" not in value:
        value = f"https://{value}"
    return value


@dataclass(frozen=True)
class AuthConfig:
    environment: str = "development"
    google_client_id: str = ""
    google_client_secret: str = ""
    redirect_uri: str = ""
    production_domain: str = ""
    staging_domain: str = ""
    development_domain: str = ""
    jwt_secret: str = ""
    token_issuer: str = "godwear-auth"
    token_audience: str = "godwear-app"
    token_ttl_hours: int = 24
    admin_emails: FrozenSet[str] = field(default_factory=frozenset)
    db_path: str = str(ROOT_DIR / "data" / "auth.sqlite3")
    session_cookie_name: str = "session"
    session_id_cookie_name: str = "session_id"
    state_cookie_name: str = "oauth_state"
    state_cookie_path: str = "/auth"
    cookie_secure: bool = True
    cookie_samesite: str = "lax"
    cookie_domain: Optional[str] = None
    login_path: str = "/auth/login"
    success_redirect: str = "/"
    error_redirect: str = "/"
    http_timeout_seconds: float = 10.0
    auth_url: str = DEFAULT_GOOGLE_AUTH_URL
    token_url: str = DEFAULT_GOOGLE_TOKEN_URL
    userinfo_url: str = DEFAULT_GOOGLE_USERINFO_URL
    provider: str = "google"

    @property
    def provider_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def signing_configured(self) -> bool:
        return bool(self.jwt_secret)

    def is_admin(self, email: str) -> bool:
        return normalize_email(email) in self.admin_emails

    def resolve_redirect_uri(self, request_base_url: str = "") -> str:
        if self.redirect_uri:
            return self.redirect_uri
        domain = {
            "production": self.production_domain,
            "staging": self.staging_domain,
            "development": self.development_domain,
        }.get(self.environment, "")
        if domain:
            return f"{_origin_for_domain(domain)}{CALLBACK_PATH}"
        return f"{request_base_url.rstrip('/')}{CALLBACK_PATH}"

    def validate(self) -> None:
        if self.environment not in ENVIRONMENTS:
            raise ConfigurationError(f"Unknown environment: {self.environment}")
        if not self.signing_configured:
            if self.environment != "development":
                raise ConfigurationError("GODWEAR_JWT_SECRET is required outside development")
            logger.warning("GODWEAR_JWT_SECRET is not set; session tokens cannot be issued")
        if not self.provider_configured:
            logger.warning("Google OAuth credentials are not set; /auth/login will fail")
        if not self.admin_emails:
            logger.info("Admin allow-list is empty")


def load_config() -> AuthConfig:
    environment = os.getenv("GODWEAR_ENV", "development").strip().lower() or "development"
    cookie_secure = parse_env_bool(
        os.getenv("GODWEAR_COOKIE_SECURE"),
        default=environment != "development",
    )
    admin_emails = frozenset(normalize_email(item) for item in _parse_csv_env("GODWEAR_ADMIN_EMAILS"))
    db_path = os.getenv("GODWEAR_DB_PATH", "").strip()
    if not db_path:
        state_dir = os.getenv("GODWEAR_STATE_DIR") or str(ROOT_DIR / "data")
        db_path = str(Path(state_dir).expanduser() / "auth.sqlite3")
    return AuthConfig(
        environment=environment,
        google_client_id=os.getenv("GODWEAR_GOOGLE_CLIENT_ID", "").strip(),
        google_client_secret=os.getenv("GODWEAR_GOOGLE_CLIENT_SECRET", "").strip(),
        redirect_uri=os.getenv("GODWEAR_OAUTH_REDIRECT_URI", "").strip(),
        production_domain=os.getenv("GODWEAR_PRODUCTION_DOMAIN", "").strip(),
        staging_domain=os.getenv("GODWEAR_STAGING_DOMAIN", "").strip(),
        development_domain=os.getenv("GODWEAR_DEVELOPMENT_DOMAIN", "").strip(),
        jwt_secret=os.getenv("GODWEAR_JWT_SECRET", "").strip(),
        token_ttl_hours=_parse_env_int("GODWEAR_TOKEN_TTL_HOURS", 24),
        admin_emails=admin_emails,
        db_path=db_path,
        cookie_secure=cookie_secure,
        cookie_samesite=_get_cookie_samesite(),
        cookie_domain=os.getenv("GODWEAR_COOKIE_DOMAIN", "").strip() or None,
        login_path=safe_local_path(os.getenv("GODWEAR_LOGIN_PATH"), "/auth/login"),
        success_redirect=safe_local_path(os.getenv("GODWEAR_SUCCESS_REDIRECT"), "/"),
        error_redirect=safe_local_path(os.getenv("GODWEAR_ERROR_REDIRECT"), "/"),
        http_timeout_seconds=_parse_env_float("GODWEAR_HTTP_TIMEOUT_SECONDS", 10.0),
    )


def configure_logging() -> None:
    level_name = os.getenv("GODWEAR_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
