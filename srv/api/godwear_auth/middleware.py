from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from .config import AuthConfig
from .errors import AuthenticationRequired, ConfigurationError, InsufficientPermissions
from .models import CallbackResult, RequestInfo, User
from .service import STATE_COOKIE_MAX_AGE_SECONDS, AuthService


def get_service(request: Request) -> AuthService:
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        raise ConfigurationError("Authentication service is not initialized")
    return service


def attach_auth_context(request: Request) -> None:
    """Resolve the session cookie once per request onto ``request.state``."""
    request.state.auth_user = None
    request.state.clear_auth_cookie = False
    service = getattr(request.app.state, "auth_service", None)
    if service is None:
        return
    cfg = service.config
    token = request.cookies.get(cfg.session_cookie_name)
    if not token:
        return
    user = service.validate_session(token, request.cookies.get(cfg.session_id_cookie_name))
    if user is None:
        request.state.clear_auth_cookie = True
        return
    request.state.auth_user = user


def current_user(request: Request) -> Optional[User]:
    return getattr(request.state, "auth_user", None)


def require_auth(request: Request) -> User:
    user = current_user(request)
    if user is None:
        raise AuthenticationRequired(redirect_to=get_service(request).config.login_path)
    return user


def require_admin(request: Request) -> User:
    user = require_auth(request)
    service = get_service(request)
    if not service.is_admin(user):
        service.record_access_denied(user, RequestInfo.from_request(request))
        raise InsufficientPermissions()
    return user


def optional_auth(request: Request) -> Optional[User]:
    # Invalid cookies are already flagged for clearing by attach_auth_context.
    return current_user(request)


def set_state_cookie(response: Response, cfg: AuthConfig, value: str) -> None:
    response.set_cookie(
        key=cfg.state_cookie_name,
        value=value,
        max_age=STATE_COOKIE_MAX_AGE_SECONDS,
        secure=cfg.cookie_secure,
        httponly=True,
        samesite=cfg.cookie_samesite,
        path=cfg.state_cookie_path,
        domain=cfg.cookie_domain,
    )


def set_session_cookies(response: Response, cfg: AuthConfig, result: CallbackResult) -> None:
    max_age = cfg.token_ttl_hours * 3600
    for name, value in ((cfg.session_cookie_name, result.token), (cfg.session_id_cookie_name, result.session_id)):
        response.set_cookie(
            key=name,
            value=value,
            max_age=max_age,
            secure=cfg.cookie_secure,
            httponly=True,
            samesite=cfg.cookie_samesite,
            path="/",
            domain=cfg.cookie_domain,
        )


def clear_state_cookie(response: Response, cfg: AuthConfig) -> None:
    response.delete_cookie(
        key=cfg.state_cookie_name,
        path=cfg.state_cookie_path,
        domain=cfg.cookie_domain,
        secure=cfg.cookie_secure,
        httponly=True,
        samesite=cfg.cookie_samesite,
    )


def clear_auth_cookies(response: Response, cfg: AuthConfig, *, include_state: bool = False) -> None:
    for name in (cfg.session_cookie_name, cfg.session_id_cookie_name):
        response.delete_cookie(
            key=name,
            path="/",
            domain=cfg.cookie_domain,
            secure=cfg.cookie_secure,
            httponly=True,
            samesite=cfg.cookie_samesite,
        )
    if include_state:
        clear_state_cookie(response, cfg)
