from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Optional
from urllib.parse import urlencode

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from . import middleware as auth_middleware
from .config import configure_logging, load_config
from .errors import AuthError, AuthenticationRequired
from .middleware import (
    clear_auth_cookies,
    clear_state_cookie,
    get_service,
    optional_auth,
    require_admin,
    require_auth,
    set_session_cookies,
    set_state_cookie,
)
from .models import RequestInfo, User
from .service import AuthService, build_service
from .utils import SERVICE_NAME, error_body, success_body


logger = logging.getLogger(__name__)


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "").lower()


def _ok(request: Request, data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=success_body(data, service=SERVICE_NAME, request_id=_request_id(request)),
    )


def _error_response(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(
            exc.code,
            exc.message,
            details=exc.details,
            service=SERVICE_NAME,
            request_id=_request_id(request),
        ),
    )


router = APIRouter(prefix="/auth")


@router.get("/login")
def auth_login(
    request: Request,
    next_path: Optional[str] = Query(default=None, alias="next"),
):
    service = get_service(request)
    cfg = service.config
    redirect = service.generate_authorization_url(RequestInfo.from_request(request), next_path=next_path)
    if _wants_html(request):
        response = RedirectResponse(url=redirect.url, status_code=302)
    else:
        response = _ok(request, {"redirectUrl": redirect.url, "provider": cfg.provider})
    set_state_cookie(response, cfg, redirect.cookie_value)
    return response


def _callback_failure(request: Request, service: AuthService, failure: AuthError):
    if _wants_html(request):
        target = f"{service.config.error_redirect}?{urlencode({'error': failure.code})}"
        response = RedirectResponse(url=target, status_code=302)
    else:
        response = _error_response(request, failure)
    clear_state_cookie(response, service.config)
    return response


@router.get("/callback")
def auth_callback(
    request: Request,
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
):
    service = get_service(request)
    cfg = service.config
    info = RequestInfo.from_request(request)

    if error or not code:
        failure = service.reject_provider_error(
            error or "missing_code",
            error_description or (None if error else "Authorization code missing"),
            info,
        )
        return _callback_failure(request, service, failure)

    stored = service.open_state_cookie(request.cookies.get(cfg.state_cookie_name))
    result, failure = service.process_callback(
        code,
        state,
        stored.state if stored else None,
        info,
        nonce=stored.nonce if stored else None,
        next_path=stored.next_path if stored else None,
    )
    if failure is not None:
        return _callback_failure(request, service, failure)

    if _wants_html(request):
        response = RedirectResponse(url=result.next_path, status_code=302)
    else:
        response = _ok(request, result.to_public())
    set_session_cookies(response, cfg, result)
    clear_state_cookie(response, cfg)
    return response


def _logout(request: Request) -> AuthService:
    service = get_service(request)
    cfg = service.config
    service.logout(
        request.cookies.get(cfg.session_cookie_name),
        request.cookies.get(cfg.session_id_cookie_name),
        RequestInfo.from_request(request),
    )
    # The logout response clears cookies itself.
    request.state.clear_auth_cookie = False
    return service


@router.get("/logout")
def auth_logout_redirect(request: Request):
    service = _logout(request)
    response = RedirectResponse(url="/?logout=success", status_code=302)
    clear_auth_cookies(response, service.config, include_state=True)
    return response


@router.post("/logout")
def auth_logout(request: Request):
    cfg = _logout(request).config
    cleared = [cfg.session_cookie_name, cfg.session_id_cookie_name, cfg.state_cookie_name]
    response = _ok(request, {"message": "Logged out successfully", "cleared": cleared})
    clear_auth_cookies(response, cfg, include_state=True)
    return response


@router.get("/user")
def auth_user(request: Request, user: Optional[User] = Depends(optional_auth)):
    if user is None:
        return JSONResponse(status_code=401, content={"authenticated": False})
    return {"authenticated": True, "user": user.to_public()}


@router.get("/session")
def auth_session(request: Request, user: User = Depends(require_auth)):
    service = get_service(request)
    record = service.find_session(request.cookies.get(service.config.session_id_cookie_name))
    return _ok(
        request,
        {
            "user": user.to_public(),
            "session": record.to_public() if record is not None else None,
            "isAdmin": service.is_admin(user),
        },
    )


@router.get("/audit")
def auth_audit(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    before_id: Optional[int] = Query(default=None, ge=1),
    action: Optional[str] = Query(default=None, min_length=1, max_length=128),
    user_id: Optional[str] = Query(default=None, min_length=1, max_length=128),
    admin: User = Depends(require_admin),
):
    entries = get_service(request).list_audit_entries(
        limit=limit,
        action=action.strip() if action else None,
        user_id=user_id.strip() if user_id else None,
        before_id=before_id,
    )
    items = [entry.to_public() for entry in entries]
    next_before_id = items[-1]["id"] if len(items) == limit else None
    return _ok(request, {"items": items, "limit": limit, "nextBeforeId": next_before_id})


@router.get("/health")
def auth_health(request: Request):
    return get_service(request).health()


def create_app(service: Optional[AuthService] = None) -> FastAPI:
    app = FastAPI(title="GodWear Auth", version="1.0.0")
    app.state.auth_service = service

    @app.on_event("startup")
    def startup_checks():
        if app.state.auth_service is not None:
            return
        configure_logging()
        cfg = load_config()
        cfg.validate()
        app.state.auth_service = build_service(cfg)
        logger.info("Auth service started (environment=%s)", cfg.environment)

    @app.middleware("http")
    async def attach_auth_context(request: Request, call_next):
        try:
            auth_middleware.attach_auth_context(request)
        except AuthError:
            logger.exception("Auth context could not be resolved")
            request.state.auth_user = None
            request.state.clear_auth_cookie = True
        response = await call_next(request)
        auth_service = request.app.state.auth_service
        if getattr(request.state, "clear_auth_cookie", False) and auth_service is not None:
            clear_auth_cookies(response, auth_service.config)
        return response

    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(AuthenticationRequired)
    async def authentication_required_handler(request: Request, exc: AuthenticationRequired):
        response = RedirectResponse(url=exc.redirect_to, status_code=302)
        auth_service = request.app.state.auth_service
        if auth_service is not None:
            clear_auth_cookies(response, auth_service.config)
        request.state.clear_auth_cookie = False
        return response

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        if exc.status_code >= 500:
            logger.error("%s: %s", exc.code, exc.message)
        return _error_response(request, exc)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if isinstance(exc.detail, dict):
            code = exc.detail.get("code", "BAD_REQUEST")
            message = exc.detail.get("message", "Bad request")
            details = exc.detail.get("details", {})
        else:
            code = "NOT_FOUND" if exc.status_code == 404 else "BAD_REQUEST"
            message = exc.detail if isinstance(exc.detail, str) else "Bad request"
            details = {}
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(code, message, details=details, service=SERVICE_NAME, request_id=_request_id(request)),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body(
                "INTERNAL_SERVER_ERROR",
                "Internal server error",
                service=SERVICE_NAME,
                request_id=_request_id(request),
            ),
        )

    cors_origins = ["*"]
    raw_cors = os.getenv("GODWEAR_CORS_ORIGINS")
    if raw_cors:
        cors_origins = [origin.strip() for origin in raw_cors.split(",") if origin.strip()]
    allow_credentials = cors_origins != ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "godwear_auth.main:app",
        host=os.getenv("GODWEAR_HOST", "127.0.0.1"),
        port=int(os.getenv("GODWEAR_PORT", "8000")),
    )
