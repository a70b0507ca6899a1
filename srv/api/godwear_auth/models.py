# Data records shared by the authentication components.

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Dict, NamedTuple, Optional

from fastapi import Request

from .utils import to_iso


USER_STATUSES = ("active", "inactive", "suspended")


@dataclass(frozen=True)
class Identity:
    """Profile returned by the provider for one login; never stored verbatim."""

    provider_id: str
    email: str
    display_name: str
    avatar_url: Optional[str] = None
    email_verified: bool = False


@dataclass(frozen=True)
class ProviderTokens:
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: str = ""


@dataclass
class User:
    id: str
    email: str
    name: str
    picture: Optional[str]
    email_verified: bool
    status: str
    last_login_at: Optional[str]
    created_at: str
    updated_at: str

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_public(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "emailVerified": self.email_verified,
            "status": self.status,
            "lastLoginAt": self.last_login_at,
            "createdAt": self.created_at,
        }
        if self.picture:
            data["picture"] = self.picture
        return data


@dataclass
class SessionRecord:
    id: str
    user_id: str
    token_hash: str
    expires_at: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    is_active: bool
    created_at: str
    updated_at: str

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "expiresAt": self.expires_at,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }


@dataclass
class AuditEntry:
    id: int
    user_id: Optional[str]
    action: str
    resource_type: str
    resource_id: Optional[str]
    before_values: Optional[Dict[str, Any]]
    after_values: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    user_agent: Optional[str]
    request_id: Optional[str]
    created_at: str

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "beforeValues": self.before_values,
            "afterValues": self.after_values,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "requestId": self.request_id,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class OAuthStateEntry:
    """Contents of the signed ``oauth_state`` cookie."""

    state: str
    nonce: str
    next_path: str
    issued_at: int


class AuthorizationRedirect(NamedTuple):
    url: str
    state: str
    cookie_value: str


@dataclass(frozen=True)
class RequestInfo:
    """The slice of an HTTP request the auth core needs for audit and redirects."""

    ip_address: str = ""
    user_agent: str = ""
    base_url: str = ""
    path: str = ""
    method: str = ""
    request_id: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestInfo":
        headers = request.headers
        ip_address = headers.get("cf-connecting-ip", "").strip()
        if not ip_address:
            forwarded = headers.get("x-forwarded-for", "")
            ip_address = forwarded.split(",")[0].strip() if forwarded else ""
        if not ip_address and request.client:
            ip_address = request.client.host
        return cls(
            ip_address=ip_address,
            user_agent=headers.get("user-agent", ""),
            base_url=str(request.base_url),
            path=str(request.url.path),
            method=request.method,
            request_id=getattr(request.state, "request_id", None),
        )


@dataclass
class CallbackResult:
    user: User
    token: str
    session_id: str
    is_new_user: bool
    expires_at: dt.datetime
    next_path: str = "/"
    success: bool = field(default=True)

    def to_public(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "user": self.user.to_public(),
            "isNewUser": self.is_new_user,
            "expiresAt": to_iso(self.expires_at),
        }
