from __future__ import annotations

import base64
import datetime as dt
import hashlib
import json
from typing import Any, Dict, Optional


SERVICE_NAME = "godwear-auth"
SERVICE_VERSION = "1.0.0"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime) -> str:
    return value.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> dt.datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def from_timestamp(value: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(value, tz=dt.timezone.utc)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("ascii"))


def compact_json(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def success_body(
    data: Any,
    *,
    service: str,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "meta": {
            "timestamp": to_iso(utc_now()),
            "service": service,
            "version": SERVICE_VERSION,
            "request_id": request_id,
        },
    }


def error_body(
    code: str,
    message: str,
    *,
    details: Optional[Dict[str, Any]] = None,
    service: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
            "timestamp": to_iso(utc_now()),
            "service": service,
            "request_id": request_id,
        },
    }
