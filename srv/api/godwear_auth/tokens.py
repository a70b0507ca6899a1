"""HS256 session tokens in compact JWT form.

``header.payload.signature``, each segment base64url without padding. The
signature is HMAC-SHA256 over the first two segments as they appear on the
wire, so any change to either segment fails verification before the payload
is ever decoded.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Optional

from .errors import ConfigurationError, InvalidSignature, MalformedToken, TokenExpired
from .utils import b64url_decode, b64url_encode, compact_json


ALGORITHM = "HS256"
TOKEN_TYPE = "JWT"
DEFAULT_TTL_SECONDS = 24 * 3600


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ConfigurationError("Token signing secret is not configured")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        return b64url_encode(digest)

    def sign(self, payload: Dict[str, Any]) -> str:
        iat = payload.get("iat")
        exp = payload.get("exp")
        if not isinstance(iat, int) or not isinstance(exp, int):
            raise ValueError("payload requires integer iat and exp")
        if exp <= iat:
            raise ValueError("exp must be later than iat")
        header = {"alg": ALGORITHM, "typ": TOKEN_TYPE}
        signing_input = f"{b64url_encode(compact_json(header))}.{b64url_encode(compact_json(payload))}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> Dict[str, Any]:
        parts = (token or "").split(".")
        if len(parts) != 3:
            raise MalformedToken("Token must have three segments")
        header_b64, payload_b64, signature_b64 = parts

        expected = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), signature_b64.encode("utf-8")):
            raise InvalidSignature()

        try:
            header = json.loads(b64url_decode(header_b64))
            payload = json.loads(b64url_decode(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("Token segments are not valid JSON") from exc
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            raise MalformedToken("Unsupported token algorithm")
        if not isinstance(payload, dict):
            raise MalformedToken("Token payload must be an object")

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)):
            raise MalformedToken("Token has no expiry")
        if self._clock() >= exp:
            raise TokenExpired()

        if self.issuer and payload.get("iss") != self.issuer:
            raise MalformedToken("Unexpected token issuer")
        if self.audience and payload.get("aud") != self.audience:
            raise MalformedToken("Unexpected token audience")
        return payload
