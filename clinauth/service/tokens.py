"""Compact HS256 tokens with typed claims.

Access and refresh tokens are signed with separate secrets. Decoded payloads
are validated against a closed claims model; unknown or missing fields make
the token malformed.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from clinauth.logging import get_logger

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class TokenError(Exception):
    """Base class for token verification failures."""


class MalformedToken(TokenError):
    """Structure, signature or claims schema check failed."""


class ExpiredToken(TokenError):
    """Signature is valid but the embedded expiry has passed."""

    def __init__(self, message: str, claims: "BaseClaims | None" = None) -> None:
        super().__init__(message)
        self.claims = claims


class BaseClaims(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    user_id: str = Field(alias="userId")
    session_id: str = Field(alias="sessionId")
    iat: int
    exp: int
    iss: str
    aud: str
    jti: str


class AccessClaims(BaseClaims):
    typ: Literal["access"] = "access"
    role: str
    permissions: List[str] = Field(default_factory=list)


class RefreshClaims(BaseClaims):
    typ: Literal["refresh"] = "refresh"
    token_version: int = Field(alias="tokenVersion", ge=1)


C = TypeVar("C", bound=BaseClaims)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> bytes:
    return hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()


def issue_token(claims: BaseClaims, secret: str) -> str:
    """Serialize and sign ``claims``; expiry is whatever the claims carry."""
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload = claims.model_dump(by_alias=True)
    payload_enc = _encode_segment(
        json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    )
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_encode_segment(_sign(secret, signing_input))}"


def verify_token(
    token: str,
    secret: str,
    claims_model: Type[C],
    *,
    now: Optional[datetime] = None,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
    allow_expired: bool = False,
) -> C:
    """Return validated claims or raise ``MalformedToken`` / ``ExpiredToken``."""
    if not isinstance(token, str) or token.count(".") != 2:
        raise MalformedToken("token must have three segments")
    header_b64, payload_b64, sig_b64 = token.split(".")

    try:
        header = json.loads(_decode_segment(header_b64))
    except (ValueError, TypeError) as exc:
        raise MalformedToken("token header is not valid JSON") from exc
    if not isinstance(header, dict):
        raise MalformedToken("token header must be an object")
    # Pin the algorithm; never let the token choose it
    if header.get("alg") != "HS256":
        logger.warning("token_invalid_algorithm", alg=header.get("alg"))
        raise MalformedToken("unsupported token algorithm")

    try:
        provided_sig = _decode_segment(sig_b64)
    except (ValueError, TypeError) as exc:
        raise MalformedToken("token signature is not valid base64") from exc
    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig, provided_sig):
        raise MalformedToken("token signature mismatch")

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except (ValueError, TypeError) as exc:
        raise MalformedToken("token payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedToken("token payload must be an object")
    try:
        claims = claims_model.model_validate(payload)
    except PydanticValidationError as exc:
        logger.warning("token_claims_rejected", errors=exc.error_count())
        raise MalformedToken("token claims do not match schema") from exc

    if issuer is not None and claims.iss != issuer:
        raise MalformedToken("token issuer mismatch")
    if audience is not None and claims.aud != audience:
        raise MalformedToken("token audience mismatch")

    current = int((now or datetime.now(timezone.utc)).timestamp())
    if current > claims.exp and not allow_expired:
        raise ExpiredToken("token has expired", claims)
    return claims


class TokenCodec:
    """Issues and verifies access/refresh tokens under their own secrets."""

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl_seconds: int,
        refresh_ttl_seconds: int,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._access_secret = access_secret
        self._refresh_secret = refresh_secret
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _window(self, ttl_seconds: int) -> tuple[int, int]:
        iat = int(self._clock().timestamp())
        return iat, iat + ttl_seconds

    def issue_access(
        self, user_id: str, role: str, session_id: str, permissions: List[str]
    ) -> tuple[str, AccessClaims]:
        iat, exp = self._window(self.access_ttl_seconds)
        claims = AccessClaims(
            user_id=user_id,
            session_id=session_id,
            role=role,
            permissions=list(permissions),
            iat=iat,
            exp=exp,
            iss=self.issuer,
            aud=self.audience,
            jti=str(uuid.uuid4()),
        )
        return issue_token(claims, self._access_secret), claims

    def issue_refresh(
        self, user_id: str, session_id: str, token_version: int
    ) -> tuple[str, RefreshClaims]:
        iat, exp = self._window(self.refresh_ttl_seconds)
        claims = RefreshClaims(
            user_id=user_id,
            session_id=session_id,
            token_version=token_version,
            iat=iat,
            exp=exp,
            iss=self.issuer,
            aud=self.audience,
            jti=str(uuid.uuid4()),
        )
        return issue_token(claims, self._refresh_secret), claims

    def verify_access(self, token: str) -> AccessClaims:
        return verify_token(
            token,
            self._access_secret,
            AccessClaims,
            now=self._clock(),
            issuer=self.issuer,
            audience=self.audience,
        )

    def verify_refresh(self, token: str, *, allow_expired: bool = False) -> RefreshClaims:
        return verify_token(
            token,
            self._refresh_secret,
            RefreshClaims,
            now=self._clock(),
            issuer=self.issuer,
            audience=self.audience,
            allow_expired=allow_expired,
        )
