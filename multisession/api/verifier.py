"""Request-side token verification for FastAPI routes.

A ``Verifier`` extracts the bearer token from the request, resolves it to
claims through the configured backend and publishes both on
``request.state``. Any failure clears previously published state before the
error propagates, so a handler never sees stale claims.
"""

from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, Iterable, Optional, Sequence, Union

from fastapi import Request

from multisession.claims import AuthorityType, CustomClaims, MultiClaims
from multisession.logging import get_logger
from multisession.service.auth import Authentication
from multisession.service.errors import (
    ClaimsValidationError,
    EmptyTokenError,
    InvalidTokenError,
)
from multisession.service.runtime import get_runtime

logger = get_logger(__name__)

Claims = Union[CustomClaims, MultiClaims]
TokenExtractor = Callable[[Request], Awaitable[str]]
TokenValidator = Callable[[str], None]

CLAIMS_STATE_KEY = "multisession_claims"
TOKEN_STATE_KEY = "multisession_token"


async def from_header(request: Request) -> str:
    """Token from ``Authorization: Bearer <token>``; empty when absent or another scheme."""
    authorization = request.headers.get("Authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return credentials.strip()


def from_query(param: str = "token") -> TokenExtractor:
    async def _extract(request: Request) -> str:
        return request.query_params.get(param, "")

    return _extract


def from_json(key: str) -> TokenExtractor:
    """Token from a top-level string field of a JSON request body."""

    async def _extract(request: Request) -> str:
        if "json" not in request.headers.get("content-type", ""):
            return ""
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ""
        if not isinstance(body, dict):
            return ""
        value = body.get(key)
        return value if isinstance(value, str) else ""

    return _extract


def _default_auth() -> Authentication:
    return get_runtime().auth


class Verifier:
    """FastAPI dependency that authenticates the request.

    Usage::

        verify = Verifier()
        @router.get("/me")
        async def me(claims = Depends(verify)): ...
    """

    def __init__(
        self,
        extractors: Optional[Sequence[TokenExtractor]] = None,
        validators: Iterable[TokenValidator] = (),
        *,
        auth_provider: Callable[[], Authentication] = _default_auth,
    ) -> None:
        self.extractors = list(extractors) if extractors is not None else [from_header, from_query()]
        self.validators = list(validators)
        self.auth_provider = auth_provider

    async def request_token(self, request: Request) -> str:
        for extract in self.extractors:
            token = await extract(request)
            if token:
                return token
        return ""

    def verify_token(self, token: str) -> Claims:
        """Run the validators then resolve ``token`` through the backend.

        Raises:
            EmptyTokenError: no token was extracted
            InvalidTokenError: the token is unknown or fails signature, algorithm
                or expiry checks; validation flags are kept in ``detail``
        """
        if not token:
            raise EmptyTokenError()
        for validator in self.validators:
            validator(token)
        try:
            claims = self.auth_provider().fetch_claims(token)
        except ClaimsValidationError as exc:
            raise InvalidTokenError(exc.message, detail=exc.detail) from exc
        if claims is None or not claims.id:
            raise InvalidTokenError()
        return claims

    async def __call__(self, request: Request) -> Claims:
        token = await self.request_token(request)
        try:
            claims = await asyncio.to_thread(self.verify_token, token)
        except Exception:
            invalidate(request)
            logger.info("token_verification_failed", path=request.url.path, token_prefix=token[:8])
            raise
        setattr(request.state, CLAIMS_STATE_KEY, claims)
        setattr(request.state, TOKEN_STATE_KEY, token)
        return claims


def invalidate(request: Request) -> None:
    setattr(request.state, CLAIMS_STATE_KEY, None)
    setattr(request.state, TOKEN_STATE_KEY, None)


def get_claims(request: Request) -> Optional[Claims]:
    return getattr(request.state, CLAIMS_STATE_KEY, None)


def get_verified_token(request: Request) -> Optional[str]:
    return getattr(request.state, TOKEN_STATE_KEY, None)


def get_user_id(request: Request) -> int:
    """Numeric subject id of the verified session; 0 when absent or non-numeric."""
    claims = get_claims(request)
    if claims is None:
        return 0
    try:
        return int(claims.id)
    except ValueError:
        return 0


def get_username(request: Request) -> str:
    claims = get_claims(request)
    return claims.username if claims else ""


def get_authority_id(request: Request) -> str:
    claims = get_claims(request)
    return claims.authority_id if claims else ""


def get_authority_type(request: Request) -> int:
    claims = get_claims(request)
    return int(claims.authority_type) if claims else 0


def get_tenancy_id(request: Request) -> int:
    claims = get_claims(request)
    return claims.tenancy_id if claims else 0


def get_tenancy_name(request: Request) -> str:
    claims = get_claims(request)
    return claims.tenancy_name if claims else ""


def get_creation_date(request: Request) -> int:
    claims = get_claims(request)
    return claims.creation_date if claims else 0


def get_expires_in(request: Request) -> int:
    claims = get_claims(request)
    if isinstance(claims, CustomClaims):
        return claims.expires_in
    return 0


def _has_role(request: Request, authority_type: AuthorityType) -> bool:
    claims = get_claims(request)
    return claims is not None and claims.authority_type == authority_type


def is_admin(request: Request) -> bool:
    return _has_role(request, AuthorityType.ADMIN)


def is_tenancy(request: Request) -> bool:
    return _has_role(request, AuthorityType.TENANCY)


def is_general(request: Request) -> bool:
    return _has_role(request, AuthorityType.GENERAL)
