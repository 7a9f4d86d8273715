"""Stateless HS256 backend.

Claims travel inside the token, so nothing is stored and anything that
needs a session index (revocation, device limits, dedup) is unsupported.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, List, Optional, Tuple, Union

from multisession.claims import CustomClaims, MultiClaims, ValidationFlag
from multisession.logging import get_logger
from multisession.service.auth import RoleChecksMixin, require_token
from multisession.service.errors import (
    ClaimsValidationError,
    ServiceError,
    UnsupportedOperationError,
)
from multisession.service.tokens import b64_decode, b64_encode

logger = get_logger(__name__)

# Used only when no secret is configured; never rely on it outside development
DEFAULT_SAMPLE_SECRET = "updPA0L2uQ56LwHZoyUX"

_ALGORITHM = "HS256"


class JwtSecretMissingError(ServiceError):
    """No signing secret configured while one is required."""
    status_code = 500
    error_code = "server_error"


def _unsupported(operation: str) -> UnsupportedOperationError:
    return UnsupportedOperationError(
        f"{operation} is not supported by the jwt backend",
        detail={"operation": operation},
    )


def _as_multi_claims(claims: Union[CustomClaims, MultiClaims]) -> MultiClaims:
    if isinstance(claims, MultiClaims):
        return claims
    return MultiClaims(
        id=claims.id,
        username=claims.username,
        tenancy_id=claims.tenancy_id,
        tenancy_name=claims.tenancy_name,
        authority_id=claims.authority_id,
        authority_type=claims.authority_type,
        login_type=claims.login_type,
        auth_type=claims.auth_type,
        creation_date=claims.creation_date,
        expires_at=claims.creation_date + claims.expires_in // 1000,
    )


class JwtAuth(RoleChecksMixin):
    backend_name = "jwt"

    def __init__(self, secret: Optional[str] = None, *, require_secret: bool = False) -> None:
        if not secret:
            if require_secret:
                raise JwtSecretMissingError("JWT_SECRET must be set for the jwt backend")
            logger.warning("jwt_default_secret_in_use")
            secret = DEFAULT_SAMPLE_SECRET
        self._secret = secret.encode()

    def _sign(self, signing_input: str) -> str:
        return b64_encode(hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest())

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = b64_encode(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = b64_encode(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        # Headers arrive latin-1 decoded; base64url text is always ASCII
        if not token.isascii():
            raise ClaimsValidationError("token is malformed", ValidationFlag.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise ClaimsValidationError(
                "token is malformed", ValidationFlag.MALFORMED
            ) from exc

        try:
            header = json.loads(b64_decode(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise ClaimsValidationError(
                "token header is malformed", ValidationFlag.MALFORMED
            ) from exc
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise ClaimsValidationError(
                "unexpected signing method", ValidationFlag.UNVERIFIABLE
            )

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise ClaimsValidationError(
                "token signature is invalid", ValidationFlag.SIGNATURE_INVALID
            )

        try:
            payload = json.loads(b64_decode(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise ClaimsValidationError(
                "token payload is malformed", ValidationFlag.MALFORMED
            ) from exc
        if not isinstance(payload, dict):
            raise ClaimsValidationError("token payload is malformed", ValidationFlag.MALFORMED)
        return payload

    def generate_token(self, claims: Union[CustomClaims, MultiClaims]) -> Tuple[str, int]:
        """Sign ``claims`` into a token.

        Returns:
            ``(token, expires_at)`` with ``expires_at`` as a Unix timestamp
        """
        claims = _as_multi_claims(claims)
        claims.validate()
        token = self._encode_jwt(claims.to_payload())
        logger.info(
            "token_generated",
            backend=self.backend_name,
            user_id=claims.id,
            authority_type=int(claims.authority_type),
            login_type=int(claims.login_type),
        )
        return token, claims.expires_at

    def fetch_claims(self, token: str) -> MultiClaims:
        """Verify the signature and expiry of ``token`` and return its claims.

        Raises:
            EmptyTokenError: ``token`` is empty
            ClaimsValidationError: ``flags`` names every failed check
        """
        token = require_token(token)
        payload = self._decode_jwt(token)
        try:
            claims = MultiClaims.from_payload(payload)
        except ValueError as exc:
            raise ClaimsValidationError(
                f"token payload is malformed: {exc}", ValidationFlag.MALFORMED
            ) from exc
        claims.validate()
        return claims

    def get_token_by_claims(self, claims: Any) -> Optional[str]:
        raise _unsupported("get_token_by_claims")

    def revoke_token(self, token: str) -> None:
        raise _unsupported("revoke_token")

    def user_token_expired(self, token: str) -> None:
        raise _unsupported("user_token_expired")

    def refresh_expiry(self, token: str) -> None:
        raise _unsupported("refresh_expiry")

    def get_user_tokens(self, authority_type: int, user_id: str) -> List[str]:
        raise _unsupported("get_user_tokens")

    def count_active_sessions(self, authority_type: int, user_id: str) -> int:
        raise _unsupported("count_active_sessions")

    def is_over_limit(self, authority_type: int, user_id: str) -> bool:
        raise _unsupported("is_over_limit")

    def set_device_limit(self, limit: int) -> None:
        raise _unsupported("set_device_limit")

    def get_device_limit(self) -> int:
        raise _unsupported("get_device_limit")

    def clean_user_sessions(self, authority_type: int, user_id: str) -> None:
        raise _unsupported("clean_user_sessions")

    def close(self) -> None:
        return None
