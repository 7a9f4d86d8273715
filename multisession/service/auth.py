"""Session engine contract shared by every storage backend.

``Authentication`` is the only surface HTTP adapters call. ``SessionAuth``
holds the workflow that is identical for the stateful backends (validate,
reuse an equal live session, enforce the device limit, mint, persist and
index); subclasses supply the storage primitives.
"""

from __future__ import annotations

import abc
from typing import List, Optional, Protocol, Tuple, Union

from multisession.claims import AuthorityType, CustomClaims, MultiClaims
from multisession.logging import get_logger
from multisession.service.errors import (
    EmptyTokenError,
    InvalidTokenError,
    OverDeviceLimitError,
)
from multisession.service.tokens import generate_token as mint_token

logger = get_logger(__name__)

Claims = Union[CustomClaims, MultiClaims]


class Authentication(Protocol):
    def generate_token(self, claims: Claims) -> Tuple[str, int]: ...

    def get_token_by_claims(self, claims: Claims) -> Optional[str]: ...

    def fetch_claims(self, token: str) -> Claims: ...

    def get_auth_id(self, token: str) -> int: ...

    def revoke_token(self, token: str) -> None: ...

    def user_token_expired(self, token: str) -> None: ...

    def refresh_expiry(self, token: str) -> None: ...

    def get_user_tokens(self, authority_type: int, user_id: str) -> List[str]: ...

    def count_active_sessions(self, authority_type: int, user_id: str) -> int: ...

    def is_over_limit(self, authority_type: int, user_id: str) -> bool: ...

    def set_device_limit(self, limit: int) -> None: ...

    def get_device_limit(self) -> int: ...

    def clean_user_sessions(self, authority_type: int, user_id: str) -> None: ...

    def is_role(self, token: str, authority_type: int) -> bool: ...

    def is_admin(self, token: str) -> bool: ...

    def is_tenancy(self, token: str) -> bool: ...

    def is_general(self, token: str) -> bool: ...

    def close(self) -> None: ...


def require_token(token: Optional[str]) -> str:
    if not token:
        raise EmptyTokenError()
    return token


def validate_device_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ValueError("device limit must be a positive integer")
    return limit


class RoleChecksMixin:
    """Role helpers defined on top of ``fetch_claims``."""

    def is_role(self, token: str, authority_type: int) -> bool:
        return self.fetch_claims(token).authority_type == authority_type

    def is_admin(self, token: str) -> bool:
        return self.is_role(token, AuthorityType.ADMIN)

    def is_tenancy(self, token: str) -> bool:
        return self.is_role(token, AuthorityType.TENANCY)

    def is_general(self, token: str) -> bool:
        return self.is_role(token, AuthorityType.GENERAL)

    def get_auth_id(self, token: str) -> int:
        claims = self.fetch_claims(token)
        try:
            return int(claims.id)
        except ValueError as exc:
            raise InvalidTokenError(
                "token subject is not numeric", detail={"id": claims.id}
            ) from exc


class SessionAuth(RoleChecksMixin, abc.ABC):
    """Workflow common to backends that keep claims server-side."""

    backend_name = "stateful"

    # --- storage primitives -------------------------------------------------

    @abc.abstractmethod
    def _persist(self, token: str, claims: CustomClaims) -> None:
        """Write claims, index the token for its user and bind it back, with TTLs."""

    @abc.abstractmethod
    def fetch_claims(self, token: str) -> CustomClaims: ...

    @abc.abstractmethod
    def revoke_token(self, token: str) -> None: ...

    @abc.abstractmethod
    def user_token_expired(self, token: str) -> None: ...

    @abc.abstractmethod
    def refresh_expiry(self, token: str) -> None: ...

    @abc.abstractmethod
    def get_user_tokens(self, authority_type: int, user_id: str) -> List[str]: ...

    @abc.abstractmethod
    def count_active_sessions(self, authority_type: int, user_id: str) -> int: ...

    @abc.abstractmethod
    def set_device_limit(self, limit: int) -> None: ...

    @abc.abstractmethod
    def get_device_limit(self) -> int: ...

    @abc.abstractmethod
    def clean_user_sessions(self, authority_type: int, user_id: str) -> None: ...

    def close(self) -> None:
        return None

    # --- shared workflow ----------------------------------------------------

    def generate_token(self, claims: Claims) -> Tuple[str, int]:
        """Issue (or reuse) a session token for ``claims``.

        Returns:
            ``(token, expires_in)`` where ``expires_in`` is the claims lifetime in ms

        Raises:
            ClaimsValidationError: claims fail structural validation
            OverDeviceLimitError: the user already holds the maximum number of sessions
        """
        claims = _as_custom_claims(claims)
        claims.validate()

        token = self.get_token_by_claims(claims)
        reused = token is not None
        if token is None:
            count = self.count_active_sessions(claims.authority_type, claims.id)
            limit = self.get_device_limit()
            if count >= limit:
                logger.warning(
                    "device_limit_exceeded",
                    backend=self.backend_name,
                    user_id=claims.id,
                    authority_type=int(claims.authority_type),
                    count=count,
                    limit=limit,
                )
                raise OverDeviceLimitError(count, limit)
            token = mint_token()

        self._persist(token, claims)
        logger.info(
            "token_generated",
            backend=self.backend_name,
            user_id=claims.id,
            authority_type=int(claims.authority_type),
            login_type=int(claims.login_type),
            reused=reused,
        )
        return token, claims.expires_in

    def get_token_by_claims(self, claims: Claims) -> Optional[str]:
        """Live token of the same user whose claims match ``claims``, if any."""
        for token in self.get_user_tokens(claims.authority_type, claims.id):
            try:
                existing = self.fetch_claims(token)
            except InvalidTokenError:
                continue
            if claims.matches(existing):
                return token
        return None

    def is_over_limit(self, authority_type: int, user_id: str) -> bool:
        return self.count_active_sessions(authority_type, user_id) >= self.get_device_limit()


def _as_custom_claims(claims: Claims) -> CustomClaims:
    if isinstance(claims, CustomClaims):
        return claims
    # Signed-token claims carry an absolute expiry; store it as a lifetime
    lifetime_ms = max(0, claims.expires_at - claims.creation_date) * 1000
    return CustomClaims(
        id=claims.id,
        username=claims.username,
        tenancy_id=claims.tenancy_id,
        tenancy_name=claims.tenancy_name,
        authority_id=claims.authority_id,
        authority_type=claims.authority_type,
        login_type=claims.login_type,
        auth_type=claims.auth_type,
        creation_date=claims.creation_date,
        expires_in=lifetime_ms,
    )


__all__ = [
    "Authentication",
    "Claims",
    "RoleChecksMixin",
    "SessionAuth",
    "require_token",
    "validate_device_limit",
]
