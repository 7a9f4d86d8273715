"""Claims carried by a session and the enumerations they are built from.

Two shapes exist. ``CustomClaims`` is stored server-side and carries its
lifetime as a duration in milliseconds (``expires_in``). ``MultiClaims`` is
embedded in signed tokens and carries an absolute Unix ``expires_at``.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from enum import IntEnum, IntFlag
from typing import Any, Dict, Iterable, Mapping, Optional

from multisession.service.errors import ClaimsValidationError

# Role tags are stored as one string joined with this separator
AUTHORITY_ID_SEPARATOR = "-"


class AuthorityType(IntEnum):
    """Role class of the session owner."""

    NONE = 0
    ADMIN = 1
    TENANCY = 2
    GENERAL = 3


class AuthType(IntEnum):
    """How the user proved their identity."""

    NONE = 0
    PASSWORD = 1
    CODE = 2
    THIRD_PARTY = 3


class LoginType(IntEnum):
    """Client channel; selects the session lifetime."""

    WEB = 0
    APP = 1
    WECHAT = 2
    DEVICE = 3


SESSION_TIMEOUT_WEB = timedelta(hours=4)
SESSION_TIMEOUT_APP = timedelta(days=7)
SESSION_TIMEOUT_WECHAT = timedelta(weeks=52)
SESSION_TIMEOUT_DEVICE = timedelta(weeks=52)

SESSION_TIMEOUTS: Dict[LoginType, timedelta] = {
    LoginType.WEB: SESSION_TIMEOUT_WEB,
    LoginType.APP: SESSION_TIMEOUT_APP,
    LoginType.WECHAT: SESSION_TIMEOUT_WECHAT,
    LoginType.DEVICE: SESSION_TIMEOUT_DEVICE,
}


def get_token_expire(login_type: int) -> timedelta:
    """Session lifetime for a login channel; unknown channels get the web lifetime."""
    try:
        return SESSION_TIMEOUTS[LoginType(login_type)]
    except ValueError:
        return SESSION_TIMEOUT_WEB


def get_token_expire_seconds(login_type: int) -> int:
    return int(get_token_expire(login_type).total_seconds())


class ValidationFlag(IntFlag):
    """One bit per failed claims check."""

    MALFORMED = 1 << 0
    UNVERIFIABLE = 1 << 1
    SIGNATURE_INVALID = 1 << 2
    EXPIRED = 1 << 3
    ID = 1 << 4
    AUTHORITY_ID = 1 << 5
    AUTHORITY_TYPE = 1 << 6
    LOGIN_TYPE = 1 << 7
    AUTH_TYPE = 1 << 8


_VALID_AUTHORITY_TYPES = frozenset(
    {AuthorityType.ADMIN, AuthorityType.TENANCY, AuthorityType.GENERAL}
)


def join_authority_ids(authority_ids: Iterable[Any]) -> str:
    return AUTHORITY_ID_SEPARATOR.join(str(a) for a in authority_ids)


def _is_member(enum_cls: type[IntEnum], value: Any) -> bool:
    try:
        enum_cls(value)
    except (ValueError, TypeError):
        return False
    return True


@dataclass
class _Claims:
    id: str
    username: str = ""
    tenancy_id: int = 0
    tenancy_name: str = ""
    authority_id: str = ""
    authority_type: int = AuthorityType.NONE
    login_type: int = LoginType.WEB
    auth_type: int = AuthType.NONE
    creation_date: int = 0

    @property
    def authority_ids(self) -> list[str]:
        if not self.authority_id:
            return []
        return self.authority_id.split(AUTHORITY_ID_SEPARATOR)

    def check(self) -> ValidationFlag:
        """Run every structural check and return the bits that failed."""
        flags = ValidationFlag(0)
        if not self.id:
            flags |= ValidationFlag.ID
        if self.authority_id and not all(self.authority_ids):
            flags |= ValidationFlag.AUTHORITY_ID
        if self.authority_type not in _VALID_AUTHORITY_TYPES:
            flags |= ValidationFlag.AUTHORITY_TYPE
        if not _is_member(LoginType, self.login_type):
            flags |= ValidationFlag.LOGIN_TYPE
        if not _is_member(AuthType, self.auth_type):
            flags |= ValidationFlag.AUTH_TYPE
        return flags

    def validate(self) -> None:
        flags = self.check()
        if flags:
            failed = ", ".join(f.name.lower() for f in ValidationFlag if f & flags)
            raise ClaimsValidationError(f"claims are invalid: {failed}", flags)

    def matches(self, other: "_Claims") -> bool:
        """True when both claims describe the same login (identity, role, channel, method)."""
        return (
            self.auth_type == other.auth_type
            and self.id == other.id
            and self.authority_type == other.authority_type
            and self.tenancy_id == other.tenancy_id
            and self.authority_id == other.authority_id
            and self.login_type == other.login_type
        )


@dataclass
class CustomClaims(_Claims):
    """Server-side session claims; ``expires_in`` is the lifetime in milliseconds."""

    expires_in: int = 0

    # Hash field names used by the remote store
    _FIELD_NAMES = {
        "id": "id",
        "username": "username",
        "tenancy_id": "tenancy_id",
        "tenancy_name": "tenancy_name",
        "authority_id": "authority_id",
        "authority_type": "authority_type",
        "login_type": "login_type",
        "auth_type": "auth_type",
        "creation_date": "creation_data",
        "expires_in": "expires_in",
    }
    _INT_FIELDS = frozenset(
        {
            "tenancy_id",
            "authority_type",
            "login_type",
            "auth_type",
            "creation_date",
            "expires_in",
        }
    )

    @classmethod
    def new(
        cls,
        id: Any,
        *,
        username: str = "",
        tenancy_id: int = 0,
        tenancy_name: str = "",
        authority_ids: Iterable[Any] = (),
        authority_type: int = AuthorityType.GENERAL,
        login_type: int = LoginType.WEB,
        auth_type: int = AuthType.PASSWORD,
        expires_in: Optional[int] = None,
    ) -> "CustomClaims":
        if expires_in is None:
            expires_in = int(get_token_expire(login_type).total_seconds() * 1000)
        return cls(
            id=str(id),
            username=username,
            tenancy_id=tenancy_id,
            tenancy_name=tenancy_name,
            authority_id=join_authority_ids(authority_ids),
            authority_type=authority_type,
            login_type=login_type,
            auth_type=auth_type,
            creation_date=int(time.time()),
            expires_in=expires_in,
        )

    def to_mapping(self) -> Dict[str, str | int]:
        """Flatten into hash fields for the remote store."""
        return {
            stored: int(getattr(self, attr)) if attr in self._INT_FIELDS else str(getattr(self, attr))
            for attr, stored in self._FIELD_NAMES.items()
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "CustomClaims":
        """Rebuild claims from hash fields.

        Raises:
            ValueError: a numeric field holds a non-integer value
        """
        kwargs: Dict[str, Any] = {}
        for attr, stored in cls._FIELD_NAMES.items():
            if stored not in data:
                continue
            raw = data[stored]
            kwargs[attr] = int(raw) if attr in cls._INT_FIELDS else str(raw)
        kwargs.setdefault("id", "")
        return cls(**kwargs)


@dataclass
class MultiClaims(_Claims):
    """Claims embedded in a signed token; ``expires_at`` is a Unix timestamp."""

    expires_at: int = 0

    _JSON_NAMES = {
        "id": "id",
        "username": "username",
        "tenancy_id": "tenancyId",
        "tenancy_name": "tenancyName",
        "authority_id": "authorityId",
        "authority_type": "authorityType",
        "login_type": "loginType",
        "auth_type": "authType",
        "creation_date": "creationData",
        "expires_at": "expiresAt",
    }
    _INT_FIELDS = frozenset(
        {
            "tenancy_id",
            "authority_type",
            "login_type",
            "auth_type",
            "creation_date",
            "expires_at",
        }
    )

    @classmethod
    def new(
        cls,
        id: Any,
        *,
        username: str = "",
        tenancy_id: int = 0,
        tenancy_name: str = "",
        authority_ids: Iterable[Any] = (),
        authority_type: int = AuthorityType.GENERAL,
        login_type: int = LoginType.WEB,
        auth_type: int = AuthType.PASSWORD,
        expires_at: Optional[int] = None,
    ) -> "MultiClaims":
        now = int(time.time())
        if expires_at is None:
            expires_at = now + get_token_expire_seconds(login_type)
        return cls(
            id=str(id),
            username=username,
            tenancy_id=tenancy_id,
            tenancy_name=tenancy_name,
            authority_id=join_authority_ids(authority_ids),
            authority_type=authority_type,
            login_type=login_type,
            auth_type=auth_type,
            creation_date=now,
            expires_at=expires_at,
        )

    def check(self, now: Optional[int] = None) -> ValidationFlag:
        flags = super().check()
        now = int(time.time()) if now is None else now
        # An unset expiry never fails
        if self.expires_at and now > self.expires_at:
            flags |= ValidationFlag.EXPIRED
        return flags

    def to_payload(self) -> Dict[str, Any]:
        values = asdict(self)
        return {name: values[attr] for attr, name in self._JSON_NAMES.items()}

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MultiClaims":
        """Rebuild claims from a decoded token payload.

        Raises:
            ValueError: a field has the wrong type
        """
        kwargs: Dict[str, Any] = {}
        for attr, name in cls._JSON_NAMES.items():
            if name not in payload:
                continue
            raw = payload[name]
            if attr in cls._INT_FIELDS:
                if isinstance(raw, bool) or not isinstance(raw, int):
                    raise ValueError(f"{name} must be an integer")
                kwargs[attr] = raw
            else:
                kwargs[attr] = str(raw)
        kwargs.setdefault("id", "")
        return cls(**kwargs)


__all__ = [
    "AUTHORITY_ID_SEPARATOR",
    "AuthorityType",
    "AuthType",
    "LoginType",
    "SESSION_TIMEOUTS",
    "ValidationFlag",
    "CustomClaims",
    "MultiClaims",
    "get_token_expire",
    "get_token_expire_seconds",
    "join_authority_ids",
]
