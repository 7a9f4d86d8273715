from __future__ import annotations

from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from multisession.claims import AuthorityType, AuthType, CustomClaims, LoginType, MultiClaims

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "device_limit_exceeded",
    "unsupported",
    "backend_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    """Identity asserted by an upstream credential check."""

    user_id: str = Field(..., min_length=1, max_length=64)
    username: str = Field(default="", max_length=128)
    tenancy_id: int = Field(default=0, ge=0)
    tenancy_name: str = Field(default="", max_length=128)
    authority_ids: List[str] = Field(default_factory=list, max_length=64)
    authority_type: AuthorityType = AuthorityType.GENERAL
    login_type: LoginType = LoginType.WEB
    auth_type: AuthType = AuthType.PASSWORD

    def to_claims(self) -> CustomClaims:
        return CustomClaims.new(
            self.user_id,
            username=self.username,
            tenancy_id=self.tenancy_id,
            tenancy_name=self.tenancy_name,
            authority_ids=self.authority_ids,
            authority_type=self.authority_type,
            login_type=self.login_type,
            auth_type=self.auth_type,
        )


class TokenResponse(BaseModel):
    token: str
    token_type: str = "Bearer"
    expires: int


class ClaimsResponse(BaseModel):
    id: str
    username: str
    tenancy_id: int
    tenancy_name: str
    authority_ids: List[str]
    authority_type: int
    login_type: int
    auth_type: int
    creation_date: int
    expires_in: Optional[int] = None
    expires_at: Optional[int] = None

    @classmethod
    def from_claims(cls, claims: CustomClaims | MultiClaims) -> "ClaimsResponse":
        return cls(
            id=claims.id,
            username=claims.username,
            tenancy_id=claims.tenancy_id,
            tenancy_name=claims.tenancy_name,
            authority_ids=claims.authority_ids,
            authority_type=int(claims.authority_type),
            login_type=int(claims.login_type),
            auth_type=int(claims.auth_type),
            creation_date=claims.creation_date,
            expires_in=getattr(claims, "expires_in", None),
            expires_at=getattr(claims, "expires_at", None),
        )


class SessionCountResponse(BaseModel):
    count: int
    limit: int
    over_limit: bool


class DeviceLimitRequest(BaseModel):
    limit: int = Field(..., gt=0)
