"""
API request and response models for Staffgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire names are camelCase (userId, staffCode, isNewUser, backupCodes, ...).
Python attribute names stay snake_case; the alias generator bridges them and
populate_by_name lets tests and internal callers use either form.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Identity

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _Wire(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _WireOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class MessageResponse(_WireOut):
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class UserSummary(_WireOut):
    """Public view of an identity. Never carries hashes, secrets or backup codes."""

    id: int
    username: str
    email: str
    role: str
    email_verified: bool
    provider: Optional[str] = None
    two_factor_enabled: bool = False

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserSummary":
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            role=identity.role,
            email_verified=identity.email_verified,
            provider=identity.provider,
            two_factor_enabled=identity.two_factor_enabled,
        )


class UserEnvelope(_WireOut):
    user: UserSummary


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


class RegisterRequest(_Wire):
    """Request body for POST /api/v1/register.

    password max_length keeps inputs at or under bcrypt's 72-byte ceiling for
    ASCII passwords; longer UTF-8 input is truncated consistently by auth.tokens.
    """

    username: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=72)
    role: Optional[str] = None
    department: Optional[str] = Field(default=None, max_length=100)
    staff_code: Optional[str] = Field(default=None, max_length=16)


class RegisterResponse(_WireOut):
    user_id: int
    role: str


class LoginRequest(_Wire):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(_WireOut):
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary
    two_factor_required: bool = False


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


class SendVerificationRequest(_Wire):
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)


class VerifyEmailRequest(_Wire):
    token: str = Field(min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


class TwoFactorCodeRequest(_Wire):
    code: str = Field(min_length=6, max_length=32)


class TwoFactorGenerateResponse(_WireOut):
    secret: str
    qr_code: str
    provisioning_uri: str
    backup_codes: list[str]


class TwoFactorVerifyResponse(_WireOut):
    ok: bool = True
    method: str


class TwoFactorStatusResponse(_WireOut):
    enabled: bool
    pending: bool
    backup_codes_remaining: int


# ---------------------------------------------------------------------------
# Federation
# ---------------------------------------------------------------------------


class FederatedUserData(_Wire):
    """Profile as the client received it from the provider.

    `name` and `displayName` are both accepted because provider SDKs disagree.
    """

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    display_name: Optional[str] = Field(default=None, max_length=255)
    name: Optional[str] = Field(default=None, max_length=255)


class FederatedLoginRequest(_Wire):
    user_data: FederatedUserData
    access_token: Optional[str] = Field(default=None, max_length=4096)


class FederatedLoginResponse(_WireOut):
    token: str
    user: UserSummary
    is_new_user: bool


class OAuthProviderInfo(_WireOut):
    name: str
    label: str


# ---------------------------------------------------------------------------
# Staff codes (KYC)
# ---------------------------------------------------------------------------


class StaffCodeValidateRequest(_Wire):
    code: str = Field(min_length=1, max_length=16)
    department: str = Field(min_length=1, max_length=100)


class StaffCodeValidateResponse(_WireOut):
    valid: bool
    message: str


class StaffCodeGenerateRequest(_Wire):
    department: str = Field(min_length=3, max_length=100)
    count: int = Field(default=1, ge=1, le=100)


class StaffCodeGenerateResponse(_WireOut):
    message: str
    codes: list[str]


class DepartmentsResponse(_WireOut):
    departments: list[str]


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class RoleUpdateRequest(_Wire):
    role: str = Field(min_length=1, max_length=20)


class UserAdminRow(_WireOut):
    id: int
    username: str
    email: str
    role: str
    email_verified: bool
    provider: Optional[str]
    department: Optional[str]
    two_factor_enabled: bool
    created_at: str
    last_login: Optional[str]

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserAdminRow":
        return cls(
            id=identity.id,
            username=identity.username,
            email=identity.email,
            role=identity.role,
            email_verified=identity.email_verified,
            provider=identity.provider,
            department=identity.department,
            two_factor_enabled=identity.two_factor_enabled,
            created_at=identity.created_at or "",
            last_login=identity.last_login,
        )
