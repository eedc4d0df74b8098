"""
auth/models.py -- Domain dataclasses for identity and access entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; the store, services and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

ROLES: tuple[str, ...] = ("admin", "staff", "employer")
PROVIDERS: tuple[str, ...] = ("google", "github", "microsoft")

DEFAULT_ROLE = "employer"


@dataclass
class Identity:
    """One account: a human signing in with a password, a social provider, or both.

    hashed_password is None for federated-only identities (no local password).
    provider is None until the first federated login stamps it; once set it is
    never overwritten by a different provider.

    two_factor_secret is present iff an enrollment has been started.
    two_factor_enabled implies two_factor_secret is present.
    two_factor_backup_codes holds HMAC digests of the single-use backup codes,
    never the raw codes.

    staff_code records the one-time code consumed at registration, if any.
    """

    username: str
    email: str
    role: str  # "admin", "staff", "employer"
    id: int | None = None
    hashed_password: str | None = None  # None = federated-only identity
    email_verified: bool = False
    provider: str | None = None  # "google", "github", "microsoft"
    staff_code: str | None = None
    department: str | None = None
    two_factor_enabled: bool = False
    two_factor_secret: str | None = None
    two_factor_backup_codes: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class StaffCode:
    """A department-scoped, single-use registration code (DDDD-XXX)."""

    code: str
    department: str
    used: bool = False
    id: int | None = None
    created_at: str | None = None
    used_at: str | None = None


@dataclass
class TokenClaims:
    """Verified bearer token payload. Role is deliberately absent."""

    identity_id: int
    email: str
    issued_at: int | None = None
    expires_at: int | None = None


@dataclass
class TwoFactorEnrollment:
    """Result of starting a 2FA enrollment. backup_codes are the raw codes, shown once."""

    secret: str
    provisioning_uri: str
    qr_code: str  # data:image/png;base64,...
    backup_codes: list[str]


@dataclass
class FederatedProfile:
    """Normalized social-provider profile."""

    email: str
    display_name: str | None = None


@dataclass
class FederationResult:
    identity: Identity
    is_new_user: bool
    token: str


@dataclass
class StaffCodeValidation:
    valid: bool
    message: str
