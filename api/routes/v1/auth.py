"""
api/routes/v1/auth.py -- Registration, login, token check, email verification, federation.

Routes:
  POST /api/v1/register               -- create a password identity; 201
  POST /api/v1/login                  -- password login; returns bearer token
  POST /api/v1/logout                 -- advisory; client discards its token
  GET  /api/v1/verify                 -- bearer token check; returns live user
  POST /api/v1/send-verification      -- email a verification link
  POST /api/v1/verify-email           -- consume a verification token
  GET  /api/v1/providers              -- configured federation providers (public)
  POST /api/v1/{google,github,microsoft} -- federated login

Security:
  [H2] POST /login is rate-limited to 10 requests/minute per IP.
  [C1] AuthService.login() goes through IdentityStore.verify_credential(),
       which equalizes timing. Never inline an email lookup + bcrypt check.
  [M5] Cache-Control: no-store on every response carrying a token.

Handlers that touch the store are plain `def` so FastAPI runs them in its
threadpool; store and SMTP I/O never block the event loop.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, Response
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import (
    FederatedLoginRequest,
    FederatedLoginResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    RegisterResponse,
    SendVerificationRequest,
    UserEnvelope,
    UserSummary,
    VerifyEmailRequest,
)
from auth.dependencies import get_token_claims
from auth.errors import NotFound, Unauthorized
from auth.federation import FederationAdapter
from auth.models import FederatedProfile, TokenClaims
from auth.oauth import fetch_provider_profile, get_enabled_providers
from auth.service import AuthService
from auth.store import IdentityStore
from auth.verification import EmailVerificationFlow

logger = logging.getLogger("staffgate.api.auth")

# Auth policy:
# - POST /register, /login, /logout, /send-verification, /verify-email: public
# - GET  /providers, POST /google|/github|/microsoft: public
# - GET  /verify: requires a valid bearer token (get_token_claims)
router = APIRouter()


@router.post("/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an identity. Staff accounts must present a staff code for their department."""
    auth_service: AuthService = request.app.state.auth_service
    identity = auth_service.register(
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
        department=body.department,
        staff_code=body.staff_code,
    )
    return RegisterResponse(user_id=identity.id, role=identity.role)


@limiter.limit("10/minute")  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/login", response_model=LoginResponse)
def login(request: Request, response: Response, body: LoginRequest) -> LoginResponse:
    """Authenticate with email and password.

    Wrong email and wrong password produce the same 401 body, so the
    response does not reveal whether an account exists.
    """
    auth_service: AuthService = request.app.state.auth_service
    token, identity = auth_service.login(body.email, body.password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return LoginResponse(
        token=token,
        expires_in=request.app.state.tokens.expire_seconds,
        user=UserSummary.from_identity(identity),
        two_factor_required=identity.two_factor_enabled,
    )


@router.post("/logout", response_model=MessageResponse)
async def logout() -> MessageResponse:
    """Tokens are not revocable; the client is expected to discard its copy."""
    return MessageResponse(message="Logged out.")


@router.get("/verify", response_model=UserEnvelope)
def verify(request: Request, claims: TokenClaims = Depends(get_token_claims)) -> UserEnvelope:
    """Validate the bearer token and return the live user record (404 if it was removed)."""
    store: IdentityStore = request.app.state.store
    identity = store.get_by_id(claims.identity_id)
    if identity is None:
        raise NotFound("User not found.")
    return UserEnvelope(user=UserSummary.from_identity(identity))


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/send-verification", response_model=MessageResponse)
def send_verification(request: Request, body: SendVerificationRequest) -> MessageResponse:
    flow: EmailVerificationFlow = request.app.state.verification
    flow.request_verification(body.email.lower())
    return MessageResponse(message="Verification email sent.")


@router.post("/verify-email", response_model=UserEnvelope)
def verify_email(request: Request, body: VerifyEmailRequest) -> UserEnvelope:
    flow: EmailVerificationFlow = request.app.state.verification
    identity = flow.confirm_verification(body.email.lower(), body.token)
    return UserEnvelope(user=UserSummary.from_identity(identity))


# ---------------------------------------------------------------------------
# Federation
# ---------------------------------------------------------------------------


@router.get("/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Providers with credentials configured. Empty when none are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


async def _federated_login(request: Request, provider: str, body: FederatedLoginRequest) -> FederatedLoginResponse:
    settings = request.app.state.settings
    profile = FederatedProfile(
        email=body.user_data.email,
        display_name=body.user_data.display_name or body.user_data.name,
    )

    if settings.federation_verify_tokens:
        if not body.access_token:
            raise Unauthorized("An access token from the provider is required.")
        confirmed = await fetch_provider_profile(request.app.state.oauth, provider, body.access_token)
        if confirmed.email.strip().lower() != profile.email.strip().lower():
            raise Unauthorized("Profile email does not match the provider account.")
        profile = FederatedProfile(email=confirmed.email, display_name=confirmed.display_name or profile.display_name)
    else:
        logger.warning("Accepting unverified %s profile from client (federation_verify_tokens=false)", provider)

    adapter: FederationAdapter = request.app.state.federation
    result = await run_in_threadpool(adapter.resolve_or_create, provider, profile)
    return FederatedLoginResponse(
        token=result.token,
        user=UserSummary.from_identity(result.identity),
        is_new_user=result.is_new_user,
    )


@router.post("/google", response_model=FederatedLoginResponse)
async def google_login(request: Request, response: Response, body: FederatedLoginRequest) -> FederatedLoginResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return await _federated_login(request, "google", body)


@router.post("/github", response_model=FederatedLoginResponse)
async def github_login(request: Request, response: Response, body: FederatedLoginRequest) -> FederatedLoginResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return await _federated_login(request, "github", body)


@router.post("/microsoft", response_model=FederatedLoginResponse)
async def microsoft_login(
    request: Request, response: Response, body: FederatedLoginRequest
) -> FederatedLoginResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return await _federated_login(request, "microsoft", body)
