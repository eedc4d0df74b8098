"""
api/routes/v1/two_factor.py -- TOTP enrollment, verification and removal.

Routes (all require a bearer token):
  POST /api/v1/2fa/generate  -- new secret, QR code and backup codes
  POST /api/v1/2fa/enable    -- confirm enrollment with a current TOTP
  POST /api/v1/2fa/verify    -- check a TOTP or redeem a backup code
  POST /api/v1/2fa/disable   -- turn 2FA off (TOTP only)
  GET  /api/v1/2fa/status    -- enabled / pending / backup codes remaining

The identity is re-read from the store by get_current_identity on every
request, so the service always sees the current secret and code list.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    MessageResponse,
    TwoFactorCodeRequest,
    TwoFactorGenerateResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyResponse,
)
from auth.dependencies import get_current_identity
from auth.models import Identity
from auth.two_factor import TwoFactorService

router = APIRouter(prefix="/2fa")


def _service(request: Request) -> TwoFactorService:
    return request.app.state.two_factor


@router.post("/generate", response_model=TwoFactorGenerateResponse)
def generate(
    request: Request, response: Response, identity: Identity = Depends(get_current_identity)
) -> TwoFactorGenerateResponse:
    """Start enrollment. Backup codes appear in this response and nowhere else."""
    enrollment = _service(request).generate_secret(identity)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TwoFactorGenerateResponse(
        secret=enrollment.secret,
        qr_code=enrollment.qr_code,
        provisioning_uri=enrollment.provisioning_uri,
        backup_codes=enrollment.backup_codes,
    )


@router.post("/enable", response_model=MessageResponse)
def enable(
    request: Request, body: TwoFactorCodeRequest, identity: Identity = Depends(get_current_identity)
) -> MessageResponse:
    _service(request).enable(identity, body.code)
    return MessageResponse(message="Two-factor authentication enabled.")


@router.post("/verify", response_model=TwoFactorVerifyResponse)
def verify(
    request: Request, body: TwoFactorCodeRequest, identity: Identity = Depends(get_current_identity)
) -> TwoFactorVerifyResponse:
    method = _service(request).verify(identity, body.code)
    return TwoFactorVerifyResponse(method=method)


@router.post("/disable", response_model=MessageResponse)
def disable(
    request: Request, body: TwoFactorCodeRequest, identity: Identity = Depends(get_current_identity)
) -> MessageResponse:
    _service(request).disable(identity, body.code)
    return MessageResponse(message="Two-factor authentication disabled.")


@router.get("/status", response_model=TwoFactorStatusResponse)
def status(request: Request, identity: Identity = Depends(get_current_identity)) -> TwoFactorStatusResponse:
    return TwoFactorStatusResponse(**_service(request).status(identity))
