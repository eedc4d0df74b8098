"""
api/routes/v1/kyc.py -- Staff code validation and issuance.

Routes:
  POST /api/v1/kyc/validate     -- public; consumes the code on success
  POST /api/v1/kyc/generate     -- admin only; mint codes for a department
  GET  /api/v1/kyc/departments  -- public; departments with unused codes

A bad or already-used code on /validate is a 200 with valid=false, not an
error status. Callers branch on the body.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    DepartmentsResponse,
    StaffCodeGenerateRequest,
    StaffCodeGenerateResponse,
    StaffCodeValidateRequest,
    StaffCodeValidateResponse,
)
from auth.dependencies import require_admin
from auth.models import Identity
from auth.staff_codes import StaffCodeGate

router = APIRouter(prefix="/kyc")


@router.post("/validate", response_model=StaffCodeValidateResponse)
def validate_code(request: Request, body: StaffCodeValidateRequest) -> StaffCodeValidateResponse:
    gate: StaffCodeGate = request.app.state.staff_codes
    result = gate.validate(body.code, body.department)
    return StaffCodeValidateResponse(valid=result.valid, message=result.message)


@router.post("/generate", response_model=StaffCodeGenerateResponse)
def generate_codes(
    request: Request, body: StaffCodeGenerateRequest, admin: Identity = Depends(require_admin)
) -> StaffCodeGenerateResponse:
    gate: StaffCodeGate = request.app.state.staff_codes
    codes = gate.generate(body.department, body.count)
    return StaffCodeGenerateResponse(message=f"Generated {len(codes)} staff code(s).", codes=codes)


@router.get("/departments", response_model=DepartmentsResponse)
def list_departments(request: Request) -> DepartmentsResponse:
    gate: StaffCodeGate = request.app.state.staff_codes
    return DepartmentsResponse(departments=gate.list_departments_with_available_codes())
