"""
api/routes/v1/admin.py -- Identity administration.

Routes (admin only, role read live from the store):
  GET   /api/v1/admin/users            -- all identities
  PATCH /api/v1/admin/users/{id}/role  -- change a role; effective on the next request
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from api.models import RoleUpdateRequest, UserAdminRow
from auth.dependencies import require_admin
from auth.errors import Forbidden
from auth.models import Identity
from auth.store import IdentityStore

logger = logging.getLogger("staffgate.api.admin")

router = APIRouter(prefix="/admin")


@router.get("/users", response_model=list[UserAdminRow])
def list_users(request: Request, admin: Identity = Depends(require_admin)) -> list[UserAdminRow]:
    store: IdentityStore = request.app.state.store
    return [UserAdminRow.from_identity(i) for i in store.list_identities()]


@router.patch("/users/{identity_id}/role", response_model=UserAdminRow)
def update_role(
    request: Request,
    identity_id: int,
    body: RoleUpdateRequest,
    admin: Identity = Depends(require_admin),
) -> UserAdminRow:
    """Change an identity's role.

    Admins cannot demote themselves; that would leave no way to undo a
    mistaken click when they are the only administrator.
    """
    if identity_id == admin.id and body.role != "admin":
        raise Forbidden("Administrators cannot change their own role.")
    store: IdentityStore = request.app.state.store
    updated = store.set_role(identity_id, body.role)
    logger.info("Identity %s role set to %s by admin %s", identity_id, body.role, admin.id)
    return UserAdminRow.from_identity(updated)
