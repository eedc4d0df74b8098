"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Only one credential is accepted: the Authorization: Bearer <token> header.

get_token_claims()     verifies the token signature and expiry (pure computation).
get_current_identity() additionally re-reads the identity from the store.
require_admin()        re-reads the identity and checks its CURRENT role.

Role is never taken from the token. A token issued before a demotion
carries no role to trust, so the demotion applies to the very next request.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. Failures raise auth.errors
classes; api/main.py renders them.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Forbidden, Unauthorized
from auth.models import Identity, TokenClaims
from auth.store import IdentityStore
from auth.tokens import TokenService


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_token_claims(request: Request) -> TokenClaims:
    """Require a valid bearer token. Raises Unauthorized (or a subclass) otherwise."""
    token = bearer_token(request)
    if token is None:
        raise Unauthorized("No token provided.")
    tokens: TokenService = request.app.state.tokens
    return tokens.verify(token)


def get_current_identity(request: Request) -> Identity:
    """Require a valid bearer token whose identity still exists.

    Use as a FastAPI dependency:
        @router.post("/2fa/generate")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    claims = get_token_claims(request)
    store: IdentityStore = request.app.state.store
    identity = store.get_by_id(claims.identity_id)
    if identity is None:
        raise Unauthorized("Invalid or expired token.")
    return identity


def require_admin(request: Request) -> Identity:
    """Require the admin role, read live from the store. 401 if unauthenticated, 403 if not admin."""
    identity = get_current_identity(request)
    if identity.role != "admin":
        raise Forbidden("Admin access required.")
    return identity
