"""
auth/service.py -- Registration and password login.

Registration ordering matters. Every check that can reject the request
(role, admin self-registration, staff prerequisites, uniqueness) runs
before the staff code is touched, and the code is finally consumed inside
the same transaction as the insert (IdentityStore.create_identity). A
failed registration therefore never burns a one-time code.

Login returns the same Unauthorized for an unknown email, a federated-only
account, and a wrong password.
"""

from __future__ import annotations

import logging

from auth.errors import Conflict, Forbidden, InvalidArgument, InvalidOrExpired, NotFound, Unauthorized
from auth.models import DEFAULT_ROLE, ROLES, Identity
from auth.staff_codes import is_well_formed, normalize_department
from auth.store import IdentityStore
from auth.tokens import TokenService

logger = logging.getLogger("staffgate.auth")


class AuthService:
    def __init__(self, store: IdentityStore, tokens: TokenService) -> None:
        self._store = store
        self._tokens = tokens

    def register(
        self,
        username: str,
        email: str,
        password: str,
        role: str | None = None,
        department: str | None = None,
        staff_code: str | None = None,
    ) -> Identity:
        """Create a password identity. email_verified starts false.

        Raises:
            InvalidArgument:  missing fields, unknown role, staff without code/department.
            Forbidden:        role == "admin" (administrators are created by operators).
            Conflict:         email or username taken.
            InvalidOrExpired: staff code unknown, for another department, or used.
        """
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username or not email or not password:
            raise InvalidArgument("Username, email and password are required.")

        staff_code = (staff_code or "").strip().upper() or None
        if role is None:
            role = "staff" if staff_code else DEFAULT_ROLE
        if role not in ROLES:
            raise InvalidArgument(f"Invalid role. Must be one of: {', '.join(ROLES)}.")
        if role == "admin":
            raise Forbidden("Administrator accounts cannot be self-registered.")

        dept: str | None = None
        if role == "staff":
            if not staff_code or not department:
                raise InvalidArgument("Staff registration requires a staff code and department.")
            dept = normalize_department(department)
            if not is_well_formed(staff_code, dept):
                raise InvalidOrExpired("Invalid staff code or code already used.")
        elif staff_code:
            raise InvalidArgument("A staff code can only be used to register a staff account.")

        if self._store.find_by_email_or_username(email, username) is not None:
            raise Conflict("An account with that email or username already exists.")

        identity = Identity(
            username=username,
            email=email,
            role=role,
            hashed_password=self._store.hash_password(password),
        )
        uid = self._store.create_identity(identity, staff_code=staff_code, department=dept)
        logger.info("Registered identity %s (role=%s)", uid, role)
        created = self._store.get_by_id(uid)
        if created is None:
            raise NotFound("User not found after write.")
        return created

    def login(self, email: str, password: str) -> tuple[str, Identity]:
        """Return (bearer token, identity).

        Raises:
            Unauthorized: bad credentials, whatever the reason.
        """
        identity = self._store.verify_credential((email or "").strip().lower(), password or "")
        if identity is None:
            raise Unauthorized("Invalid email or password.")
        self._store.update_last_login(identity.id)
        return self._tokens.issue(identity), identity
