"""
auth/staff_codes.py -- Department-scoped one-time registration codes.

Format: DDDD-XXX -- four random digits (1000-9999), a dash, and the first
three letters of the department upper-cased ("Human Resources" -> HUM,
"IT Support" -> ITS, "R&D Lab" -> RDL). Non-letters never reach the prefix.

validate() is consume-on-validate: a genuine match marks the code used in
the same conditional UPDATE that checks it, so concurrent validations of
one code produce exactly one valid=True. Failures are soft (valid=False
with a message), never exceptions.

generate() retries collisions rather than surfacing them: with only 9000
codes per department prefix, birthday collisions are routine at scale.
"""

from __future__ import annotations

import logging
import re
import secrets

from auth.errors import Conflict, InvalidArgument
from auth.models import StaffCode, StaffCodeValidation
from auth.store import IdentityStore

logger = logging.getLogger("staffgate.kyc")

DEFAULT_DEPARTMENTS: tuple[str, ...] = (
    "Engineering",
    "Finance",
    "Human Resources",
    "Marketing",
    "Sales",
    "Operations",
)

MAX_CODES_PER_REQUEST = 100
_ATTEMPTS_PER_CODE = 50
_CODE_RE = re.compile(r"^\d{4}-[A-Z]{3}$")
_NON_LETTER_RE = re.compile(r"[^A-Za-z]")

MSG_VALID = "Staff code validated successfully"
MSG_BAD_FORMAT = "Invalid staff code format"
MSG_UNAVAILABLE = "Invalid staff code or code already used"


def normalize_department(department: str) -> str:
    dept = (department or "").strip()
    if len(dept) < 3:
        raise InvalidArgument("Department name must be at least 3 characters.")
    return dept


def department_prefix(department: str) -> str:
    letters = _NON_LETTER_RE.sub("", normalize_department(department))
    if len(letters) < 3:
        raise InvalidArgument("Department name must contain at least 3 letters.")
    return letters[:3].upper()


def generate_code(department: str) -> str:
    digits = 1000 + secrets.randbelow(9000)
    return f"{digits}-{department_prefix(department)}"


def is_well_formed(code: str, department: str) -> bool:
    """True if code matches DDDD-XXX and its prefix belongs to department."""
    return bool(_CODE_RE.match(code)) and code[-3:] == department_prefix(department)


class StaffCodeGate:
    def __init__(self, store: IdentityStore) -> None:
        self._store = store

    def validate(self, code: str, department: str) -> StaffCodeValidation:
        """Check and consume a code in one step. Never raises for a bad code."""
        code = (code or "").strip().upper()
        try:
            dept = normalize_department(department)
            well_formed = is_well_formed(code, dept)
        except InvalidArgument:
            return StaffCodeValidation(valid=False, message=MSG_BAD_FORMAT)
        if not well_formed:
            return StaffCodeValidation(valid=False, message=MSG_BAD_FORMAT)
        if not self._store.consume_staff_code(code, dept):
            return StaffCodeValidation(valid=False, message=MSG_UNAVAILABLE)
        logger.info("Staff code validated for department %s", dept)
        return StaffCodeValidation(valid=True, message=MSG_VALID)

    def generate(self, department: str, count: int = 1) -> list[str]:
        """Mint count new codes for department.

        Raises:
            InvalidArgument: bad department or count outside 1..MAX_CODES_PER_REQUEST.
            Conflict:        no free code found after repeated attempts.
        """
        dept = normalize_department(department)
        prefix = department_prefix(dept)
        if not 1 <= count <= MAX_CODES_PER_REQUEST:
            raise InvalidArgument(f"Count must be between 1 and {MAX_CODES_PER_REQUEST}.")

        codes: list[str] = []
        for _ in range(count):
            for _attempt in range(_ATTEMPTS_PER_CODE):
                code = generate_code(dept)
                if self._store.insert_staff_code(code, dept):
                    codes.append(code)
                    break
                logger.debug("Staff code collision for %s, retrying", dept)
            else:
                raise Conflict(f"Code space for department prefix {prefix} is exhausted.")
        logger.info("Generated %d staff code(s) for %s", len(codes), dept)
        return codes

    def list_departments_with_available_codes(self) -> list[str]:
        return self._store.list_departments_with_available_codes()

    def list_available_codes(self, department: str | None = None) -> list[StaffCode]:
        return self._store.list_available_codes(department)
