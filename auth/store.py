"""
auth/store.py -- SQLAlchemy Core persistence layer for the identity core.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity and _row_to_staff_code are the mappers. Services and routes
never touch SQL directly.

Atomicity:
  Multiple server processes may run against the same database, so in-process
  locks protect nothing. Every read-then-write on a one-time value is a single
  conditional UPDATE whose rowcount decides the winner, or one transaction:

    consume_staff_code()          UPDATE ... WHERE used = 0
    create_identity(staff_code=)  consume + INSERT in one transaction; a
                                  duplicate email rolls the consumption back
    confirm_email_verification()  token used = 1 and email_verified = 1 together
    consume_backup_code()         compare-and-set on the serialized digest list
    enable_two_factor()           WHERE two_factor_secret = <verified secret>
    set_provider()                WHERE provider IS NULL (first write wins)

Security:
  All queries use bound parameters. No f-strings in SQL.
  verify_credential() always runs bcrypt, against a dummy hash when the
  account is unknown or federated-only, so response time does not reveal
  whether an email is registered [C1].

DB path: auth/staffgate.db by default (Settings.database_url overrides).
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    false,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import Conflict, InvalidArgument, InvalidOrExpired, NotFound
from auth.models import ROLES, Identity, StaffCode
from auth.tokens import hash_password, verify_password

logger = logging.getLogger("staffgate.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'staffgate.db'}"

# Backup-code compare-and-set retries. A lost race only happens when two
# different codes of the same identity are redeemed concurrently.
_BACKUP_CODE_CAS_ATTEMPTS = 5

_UNSET = object()

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_identities = Table(
    "identities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for federated-only identities
    Column("role", String(20), nullable=False, server_default="employer"),
    Column("email_verified", Boolean, nullable=False, server_default=false()),
    Column("provider", String(20)),  # "google", "github", "microsoft"
    Column("staff_code", String(16), unique=True),
    Column("department", String(100)),
    Column("two_factor_enabled", Boolean, nullable=False, server_default=false()),
    Column("two_factor_secret", String(64)),
    Column("two_factor_backup_codes", Text),  # JSON array of HMAC digests
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_verification_tokens = Table(
    "verification_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # UNIQUE: one active record per identity; a new request replaces the old one.
    Column("identity_id", Integer, nullable=False, unique=True),
    Column("token_hash", String(64), nullable=False),
    Column("expires_at", Float, nullable=False),  # UNIX timestamp
    Column("used", Boolean, nullable=False, server_default=false()),
    Column("created_at", String(32), nullable=False),
)

_staff_codes = Table(
    "staff_codes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(16), nullable=False, unique=True),
    Column("department", String(100), nullable=False),
    Column("used", Boolean, nullable=False, server_default=false()),
    Column("created_at", String(32), nullable=False),
    Column("used_at", String(32)),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_codes(digests: list[str]) -> str:
    return json.dumps(digests)


def _load_codes(raw: str | None) -> list[str]:
    if not raw:
        return []
    return list(json.loads(raw))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for identities, verification tokens and staff codes.

    Usage:
        store = IdentityStore("sqlite:///:memory:", bcrypt_rounds=12)
        uid = store.create_identity(Identity(username="alice", email="a@x.com", role="employer",
                                             hashed_password=store.hash_password("pw123456")))
        identity = store.verify_credential("a@x.com", "pw123456")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, bcrypt_rounds: int = 12) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self.bcrypt_rounds = bcrypt_rounds
        # Timing equalization dummy hash [C1], computed with the live cost
        # factor so unknown-account checks cost the same as real ones.
        self._dummy_hash = hash_password("staffgate_timing_dummy", rounds=bcrypt_rounds)

    def hash_password(self, plain: str) -> str:
        """Hash with this store's configured cost factor."""
        return hash_password(plain, rounds=self.bcrypt_rounds)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except SQLAlchemyError:
            logger.exception("Database ping failed")
            return False
        return True

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def has_identities(self) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_identities.c.id).limit(1)).fetchone()
        return row is not None

    def get_by_id(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_email(self, email: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.email == email)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_username(self, username: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.username == username)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_email_or_username(self, email: str, username: str) -> Identity | None:
        """Return any identity holding either the email or the username.

        Used for uniqueness checks before creation. Both fields are checked
        because either one identifies an account.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _identities.select()
                .where(or_(_identities.c.email == email, _identities.c.username == username))
                .order_by(_identities.c.id)
                .limit(1)
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self) -> list[Identity]:
        """Return all identities ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_identities.select().order_by(_identities.c.id)).fetchall()
        return [_row_to_identity(r) for r in rows]

    def create_identity(
        self,
        identity: Identity,
        staff_code: str | None = None,
        department: str | None = None,
    ) -> int:
        """Insert a new identity and return its id.

        When staff_code is given, the code is consumed for department in the
        same transaction as the insert. Either both happen or neither does:
        a duplicate email/username rolls the consumption back, and an invalid
        or already-used code aborts the insert.

        Raises:
            Conflict:         email, username or staff_code already present.
            InvalidOrExpired: staff_code unknown, for another department, or used.
        """
        try:
            with self.engine.begin() as conn:
                if staff_code is not None:
                    consumed = conn.execute(
                        _staff_codes.update()
                        .where(
                            (_staff_codes.c.code == staff_code)
                            & (_staff_codes.c.department == department)
                            & (_staff_codes.c.used.is_(False))
                        )
                        .values(used=True, used_at=_now_iso())
                    )
                    if consumed.rowcount != 1:
                        raise InvalidOrExpired("Invalid staff code or code already used.")
                result = conn.execute(
                    _identities.insert().values(
                        username=identity.username,
                        email=identity.email,
                        hashed_password=identity.hashed_password,
                        role=identity.role,
                        email_verified=identity.email_verified,
                        provider=identity.provider,
                        staff_code=staff_code if staff_code is not None else identity.staff_code,
                        department=department if department is not None else identity.department,
                        two_factor_enabled=False,
                        two_factor_secret=None,
                        two_factor_backup_codes=_dump_codes([]),
                        created_at=_now_iso(),
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict("An account with that email or username already exists.") from exc

    def set_role(self, identity_id: int, role: str) -> Identity:
        """Change an identity's role.

        Raises:
            InvalidArgument: role not in ROLES.
            NotFound:        identity_id absent.
        """
        if role not in ROLES:
            raise InvalidArgument(f"Invalid role. Must be one of: {', '.join(ROLES)}.")
        with self.engine.begin() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(role=role))
        if result.rowcount == 0:
            raise NotFound("User not found.")
        updated = self.get_by_id(identity_id)
        if updated is None:
            raise NotFound("User not found.")
        return updated

    def verify_credential(self, email: str, password: str) -> Identity | None:
        """Return the identity if the password matches, None on any failure.

        Always runs bcrypt whether or not the account exists [C1]:
        - Unknown email or no password set: bcrypt against the dummy hash
        - Wrong password: bcrypt against the real hash
        The caller cannot distinguish the three failure cases.
        """
        identity = self.get_by_email(email)
        if identity is None or identity.hashed_password is None:
            verify_password(password, self._dummy_hash)
            return None
        if not verify_password(password, identity.hashed_password):
            return None
        return identity

    def mark_email_verified(self, identity_id: int) -> None:
        self._update_existing(identity_id, email_verified=True)

    def set_provider(self, identity_id: int, provider: str) -> bool:
        """Stamp a federation provider onto an identity that has none.

        First write wins: returns False (and changes nothing) when the identity
        already carries a provider.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.provider.is_(None)))
                .values(provider=provider)
            )
        return result.rowcount > 0

    def update_last_login(self, identity_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Two-factor state
    # ------------------------------------------------------------------

    def set_two_factor(
        self,
        identity_id: int,
        secret=_UNSET,
        backup_codes=_UNSET,
        enabled=_UNSET,
    ) -> None:
        """Targeted mutation of the 2FA columns. Only the arguments passed are written.

        backup_codes are digests, not raw codes.
        """
        fields: dict = {}
        if secret is not _UNSET:
            fields["two_factor_secret"] = secret
        if backup_codes is not _UNSET:
            fields["two_factor_backup_codes"] = _dump_codes(list(backup_codes))
        if enabled is not _UNSET:
            fields["two_factor_enabled"] = bool(enabled)
        if fields:
            self._update_existing(identity_id, **fields)

    def enable_two_factor(self, identity_id: int, verified_secret: str) -> bool:
        """Flip two_factor_enabled only if the stored secret is still the one verified.

        Guards against a concurrent re-enrollment replacing the secret between
        the TOTP check and the write.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where((_identities.c.id == identity_id) & (_identities.c.two_factor_secret == verified_secret))
                .values(two_factor_enabled=True)
            )
        return result.rowcount > 0

    def consume_backup_code(self, identity_id: int, digest: str) -> bool:
        """Atomically remove one backup-code digest. Returns True if this call removed it.

        Compare-and-set on the serialized list: the UPDATE only lands if the
        column still holds exactly what was read. Losing the race re-reads;
        once the digest is gone (another request redeemed it) the answer is False.

        The read happens outside the write transaction. On SQLite a read
        snapshot upgraded to a write fails with "database is locked" when
        another writer got in first, while a lone conditional UPDATE waits.
        """
        for _ in range(_BACKUP_CODE_CAS_ATTEMPTS):
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(_identities.c.two_factor_backup_codes).where(_identities.c.id == identity_id)
                ).fetchone()
            if row is None:
                return False
            current_raw = row.two_factor_backup_codes
            digests = _load_codes(current_raw)
            if digest not in digests:
                return False
            digests.remove(digest)
            condition = (
                _identities.c.two_factor_backup_codes.is_(None)
                if current_raw is None
                else _identities.c.two_factor_backup_codes == current_raw
            )
            with self.engine.begin() as conn:
                result = conn.execute(
                    _identities.update()
                    .where((_identities.c.id == identity_id) & condition)
                    .values(two_factor_backup_codes=_dump_codes(digests))
                )
            if result.rowcount == 1:
                return True
        logger.warning("Backup code redemption for identity %s lost %d races", identity_id, _BACKUP_CODE_CAS_ATTEMPTS)
        return False

    # ------------------------------------------------------------------
    # Email verification tokens
    # ------------------------------------------------------------------

    def upsert_verification_token(self, identity_id: int, token_hash: str, expires_at: float) -> None:
        """Make (token_hash, expires_at) the single active token for the identity.

        Replaces any prior token, used or not. The UNIQUE(identity_id) index
        turns a concurrent double-insert into an IntegrityError; the loser
        falls through to an UPDATE.
        """
        values = {"token_hash": token_hash, "expires_at": expires_at, "used": False, "created_at": _now_iso()}
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.update().where(_verification_tokens.c.identity_id == identity_id).values(**values)
            )
            if result.rowcount > 0:
                return
        try:
            with self.engine.begin() as conn:
                conn.execute(_verification_tokens.insert().values(identity_id=identity_id, **values))
        except IntegrityError:
            with self.engine.begin() as conn:
                conn.execute(
                    _verification_tokens.update()
                    .where(_verification_tokens.c.identity_id == identity_id)
                    .values(**values)
                )

    def confirm_email_verification(self, identity_id: int, token_hash: str, now: float | None = None) -> bool:
        """Consume the token and mark the email verified, in one transaction.

        Returns False (nothing written) unless a row matches
        (identity, token, used = false, expires_at > now).
        """
        now = time.time() if now is None else now
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _verification_tokens.update()
                .where(
                    (_verification_tokens.c.identity_id == identity_id)
                    & (_verification_tokens.c.token_hash == token_hash)
                    & (_verification_tokens.c.used.is_(False))
                    & (_verification_tokens.c.expires_at > now)
                )
                .values(used=True)
            )
            if consumed.rowcount != 1:
                return False
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(email_verified=True))
        return True

    # ------------------------------------------------------------------
    # Staff codes
    # ------------------------------------------------------------------

    def insert_staff_code(self, code: str, department: str) -> bool:
        """Insert a new unused code. Returns False if the code already exists."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_staff_codes.insert().values(code=code, department=department, created_at=_now_iso()))
        except IntegrityError:
            return False
        return True

    def consume_staff_code(self, code: str, department: str) -> bool:
        """Mark the code used if it exists, belongs to department, and is unused.

        Single conditional UPDATE: of any number of concurrent callers exactly
        one sees rowcount == 1.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _staff_codes.update()
                .where(
                    (_staff_codes.c.code == code)
                    & (_staff_codes.c.department == department)
                    & (_staff_codes.c.used.is_(False))
                )
                .values(used=True, used_at=_now_iso())
            )
        return result.rowcount == 1

    def list_departments_with_available_codes(self) -> list[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_staff_codes.c.department)
                .where(_staff_codes.c.used.is_(False))
                .distinct()
                .order_by(_staff_codes.c.department)
            ).fetchall()
        return [r.department for r in rows]

    def list_available_codes(self, department: str | None = None) -> list[StaffCode]:
        """Unused codes, ordered by department then code."""
        query = _staff_codes.select().where(_staff_codes.c.used.is_(False))
        if department is not None:
            query = query.where(_staff_codes.c.department == department)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_staff_codes.c.department, _staff_codes.c.code)).fetchall()
        return [_row_to_staff_code(r) for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _update_existing(self, identity_id: int, **fields) -> None:
        with self.engine.begin() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**fields))
        if result.rowcount == 0:
            raise NotFound("User not found.")

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        email_verified=bool(row.email_verified),
        provider=row.provider,
        staff_code=row.staff_code,
        department=row.department,
        two_factor_enabled=bool(row.two_factor_enabled),
        two_factor_secret=row.two_factor_secret,
        two_factor_backup_codes=_load_codes(row.two_factor_backup_codes),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_staff_code(row) -> StaffCode:
    return StaffCode(
        id=row.id,
        code=row.code,
        department=row.department,
        used=bool(row.used),
        created_at=row.created_at,
        used_at=row.used_at,
    )
