"""
auth/two_factor.py -- TOTP two-factor authentication (RFC 6238) with backup codes.

Compatible with Google Authenticator, Authy, 1Password and other TOTP apps.

State machine per identity:

    Disabled --generate_secret--> SecretIssued --enable--> Enabled --disable--> Disabled

  generate_secret  new base32 secret + 10 backup codes, stored with enabled=false.
                   Re-running it while still SecretIssued replaces the pending
                   secret. Refused while Enabled (disable first).
  enable           a current TOTP for the stored secret flips enabled=true.
  verify           backup code (consumed) or TOTP. Only while Enabled.
  disable          TOTP only -- a stolen backup code must not be able to turn
                   protection off. Clears secret, backup codes and the flag.

TOTP tolerance is fixed at +/-2 steps (~60 s of clock drift at 30 s steps).

Backup codes are 16 uppercase hex chars (64 bits each). Only their HMAC
digests are stored; the raw codes are returned once from generate_secret.
"""

from __future__ import annotations

import base64
import logging
import secrets
from io import BytesIO

import pyotp
import qrcode

from auth.errors import Conflict, InvalidCode, NotEnabled, NotFound
from auth.models import Identity, TwoFactorEnrollment
from auth.store import IdentityStore
from auth.tokens import digest_opaque_token

logger = logging.getLogger("staffgate.auth.mfa")

TOTP_VALID_WINDOW = 2
BACKUP_CODE_COUNT = 10

METHOD_TOTP = "totp"
METHOD_BACKUP_CODE = "backupCode"


def generate_backup_code() -> str:
    return secrets.token_hex(8).upper()


def _normalize(code: str) -> str:
    return "".join(code.split()).replace("-", "").upper()


def render_qr_data_url(provisioning_uri: str) -> str:
    """Render the otpauth:// URI as a PNG data URL for <img src=...>."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(provisioning_uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class TwoFactorService:
    """Manages 2FA enrollment and verification for identities."""

    def __init__(self, store: IdentityStore, secret_key: str, issuer_name: str = "Staffgate") -> None:
        self._store = store
        self._secret_key = secret_key
        self.issuer_name = issuer_name

    def _digest(self, code: str) -> str:
        return digest_opaque_token(_normalize(code), self._secret_key)

    def _totp_matches(self, secret: str, code: str) -> bool:
        candidate = _normalize(code)
        if not candidate.isdigit():
            return False
        return pyotp.TOTP(secret).verify(candidate, valid_window=TOTP_VALID_WINDOW)

    def generate_secret(self, identity: Identity) -> TwoFactorEnrollment:
        """Start (or restart) enrollment. The returned backup codes are never retrievable again.

        Raises:
            Conflict: 2FA is already enabled.
        """
        if identity.two_factor_enabled:
            raise Conflict("Two-factor authentication is already enabled. Disable it first.")

        secret = pyotp.random_base32()
        backup_codes = [generate_backup_code() for _ in range(BACKUP_CODE_COUNT)]
        self._store.set_two_factor(
            identity.id,
            secret=secret,
            backup_codes=[self._digest(c) for c in backup_codes],
            enabled=False,
        )

        provisioning_uri = pyotp.TOTP(secret).provisioning_uri(name=identity.email, issuer_name=self.issuer_name)
        logger.info("2FA enrollment started for identity %s", identity.id)
        return TwoFactorEnrollment(
            secret=secret,
            provisioning_uri=provisioning_uri,
            qr_code=render_qr_data_url(provisioning_uri),
            backup_codes=backup_codes,
        )

    def enable(self, identity: Identity, code: str) -> None:
        """Confirm enrollment with a current TOTP.

        Raises:
            NotFound:    no secret has been issued.
            InvalidCode: code is not a valid TOTP within the window, or the
                         secret was replaced concurrently.
        """
        secret = identity.two_factor_secret
        if not secret:
            raise NotFound("No two-factor secret has been generated.")
        if not self._totp_matches(secret, code):
            raise InvalidCode()
        if not self._store.enable_two_factor(identity.id, secret):
            raise InvalidCode("Two-factor secret changed; generate a new one and try again.")
        logger.info("2FA enabled for identity %s", identity.id)

    def verify(self, identity: Identity, code: str) -> str:
        """Check a second-factor code. Returns METHOD_BACKUP_CODE or METHOD_TOTP.

        Backup codes are checked first; a matching one is removed before
        success is reported, so it can never be used again.

        Raises:
            NotEnabled:  2FA is not active.
            InvalidCode: neither a backup code nor a valid TOTP.
        """
        if not identity.two_factor_enabled or not identity.two_factor_secret:
            raise NotEnabled()

        digest = self._digest(code)
        if digest in set(identity.two_factor_backup_codes):
            if self._store.consume_backup_code(identity.id, digest):
                remaining = len(identity.two_factor_backup_codes) - 1
                logger.info("Backup code redeemed for identity %s (%d remaining)", identity.id, remaining)
                return METHOD_BACKUP_CODE
            raise InvalidCode()

        if self._totp_matches(identity.two_factor_secret, code):
            return METHOD_TOTP
        raise InvalidCode()

    def disable(self, identity: Identity, code: str) -> None:
        """Turn 2FA off. Only a TOTP is accepted, never a backup code.

        Raises:
            NotEnabled:  2FA is not active.
            InvalidCode: code is not a valid TOTP.
        """
        if not identity.two_factor_enabled or not identity.two_factor_secret:
            raise NotEnabled()
        if not self._totp_matches(identity.two_factor_secret, code):
            raise InvalidCode()
        self._store.set_two_factor(identity.id, secret=None, backup_codes=[], enabled=False)
        logger.info("2FA disabled for identity %s", identity.id)

    def status(self, identity: Identity) -> dict:
        return {
            "enabled": identity.two_factor_enabled,
            "pending": bool(identity.two_factor_secret) and not identity.two_factor_enabled,
            "backup_codes_remaining": len(identity.two_factor_backup_codes) if identity.two_factor_enabled else 0,
        }
