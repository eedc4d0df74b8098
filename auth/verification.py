"""
auth/verification.py -- Email-ownership verification.

Flow:
  request_verification(email)
      -> mint a 256-bit token, store only its HMAC digest as the identity's
         single active token (replacing any previous one), email the raw token
         in a link to the user.
  confirm_verification(email, token)
      -> consume the matching unused, unexpired token and set
         email_verified = true, both in one transaction.

Tokens expire after Settings.verification_token_ttl_seconds (24h). Expired
rows are never deleted; they just stop matching.
"""

from __future__ import annotations

import logging
import time
from urllib.parse import urlencode

from auth.errors import AlreadyVerified, InvalidOrExpired, NotFound
from auth.mailer import Mailer, redact_email
from auth.models import Identity
from auth.store import IdentityStore
from auth.tokens import digest_opaque_token, generate_opaque_token

logger = logging.getLogger("staffgate.auth.verification")


class EmailVerificationFlow:
    def __init__(
        self,
        store: IdentityStore,
        mailer: Mailer,
        secret_key: str,
        app_base_url: str,
        ttl_seconds: int = 24 * 3600,
    ) -> None:
        self._store = store
        self._mailer = mailer
        self._secret_key = secret_key
        self._app_base_url = app_base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds

    def build_link(self, email: str, token: str) -> str:
        return f"{self._app_base_url}/verify-email?{urlencode({'token': token, 'email': email})}"

    def request_verification(self, email: str) -> None:
        """Issue a fresh verification token and email it.

        Raises:
            NotFound:        no identity with that email.
            AlreadyVerified: the email is already verified.
            DependencyError: the mail transport failed. The token row is already
                             written; a later request simply replaces it.
        """
        identity = self._store.get_by_email(email)
        if identity is None:
            raise NotFound("User not found.")
        if identity.email_verified:
            raise AlreadyVerified()

        raw_token = generate_opaque_token()
        self._store.upsert_verification_token(
            identity.id,
            digest_opaque_token(raw_token, self._secret_key),
            time.time() + self.ttl_seconds,
        )
        self._mailer.send_verification_email(identity.email, self.build_link(identity.email, raw_token))
        logger.info("Verification email issued for identity %s (%s)", identity.id, redact_email(identity.email))

    def confirm_verification(self, email: str, token: str) -> Identity:
        """Consume the token and mark the identity verified. Returns the updated identity.

        Raises:
            NotFound:         no identity with that email.
            InvalidOrExpired: no unused, unexpired token matches (including a
                              token that was already consumed).
        """
        identity = self._store.get_by_email(email)
        if identity is None:
            raise NotFound("User not found.")

        if not self._store.confirm_email_verification(identity.id, digest_opaque_token(token, self._secret_key)):
            raise InvalidOrExpired("Invalid or expired verification token.")

        logger.info("Email verified for identity %s", identity.id)
        verified = self._store.get_by_id(identity.id)
        if verified is None:
            raise NotFound("User not found.")
        return verified
