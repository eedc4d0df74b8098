"""
auth/federation.py -- Link social-provider identities to local identities.

resolve_or_create(provider, profile):
  - no identity with the email  -> create one: email_verified=true,
    provider stamped, no password, username from the display name;
  - identity exists, no provider -> stamp this provider (first write wins);
  - identity exists with a provider -> left unchanged, even if it differs.
    Stamping is a conditional UPDATE, so two providers racing on the same
    email cannot both claim it.
  Always finishes by issuing a bearer token for the resolved identity.

Trust boundary: the profile is taken as given. Callers that want the
provider to vouch for it fetch it with auth.oauth.fetch_provider_profile first.
"""

from __future__ import annotations

import logging
import re
import secrets

from auth.errors import Conflict, InvalidArgument, NotFound
from auth.models import DEFAULT_ROLE, PROVIDERS, FederatedProfile, FederationResult, Identity
from auth.store import IdentityStore
from auth.tokens import TokenService

logger = logging.getLogger("staffgate.auth.federation")

_USERNAME_ATTEMPTS = 5
_USERNAME_UNSAFE = re.compile(r"[^\w.\- ]+")


def _base_username(profile: FederatedProfile) -> str:
    name = _USERNAME_UNSAFE.sub("", (profile.display_name or "").strip())[:64]
    return name or profile.email.split("@", 1)[0]


class FederationAdapter:
    def __init__(self, store: IdentityStore, tokens: TokenService) -> None:
        self._store = store
        self._tokens = tokens

    def resolve_or_create(self, provider: str, profile: FederatedProfile) -> FederationResult:
        """Find or create the local identity for a provider profile and issue a token.

        Raises:
            InvalidArgument: unknown provider or profile without an email.
        """
        if provider not in PROVIDERS:
            raise InvalidArgument(f"Unknown provider: {provider!r}")
        email = (profile.email or "").strip().lower()
        if not email:
            raise InvalidArgument("Provider profile has no email.")
        profile = FederatedProfile(email=email, display_name=profile.display_name)

        identity = self._store.get_by_email(email)
        is_new_user = False
        if identity is None:
            identity, is_new_user = self._create(provider, profile)
        elif identity.provider is None:
            if self._store.set_provider(identity.id, provider):
                logger.info("Linked identity %s to %s", identity.id, provider)
            identity = self._reload(identity.id)
        elif identity.provider != provider:
            logger.info(
                "Identity %s already linked to %s; %s login leaves the link unchanged",
                identity.id,
                identity.provider,
                provider,
            )

        self._store.update_last_login(identity.id)
        return FederationResult(identity=identity, is_new_user=is_new_user, token=self._tokens.issue(identity))

    def _create(self, provider: str, profile: FederatedProfile) -> tuple[Identity, bool]:
        """Insert a federated identity, suffixing the username if it is taken.

        A Conflict on the email means a concurrent request created the same
        account first; that account is returned instead.
        """
        base = _base_username(profile)
        username = base
        for _ in range(_USERNAME_ATTEMPTS):
            if self._store.get_by_username(username) is None:
                try:
                    uid = self._store.create_identity(
                        Identity(
                            username=username,
                            email=profile.email,
                            role=DEFAULT_ROLE,
                            email_verified=True,
                            provider=provider,
                        )
                    )
                except Conflict:
                    existing = self._store.get_by_email(profile.email)
                    if existing is not None:
                        return existing, False
                else:
                    logger.info("Created federated identity %s via %s", uid, provider)
                    return self._reload(uid), True
            username = f"{base}-{secrets.token_hex(3)}"
        raise Conflict("Could not allocate a unique username for this account.")

    def _reload(self, identity_id: int) -> Identity:
        identity = self._store.get_by_id(identity_id)
        if identity is None:
            raise NotFound("User not found.")
        return identity
