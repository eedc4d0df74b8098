"""
auth/oauth.py -- Authlib provider registry and server-side profile lookup.

The federation routes accept a profile supplied by the client (the SPA has
already completed the provider's sign-in). By default that profile is
trusted as given. With Settings.federation_verify_tokens enabled, the
client must also send the provider access token and the profile is fetched
from the provider here instead; the client-supplied email must match it.

Only providers with both client ID and secret configured get registered.

Security notes:
  [H1] Email verification is mandatory when fetching server-side. GitHub's
       primary address must be verified=true; Google must report
       email_verified. Microsoft Graph exposes no verification flag; the
       tenant-managed `mail` (or userPrincipalName) is accepted as-is.

Supported providers:
  google    -- OIDC discovery; userinfo endpoint.
  github    -- static endpoints; /user + /user/emails.
  microsoft -- Microsoft identity platform (tenant from settings); Graph /me.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuth

from auth.errors import DependencyError, InvalidArgument, Unauthorized
from auth.models import PROVIDERS, FederatedProfile

logger = logging.getLogger("staffgate.auth.oauth")

_LABELS = {"google": "Google", "github": "GitHub", "microsoft": "Microsoft"}


def build_oauth_registry(settings) -> OAuth:
    """Create an Authlib registry holding every configured provider."""
    oauth = OAuth()

    if settings.google_client_id and settings.google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google provider registered")

    if settings.github_client_id and settings.github_client_secret:
        oauth.register(
            name="github",
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub provider registered")

    if settings.microsoft_client_id and settings.microsoft_client_secret:
        tenant = settings.microsoft_tenant
        oauth.register(
            name="microsoft",
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
            server_metadata_url=f"https://login.microsoftonline.com/{tenant}/v2.0/.well-known/openid-configuration",
            api_base_url="https://graph.microsoft.com/v1.0/",
            client_kwargs={"scope": "openid email profile User.Read"},
        )
        logger.info("Microsoft provider registered (tenant=%s)", tenant)

    return oauth


def get_enabled_providers(settings) -> list[dict]:
    """Return {"name", "label"} for every provider with credentials configured."""
    providers: list[dict] = []
    for name in PROVIDERS:
        if getattr(settings, f"{name}_client_id") and getattr(settings, f"{name}_client_secret"):
            providers.append({"name": name, "label": _LABELS[name]})
    return providers


# ---------------------------------------------------------------------------
# Server-side profile fetch [H1]
# ---------------------------------------------------------------------------


async def fetch_provider_profile(oauth: OAuth, provider: str, access_token: str) -> FederatedProfile:
    """Resolve the caller's access token into a provider-confirmed profile.

    Raises:
        InvalidArgument: provider not registered.
        Unauthorized:    provider rejected the token, or the email is unverified.
        DependencyError: provider unreachable or returned a server error.
    """
    client = oauth.create_client(provider)
    if client is None:
        raise InvalidArgument(f"Provider '{provider}' is not configured.")
    token = {"access_token": access_token, "token_type": "Bearer"}

    try:
        if provider == "github":
            return await _github_profile(client, token)
        if provider == "google":
            return await _google_profile(client, token)
        if provider == "microsoft":
            return await _microsoft_profile(client, token)
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code in (401, 403):
            raise Unauthorized("Provider rejected the access token.") from exc
        raise DependencyError(f"{_LABELS[provider]} returned an error.") from exc
    except httpx.HTTPError as exc:
        raise DependencyError(f"{_LABELS[provider]} is unreachable.") from exc
    raise InvalidArgument(f"Unknown provider: {provider!r}")


async def _github_profile(client, token: dict) -> FederatedProfile:
    """GitHub needs two calls: /user for the display name, /user/emails for the primary verified email."""
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break
    if not email:
        raise Unauthorized("GitHub account has no primary verified email.")
    return FederatedProfile(email=email, display_name=profile.get("name") or profile.get("login"))


async def _google_profile(client, token: dict) -> FederatedProfile:
    userinfo = await client.userinfo(token=token)
    if not userinfo.get("email_verified", False):
        raise Unauthorized("Google account email is not verified.")
    email = userinfo.get("email")
    if not email:
        raise Unauthorized("Google profile has no email.")
    return FederatedProfile(email=email, display_name=userinfo.get("name"))


async def _microsoft_profile(client, token: dict) -> FederatedProfile:
    resp = await client.get("me", token=token)
    resp.raise_for_status()
    me = resp.json()
    email = me.get("mail") or me.get("userPrincipalName")
    if not email:
        raise Unauthorized("Microsoft profile has no email.")
    return FederatedProfile(email=email, display_name=me.get("displayName"))
