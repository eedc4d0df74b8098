"""Unit tests for auth/oauth.py -- provider registry and server-side profile fetch.

Provider HTTP calls are replaced with a fake Authlib client; nothing goes on
the network.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import httpx
import pytest

from auth.errors import DependencyError, InvalidArgument, Unauthorized
from auth.oauth import build_oauth_registry, fetch_provider_profile, get_enabled_providers


def _settings(**overrides) -> SimpleNamespace:
    values = {
        "google_client_id": "",
        "google_client_secret": "",
        "github_client_id": "",
        "github_client_secret": "",
        "microsoft_client_id": "",
        "microsoft_client_secret": "",
        "microsoft_tenant": "common",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _response(status: int, payload) -> httpx.Response:
    return httpx.Response(status, json=payload, request=httpx.Request("GET", "https://provider.test/"))


class _FakeClient:
    def __init__(self, routes: dict, userinfo: dict | None = None):
        self.routes = routes
        self._userinfo = userinfo or {}

    async def get(self, path, token=None):
        result = self.routes[path]
        if isinstance(result, Exception):
            raise result
        return result

    async def userinfo(self, token=None):
        return self._userinfo


class _FakeRegistry:
    def __init__(self, clients: dict):
        self.clients = clients

    def create_client(self, name):
        return self.clients.get(name)


def _fetch(registry, provider):
    return asyncio.run(fetch_provider_profile(registry, provider, "access-token"))


def test_enabled_providers_need_id_and_secret():
    settings = _settings(github_client_id="id", github_client_secret="secret", google_client_id="only-id")
    assert get_enabled_providers(settings) == [{"name": "github", "label": "GitHub"}]


def test_registry_registers_configured_providers():
    oauth = build_oauth_registry(_settings(github_client_id="id", github_client_secret="secret"))
    assert oauth.create_client("github") is not None
    assert oauth.create_client("google") is None


def test_github_primary_verified_email():
    client = _FakeClient(
        {
            "user": _response(200, {"login": "octo", "name": None}),
            "user/emails": _response(
                200,
                [
                    {"email": "old@x.com", "primary": False, "verified": True},
                    {"email": "octo@x.com", "primary": True, "verified": True},
                ],
            ),
        }
    )
    profile = _fetch(_FakeRegistry({"github": client}), "github")
    assert profile.email == "octo@x.com"
    assert profile.display_name == "octo"


def test_github_unverified_primary_is_rejected():
    client = _FakeClient(
        {
            "user": _response(200, {"login": "octo"}),
            "user/emails": _response(200, [{"email": "octo@x.com", "primary": True, "verified": False}]),
        }
    )
    with pytest.raises(Unauthorized):
        _fetch(_FakeRegistry({"github": client}), "github")


def test_google_requires_verified_email():
    verified = _FakeClient({}, userinfo={"email": "g@x.com", "email_verified": True, "name": "Gee"})
    assert _fetch(_FakeRegistry({"google": verified}), "google").email == "g@x.com"

    unverified = _FakeClient({}, userinfo={"email": "g@x.com", "email_verified": False})
    with pytest.raises(Unauthorized):
        _fetch(_FakeRegistry({"google": unverified}), "google")


def test_microsoft_falls_back_to_principal_name():
    client = _FakeClient({"me": _response(200, {"userPrincipalName": "ms@x.com", "displayName": "Em Es"})})
    profile = _fetch(_FakeRegistry({"microsoft": client}), "microsoft")
    assert profile.email == "ms@x.com"
    assert profile.display_name == "Em Es"


def test_rejected_token_is_unauthorized():
    client = _FakeClient({"me": _response(401, {"error": "invalid_token"})})
    with pytest.raises(Unauthorized):
        _fetch(_FakeRegistry({"microsoft": client}), "microsoft")


def test_provider_outage_is_dependency_error():
    down = _FakeClient({"me": _response(503, {})})
    with pytest.raises(DependencyError):
        _fetch(_FakeRegistry({"microsoft": down}), "microsoft")

    unreachable = _FakeClient({"me": httpx.ConnectError("boom")})
    with pytest.raises(DependencyError):
        _fetch(_FakeRegistry({"microsoft": unreachable}), "microsoft")


def test_unconfigured_provider():
    with pytest.raises(InvalidArgument):
        _fetch(_FakeRegistry({}), "github")
