"""Unit tests for the preset OAuth providers."""

from __future__ import annotations

import asyncio
import json

from typing import Any

import httpx
import pytest

from authmanager.exceptions import AuthError, AuthErrorCode
from authmanager.providers.oauth import OAuthFlowEngine
from authmanager.providers.social import (
    AppleProvider,
    FacebookProvider,
    GitHubProvider,
    GoogleProvider,
    LinkedInProvider,
    MicrosoftProvider,
    OIDCProvider,
    SlackProvider,
)
from authmanager.storage import CredentialStore
from authmanager.types import SignOutOptions
from tests.helpers import MockBackend, RedirectingAuthorizer, json_body, make_id_token


def build(
    provider_cls: type[OAuthFlowEngine],
    options: dict[str, Any],
    store: CredentialStore,
    http: MockBackend,
    authorizer: RedirectingAuthorizer | None = None,
) -> OAuthFlowEngine:
    provider = provider_cls(options, store, http_client=http.client(), authorizer=authorizer or RedirectingAuthorizer())
    asyncio.run(provider.initialize())
    return provider


# ── Google ─────────────────────────────────────────────────────────────


class TestGoogleProvider:
    """Tests for GoogleProvider."""

    def test_authorization_url(self, store: CredentialStore, http: MockBackend) -> None:
        """Google requests offline access and incremental scopes."""
        http.add("POST", "https://oauth2.googleapis.com/token", json={"access_token": "a"})
        http.add("GET", "https://openidconnect.googleapis.com/v1/userinfo", json={"sub": "g-1"})
        authorizer = RedirectingAuthorizer()
        provider = build(GoogleProvider, {"client_id": "gid", "hosted_domain": "example.com"}, store, http, authorizer)

        asyncio.run(provider.sign_in())

        assert authorizer.opened[0].startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        params = authorizer.last_params
        assert params["scope"] == "openid email profile"
        assert params["access_type"] == "offline"
        assert params["include_granted_scopes"] == "true"
        assert params["hd"] == "example.com"

    def test_profile_from_userinfo(self, store: CredentialStore, http: MockBackend) -> None:
        """Userinfo overlays the ID token claims."""
        http.add(
            "POST",
            "https://oauth2.googleapis.com/token",
            json={
                "access_token": "a",
                "refresh_token": "r",
                "expires_in": 3599,
                "id_token": make_id_token({"sub": "g-1", "email": "old@example.com"}),
            },
        )
        http.add(
            "GET",
            "https://openidconnect.googleapis.com/v1/userinfo",
            json={
                "sub": "g-1",
                "email": "ada@example.com",
                "email_verified": True,
                "name": "Ada",
                "picture": "https://lh3/p.png",
            },
        )
        provider = build(GoogleProvider, {"client_id": "gid"}, store, http)

        user = asyncio.run(provider.sign_in()).user

        assert user.uid == "g-1"
        assert user.email == "ada@example.com"
        assert user.email_verified is True
        assert user.display_name == "Ada"
        assert user.photo_url == "https://lh3/p.png"
        assert user.provider_data[0].provider_id == "google"
        request = http.sent("GET", "https://openidconnect.googleapis.com/v1/userinfo")[0]
        assert request.headers["Authorization"] == "Bearer a"

    def test_revoke(self, store: CredentialStore, http: MockBackend) -> None:
        """Revocation posts to Google's revoke endpoint."""
        http.add("POST", "https://oauth2.googleapis.com/token", json={"access_token": "a"})
        http.add("GET", "https://openidconnect.googleapis.com/v1/userinfo", json={"sub": "g-1"})
        http.add("POST", "https://oauth2.googleapis.com/revoke", json={})
        provider = build(GoogleProvider, {"client_id": "gid"}, store, http)
        asyncio.run(provider.sign_in())

        asyncio.run(provider.sign_out(SignOutOptions(revoke_token=True)))

        assert len(http.sent("POST", "https://oauth2.googleapis.com/revoke")) == 1


# ── GitHub ─────────────────────────────────────────────────────────────


class TestGitHubProvider:
    """Tests for GitHubProvider."""

    TOKEN = "https://github.com/login/oauth/access_token"  # noqa: S105

    def _routes(self, http: MockBackend) -> None:
        http.add("POST", self.TOKEN, json={"access_token": "gho_x", "scope": "read:user,user:email"})
        http.add(
            "GET",
            "https://api.github.com/user",
            json={"id": 42, "login": "octocat", "name": None, "email": None, "avatar_url": "https://a/42"},
        )

    def test_profile_with_primary_email(self, store: CredentialStore, http: MockBackend) -> None:
        """The verified primary email is used and the login backs the display name."""
        self._routes(http)
        http.add(
            "GET",
            "https://api.github.com/user/emails",
            json=[
                {"email": "other@example.com", "primary": False, "verified": True},
                {"email": "octo@example.com", "primary": True, "verified": True},
            ],
        )
        authorizer = RedirectingAuthorizer()
        provider = build(GitHubProvider, {"client_id": "ghid", "client_secret": "ghs"}, store, http, authorizer)

        user = asyncio.run(provider.sign_in()).user

        assert user.uid == "42"
        assert user.display_name == "octocat"
        assert user.email == "octo@example.com"
        assert user.email_verified is True
        assert user.custom_claims["login"] == "octocat"
        assert authorizer.last_params["scope"] == "read:user user:email"
        assert authorizer.last_params["allow_signup"] == "true"

    def test_email_scope_missing(self, store: CredentialStore, http: MockBackend) -> None:
        """Sign-in still succeeds when the email list is forbidden."""
        self._routes(http)
        http.add("GET", "https://api.github.com/user/emails", status_code=403, json={"message": "Forbidden"})
        provider = build(GitHubProvider, {"client_id": "ghid"}, store, http)

        user = asyncio.run(provider.sign_in()).user

        assert user.uid == "42"
        assert user.email is None
        assert user.email_verified is False

    def test_error_with_200(self, store: CredentialStore, http: MockBackend) -> None:
        """GitHub's HTTP 200 error bodies are still errors."""
        http.add("POST", self.TOKEN, json={"error": "bad_verification_code", "error_description": "The code is wrong"})
        provider = build(GitHubProvider, {"client_id": "ghid"}, store, http)
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.sign_in())
        assert exc_info.value.code is AuthErrorCode.INVALID_GRANT

    def test_revoke_through_applications_api(self, store: CredentialStore, http: MockBackend) -> None:
        """Revocation deletes the token with basic auth."""
        self._routes(http)
        revoke_url = "https://api.github.com/applications/ghid/token"
        http.add("DELETE", revoke_url, handler=lambda request: httpx.Response(204))
        provider = build(GitHubProvider, {"client_id": "ghid", "client_secret": "ghs"}, store, http)
        asyncio.run(provider.sign_in())

        asyncio.run(provider.revoke_access())

        request = http.sent("DELETE", revoke_url)[0]
        assert request.headers["Authorization"].startswith("Basic ")
        assert json_body(request) == {"access_token": "gho_x"}
        assert provider.current_user is None

    def test_revoke_without_secret(self, store: CredentialStore, http: MockBackend) -> None:
        """Without a client secret only local state is cleared."""
        self._routes(http)
        provider = build(GitHubProvider, {"client_id": "ghid"}, store, http)
        asyncio.run(provider.sign_in())

        asyncio.run(provider.revoke_access())

        assert not [r for r in http.requests if r.method == "DELETE"]
        assert provider.current_user is None


# ── Microsoft / Facebook / LinkedIn / Slack ────────────────────────────


class TestMicrosoftProvider:
    """Tests for MicrosoftProvider."""

    def test_tenant_endpoints(self, store: CredentialStore) -> None:
        """Endpoints are built from the tenant."""
        provider = MicrosoftProvider({"client_id": "m", "tenant": "contoso.onmicrosoft.com"}, store)
        endpoints = asyncio.run(provider.get_endpoints())
        base = "https://login.microsoftonline.com/contoso.onmicrosoft.com/oauth2/v2.0"
        assert endpoints.authorization_endpoint == f"{base}/authorize"
        assert endpoints.token_endpoint == f"{base}/token"
        assert endpoints.revoke_endpoint is None


class TestFacebookProvider:
    """Tests for FacebookProvider."""

    def test_graph_profile(self, store: CredentialStore, http: MockBackend) -> None:
        """The profile comes from the Graph API with explicit fields."""
        http.add("POST", "https://graph.facebook.com/v18.0/oauth/access_token", json={"access_token": "fb"})
        http.add(
            "GET",
            "https://graph.facebook.com/v18.0/me",
            json={"id": "7", "name": "Zuck", "email": "z@example.com", "picture": {"data": {"url": "https://p"}}},
        )
        provider = build(FacebookProvider, {"client_id": "fbid"}, store, http)

        user = asyncio.run(provider.sign_in()).user

        assert user.uid == "7"
        assert user.photo_url == "https://p"
        assert user.email_verified is True
        request = http.sent("GET", "https://graph.facebook.com/v18.0/me")[0]
        assert request.url.params["fields"] == "id,name,email,picture.type(large)"


class TestLinkedInProvider:
    """Tests for LinkedInProvider."""

    def test_oidc_profile(self, store: CredentialStore, http: MockBackend) -> None:
        """LinkedIn profiles come from its OIDC userinfo endpoint."""
        http.add("POST", "https://www.linkedin.com/oauth/v2/accessToken", json={"access_token": "li"})
        http.add("GET", "https://api.linkedin.com/v2/userinfo", json={"sub": "li-1", "name": "Reid"})
        provider = build(LinkedInProvider, {"client_id": "lid"}, store, http)
        user = asyncio.run(provider.sign_in()).user
        assert user.uid == "li-1"
        assert user.display_name == "Reid"


class TestSlackProvider:
    """Tests for SlackProvider."""

    def test_ok_false_is_error(self, store: CredentialStore, http: MockBackend) -> None:
        """Slack's ok=false userinfo responses fail the sign-in."""
        http.add("POST", "https://slack.com/api/openid.connect.token", json={"access_token": "xoxp"})
        http.add("GET", "https://slack.com/api/openid.connect.userInfo", json={"ok": False, "error": "invalid_auth"})
        provider = build(SlackProvider, {"client_id": "sid", "team": "T123"}, store, http)
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.sign_in())
        assert exc_info.value.code is AuthErrorCode.INVALID_CREDENTIALS
        assert "invalid_auth" in exc_info.value.message

    def test_team_parameter(self, store: CredentialStore, http: MockBackend) -> None:
        """A configured team preselects the workspace."""
        http.add("POST", "https://slack.com/api/openid.connect.token", json={"access_token": "xoxp"})
        http.add("GET", "https://slack.com/api/openid.connect.userInfo", json={"ok": True, "sub": "U1"})
        authorizer = RedirectingAuthorizer()
        provider = build(SlackProvider, {"client_id": "sid", "team": "T123"}, store, http, authorizer)
        assert asyncio.run(provider.sign_in()).user.uid == "U1"
        assert authorizer.last_params["team"] == "T123"


# ── Apple ──────────────────────────────────────────────────────────────


APPLE_TOKEN_URL = "https://appleid.apple.com/auth/token"


class TestAppleProvider:
    """Tests for AppleProvider."""

    def test_form_post_authorization(self, store: CredentialStore, http: MockBackend) -> None:
        """Apple asks for name and email with the form_post response mode."""
        http.add("POST", APPLE_TOKEN_URL, json={"access_token": "a", "id_token": make_id_token({"sub": "ap-1"})})
        authorizer = RedirectingAuthorizer()
        provider = build(AppleProvider, {"client_id": "com.example.web"}, store, http, authorizer)

        asyncio.run(provider.sign_in())

        assert authorizer.opened[0].startswith("https://appleid.apple.com/auth/authorize?")
        params = authorizer.last_params
        assert params["response_mode"] == "form_post"
        assert params["scope"] == "name email"

    def test_name_on_first_sign_in(self, store: CredentialStore, http: MockBackend) -> None:
        """The first authorization's user payload supplies the name and marks a new user."""
        claims = {
            "sub": "ap-1",
            "email": "relay@privaterelay.appleid.com",
            "email_verified": "true",
            "is_private_email": "true",
        }
        http.add("POST", APPLE_TOKEN_URL, json={"access_token": "a", "id_token": make_id_token(claims)})
        user_payload = json.dumps({"name": {"firstName": "Ada", "lastName": "Lovelace"}, "email": "ada@example.com"})
        authorizer = RedirectingAuthorizer(extra={"user": user_payload})
        provider = build(AppleProvider, {"client_id": "com.example.web"}, store, http, authorizer)

        result = asyncio.run(provider.sign_in())

        assert result.user.uid == "ap-1"
        assert result.user.display_name == "Ada Lovelace"
        assert result.user.email == "ada@example.com"
        assert result.user.email_verified is True
        assert result.user.custom_claims == {"is_private_email": True}
        assert result.additional_user_info.is_new_user is True
        assert result.additional_user_info.profile["user"]["name"]["firstName"] == "Ada"

    def test_returning_user(self, store: CredentialStore, http: MockBackend) -> None:
        """Later sign-ins carry only the ID token claims."""
        claims = {"sub": "ap-1", "email": "ada@example.com", "email_verified": "false"}
        http.add("POST", APPLE_TOKEN_URL, json={"access_token": "a", "id_token": make_id_token(claims)})
        provider = build(AppleProvider, {"client_id": "com.example.web"}, store, http)

        result = asyncio.run(provider.sign_in())

        assert result.user.display_name is None
        assert result.user.email == "ada@example.com"
        assert result.user.email_verified is False
        assert result.additional_user_info.is_new_user is False

    def test_malformed_user_payload(self, store: CredentialStore, http: MockBackend) -> None:
        """An unreadable user payload is ignored."""
        http.add("POST", APPLE_TOKEN_URL, json={"access_token": "a", "id_token": make_id_token({"sub": "ap-1"})})
        authorizer = RedirectingAuthorizer(extra={"user": "{not json"})
        provider = build(AppleProvider, {"client_id": "com.example.web"}, store, http, authorizer)

        result = asyncio.run(provider.sign_in())

        assert result.user.uid == "ap-1"
        assert result.user.display_name is None

    def test_requires_id_token(self, store: CredentialStore, http: MockBackend) -> None:
        """A token response without an ID token cannot identify the user."""
        http.add("POST", APPLE_TOKEN_URL, json={"access_token": "a"})
        provider = build(AppleProvider, {"client_id": "com.example.web"}, store, http)
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.sign_in())
        assert exc_info.value.code is AuthErrorCode.INTERNAL_ERROR

    def test_user_cancelled(self, store: CredentialStore, http: MockBackend) -> None:
        """Apple's cancel error maps to USER_CANCELLED."""
        authorizer = RedirectingAuthorizer(error="user_cancelled_authorize")
        provider = build(AppleProvider, {"client_id": "com.example.web"}, store, http, authorizer)
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.sign_in())
        assert exc_info.value.code is AuthErrorCode.USER_CANCELLED
        assert http.requests == []


# ── Generic OIDC ───────────────────────────────────────────────────────


class TestOIDCProvider:
    """Tests for discovery-based OIDCProvider."""

    ISSUER = "https://id.example.com"
    DISCOVERY = "https://id.example.com/.well-known/openid-configuration"

    def _discovery(self, http: MockBackend, issuer: str | None = None) -> None:
        http.add(
            "GET",
            self.DISCOVERY,
            json={
                "issuer": issuer or self.ISSUER,
                "authorization_endpoint": f"{self.ISSUER}/oauth/authorize",
                "token_endpoint": f"{self.ISSUER}/oauth/token",
                "userinfo_endpoint": f"{self.ISSUER}/userinfo",
                "revocation_endpoint": f"{self.ISSUER}/oauth/revoke",
            },
        )

    def test_discovery(self, store: CredentialStore, http: MockBackend) -> None:
        """Endpoints are discovered once and cached."""
        self._discovery(http)
        provider = OIDCProvider({"client_id": "c", "issuer_url": f"{self.ISSUER}/"}, store, http_client=http.client())

        async def run() -> None:
            endpoints = await provider.get_endpoints()
            await provider.get_endpoints()
            assert endpoints.authorization_endpoint == f"{self.ISSUER}/oauth/authorize"
            assert endpoints.revoke_endpoint == f"{self.ISSUER}/oauth/revoke"

        asyncio.run(run())
        assert len(http.sent("GET", self.DISCOVERY)) == 1

    def test_issuer_mismatch(self, store: CredentialStore, http: MockBackend) -> None:
        """A discovery document for another issuer is rejected."""
        self._discovery(http, issuer="https://evil.example.com")
        provider = OIDCProvider({"client_id": "c", "issuer_url": self.ISSUER}, store, http_client=http.client())
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.get_endpoints())
        assert exc_info.value.code is AuthErrorCode.PROVIDER_INIT_FAILED

    def test_explicit_endpoints_skip_discovery(self, store: CredentialStore, http: MockBackend) -> None:
        """Configured endpoints need no discovery."""
        options = {
            "client_id": "c",
            "authorization_endpoint": "https://sso.local/auth",
            "token_endpoint": "https://sso.local/token",
        }
        provider = OIDCProvider(options, store, http_client=http.client())
        endpoints = asyncio.run(provider.get_endpoints())
        assert endpoints.token_endpoint == "https://sso.local/token"
        assert http.requests == []

    def test_nothing_configured(self, store: CredentialStore, http: MockBackend) -> None:
        """Without issuer or endpoints the provider is misconfigured."""
        provider = OIDCProvider({"client_id": "c"}, store, http_client=http.client())
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.get_endpoints())
        assert exc_info.value.code is AuthErrorCode.MISSING_CONFIGURATION

    def test_sign_in_requires_subject(self, store: CredentialStore, http: MockBackend) -> None:
        """A profile without ``sub`` cannot become a user."""
        self._discovery(http)
        http.add("POST", f"{self.ISSUER}/oauth/token", json={"access_token": "t"})
        http.add("GET", f"{self.ISSUER}/userinfo", json={"email": "x@example.com"})
        provider = build(OIDCProvider, {"client_id": "c", "issuer_url": self.ISSUER}, store, http)
        with pytest.raises(AuthError) as exc_info:
            asyncio.run(provider.sign_in())
        assert exc_info.value.code is AuthErrorCode.INTERNAL_ERROR
