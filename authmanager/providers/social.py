"""Preset OAuth providers.

Google, GitHub, Microsoft, Facebook, LinkedIn, Slack, Apple and generic
OpenID Connect. Each preset supplies endpoints and the profile mapping;
the authorization-code flow itself lives in OAuthFlowEngine.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import json
import logging

from typing import Any

from ..config import (
    AppleOptions,
    FacebookOptions,
    GitHubOptions,
    GoogleOptions,
    LinkedInOptions,
    MicrosoftOptions,
    OIDCOptions,
    SlackOptions,
)
from ..exceptions import AuthError, AuthErrorCode
from ..types import AdditionalUserInfo, AuthUser, SignInOptions
from .oauth import OAuthEndpoints, OAuthFlowEngine, create_auth_user, id_token_claims


logger = logging.getLogger(__name__)


class OIDCFlowEngine(OAuthFlowEngine):
    """Engine for providers that speak standard OIDC claims.

    The profile is built from the ID token claims, overlaid with the
    userinfo endpoint response when one is available.
    """

    async def parse_user_info(self, token_response: dict[str, Any], nonce: str | None) -> AuthUser:
        claims = id_token_claims(token_response)
        endpoints = await self.get_endpoints()
        access_token = token_response.get("access_token")
        if endpoints.userinfo_endpoint and access_token:
            claims.update(await self.fetch_userinfo(endpoints.userinfo_endpoint, access_token))

        if not claims.get("sub"):
            msg = "Provider did not return a subject identifier"
            raise self._error(AuthErrorCode.INTERNAL_ERROR, msg)
        return create_auth_user(
            self.name,
            uid=str(claims["sub"]),
            email=claims.get("email"),
            display_name=claims.get("name"),
            photo_url=claims.get("picture"),
            phone_number=claims.get("phone_number"),
            email_verified=bool(claims.get("email_verified", False)),
            claims=claims,
        )


class GoogleProvider(OIDCFlowEngine):
    """Google sign-in.

    Requests offline access (a refresh token) and incremental scopes by
    default; ``hosted_domain`` restricts sign-in to one Workspace domain.
    """

    provider_id = "google"
    options: GoogleOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        return self._base_endpoints(
            authorization_endpoint="https://accounts.google.com/o/oauth2/v2/auth",
            token_endpoint="https://oauth2.googleapis.com/token",  # noqa: S106
            revoke_endpoint="https://oauth2.googleapis.com/revoke",
            userinfo_endpoint="https://openidconnect.googleapis.com/v1/userinfo",
        )

    def authorization_params(self, options: SignInOptions) -> dict[str, str]:
        params = {"access_type": "offline" if self.options.offline_access else "online"}
        if self.options.include_granted_scopes:
            params["include_granted_scopes"] = "true"
        if self.options.hosted_domain:
            params["hd"] = self.options.hosted_domain
        return params


class GitHubProvider(OAuthFlowEngine):
    """GitHub OAuth App.

    GitHub reports token errors with HTTP 200 and an ``error`` field,
    serves the profile from its REST API, and revokes tokens through
    the Applications API.
    """

    provider_id = "github"
    options: GitHubOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        return self._base_endpoints(
            authorization_endpoint="https://github.com/login/oauth/authorize",
            token_endpoint="https://github.com/login/oauth/access_token",  # noqa: S106
            userinfo_endpoint="https://api.github.com/user",
        )

    def authorization_params(self, options: SignInOptions) -> dict[str, str]:
        return {"allow_signup": "true" if self.options.allow_signup else "false"}

    async def parse_user_info(self, token_response: dict[str, Any], nonce: str | None) -> AuthUser:
        access_token = token_response["access_token"]
        headers = {"Accept": "application/vnd.github+json"}
        profile = await self.fetch_userinfo("https://api.github.com/user", access_token, headers=headers)

        email = profile.get("email")
        verified = False
        try:
            emails = await self.fetch_userinfo("https://api.github.com/user/emails", access_token, headers=headers)
        except AuthError as exc:
            # the user:email scope may not have been granted
            logger.debug("GitHub email lookup failed: %s", exc)
            emails = []
        primary = next((e for e in emails if isinstance(e, dict) and e.get("primary")), None)
        if primary is not None:
            email = primary.get("email") or email
            verified = bool(primary.get("verified"))

        return create_auth_user(
            self.name,
            uid=str(profile["id"]),
            email=email,
            display_name=profile.get("name") or profile.get("login"),
            photo_url=profile.get("avatar_url"),
            email_verified=verified,
            claims={"login": profile.get("login"), "html_url": profile.get("html_url")},
        )

    async def revoke_token(self, endpoints: OAuthEndpoints, token: str) -> bool:
        """Revoke via ``DELETE /applications/{client_id}/token`` with basic auth."""
        if not endpoints.client_secret:
            logger.warning("GitHub token revocation requires a client_secret")
            return False
        response = await self._request(
            "DELETE",
            f"https://api.github.com/applications/{endpoints.client_id}/token",
            auth=(endpoints.client_id, endpoints.client_secret),
            json={"access_token": token},
            headers={"Accept": "application/vnd.github+json"},
        )
        # GitHub returns 204 No Content on success
        return response.status_code == 204


class MicrosoftProvider(OIDCFlowEngine):
    """Microsoft identity platform (Azure AD / personal accounts).

    Microsoft has no standard revocation endpoint, so revocation only
    clears local state.
    """

    provider_id = "microsoft"
    options: MicrosoftOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        base = f"https://login.microsoftonline.com/{self.options.tenant}/oauth2/v2.0"
        return self._base_endpoints(
            authorization_endpoint=f"{base}/authorize",
            token_endpoint=f"{base}/token",
            userinfo_endpoint="https://graph.microsoft.com/oidc/userinfo",
        )


class FacebookProvider(OAuthFlowEngine):
    """Facebook Login through the Graph API."""

    provider_id = "facebook"
    options: FacebookOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        version = self.options.api_version
        return self._base_endpoints(
            authorization_endpoint=f"https://www.facebook.com/{version}/dialog/oauth",
            token_endpoint=f"https://graph.facebook.com/{version}/oauth/access_token",  # noqa: S106
            userinfo_endpoint=f"https://graph.facebook.com/{version}/me",
        )

    async def parse_user_info(self, token_response: dict[str, Any], nonce: str | None) -> AuthUser:
        endpoints = await self.get_endpoints()
        profile = await self.fetch_userinfo(
            endpoints.userinfo_endpoint or "",
            token_response["access_token"],
            params={"fields": "id,name,email,picture.type(large)"},
        )
        picture = profile.get("picture") or {}
        email = profile.get("email")
        return create_auth_user(
            self.name,
            uid=str(profile["id"]),
            email=email,
            display_name=profile.get("name"),
            photo_url=(picture.get("data") or {}).get("url"),
            email_verified=bool(email),
        )

    async def revoke_token(self, endpoints: OAuthEndpoints, token: str) -> bool:
        """Revoke all permissions via ``DELETE /me/permissions``."""
        response = await self._request(
            "DELETE",
            f"https://graph.facebook.com/{self.options.api_version}/me/permissions",
            params={"access_token": token},
        )
        return response.is_success


class LinkedInProvider(OIDCFlowEngine):
    """Sign In with LinkedIn using OpenID Connect."""

    provider_id = "linkedin"
    options: LinkedInOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        return self._base_endpoints(
            authorization_endpoint="https://www.linkedin.com/oauth/v2/authorization",
            token_endpoint="https://www.linkedin.com/oauth/v2/accessToken",  # noqa: S106
            revoke_endpoint="https://www.linkedin.com/oauth/v2/revoke",
            userinfo_endpoint="https://api.linkedin.com/v2/userinfo",
        )


class SlackProvider(OIDCFlowEngine):
    """Sign in with Slack using OpenID Connect."""

    provider_id = "slack"
    options: SlackOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        return self._base_endpoints(
            authorization_endpoint="https://slack.com/openid/connect/authorize",
            token_endpoint="https://slack.com/api/openid.connect.token",  # noqa: S106
            userinfo_endpoint="https://slack.com/api/openid.connect.userInfo",
        )

    def authorization_params(self, options: SignInOptions) -> dict[str, str]:
        return {"team": self.options.team} if self.options.team else {}

    async def fetch_userinfo(self, url: str, access_token: str, **kwargs: Any) -> dict[str, Any]:
        profile = await super().fetch_userinfo(url, access_token, **kwargs)
        # Slack reports API failures with HTTP 200 and ok=false
        if profile.get("ok") is False:
            msg = f"Slack userinfo failed: {profile.get('error', 'unknown error')}"
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, msg, details=profile)
        return profile


class OIDCProvider(OIDCFlowEngine):
    """Generic OpenID Connect provider.

    Endpoints are discovered from ``{issuer_url}/.well-known/openid-configuration``.
    The discovered ``issuer`` must match the configured one exactly (ignoring
    a trailing slash). Endpoints set in the options win over discovered ones.
    """

    provider_id = "oidc"
    options: OIDCOptions

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._discovered: dict[str, Any] | None = None

    async def _discover(self) -> dict[str, Any]:
        if self._discovered is not None:
            return self._discovered
        issuer = self.options.issuer_url.rstrip("/")
        if not issuer:
            return {}

        url = f"{issuer}/.well-known/openid-configuration"
        response = await self._request("GET", url, headers={"Accept": "application/json"})
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.PROVIDER_INIT_FAILED, "OIDC discovery failed")
        config = response.json()

        discovered_issuer = str(config.get("issuer", ""))
        if discovered_issuer.rstrip("/") != issuer:
            msg = f"OIDC issuer mismatch: expected '{issuer}', got '{discovered_issuer}'"
            raise self._error(AuthErrorCode.PROVIDER_INIT_FAILED, msg)

        self._discovered = config
        return config

    async def get_endpoints(self) -> OAuthEndpoints:
        opts = self.options
        needs_discovery = not (opts.authorization_endpoint and opts.token_endpoint)
        config = await self._discover() if needs_discovery else {}

        authorization_endpoint = opts.authorization_endpoint or config.get("authorization_endpoint")
        token_endpoint = opts.token_endpoint or config.get("token_endpoint")
        if not authorization_endpoint or not token_endpoint:
            msg = "OIDC provider requires 'issuer_url' or explicit endpoints"
            raise self._error(AuthErrorCode.MISSING_CONFIGURATION, msg)

        return self._base_endpoints(
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            userinfo_endpoint=opts.userinfo_endpoint or config.get("userinfo_endpoint"),
            revoke_endpoint=opts.revoke_endpoint or config.get("revocation_endpoint"),
        )


class AppleProvider(OAuthFlowEngine):
    """Sign in with Apple.

    Apple posts the redirect back (``response_mode=form_post``) and sends
    the user's name only on the first authorization, as a JSON ``user``
    field next to ``code`` and ``state``. Later sign-ins carry just the
    ID token claims.
    """

    provider_id = "apple"
    options: AppleOptions

    async def get_endpoints(self) -> OAuthEndpoints:
        return self._base_endpoints(
            authorization_endpoint="https://appleid.apple.com/auth/authorize",
            token_endpoint="https://appleid.apple.com/auth/token",  # noqa: S106
            revoke_endpoint="https://appleid.apple.com/auth/revoke",
        )

    def authorization_params(self, options: SignInOptions) -> dict[str, str]:
        return {"response_mode": self.options.response_mode} if self.options.response_mode else {}

    def first_sign_in_profile(self) -> dict[str, Any]:
        """The ``user`` payload Apple attaches to a first authorization, if any."""
        raw = self._callback.extra.get("user") if self._callback is not None else None
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            profile = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring malformed Apple user payload")
            return {}
        return profile if isinstance(profile, dict) else {}

    async def parse_user_info(self, token_response: dict[str, Any], nonce: str | None) -> AuthUser:
        claims = id_token_claims(token_response)
        if not claims.get("sub"):
            msg = "Apple did not return an ID token subject"
            raise self._error(AuthErrorCode.INTERNAL_ERROR, msg)

        profile = self.first_sign_in_profile()
        name = profile.get("name") or {}
        display_name = " ".join(p for p in (name.get("firstName"), name.get("lastName")) if p) or None
        # Apple sends booleans in the ID token as strings
        verified = str(claims.get("email_verified", "false")).lower() == "true"
        return create_auth_user(
            self.name,
            uid=str(claims["sub"]),
            email=profile.get("email") or claims.get("email"),
            display_name=display_name,
            email_verified=verified,
            claims={"is_private_email": str(claims.get("is_private_email", "false")).lower() == "true"},
        )

    def additional_user_info(self, token_response: dict[str, Any]) -> AdditionalUserInfo:
        info = super().additional_user_info(token_response)
        profile = self.first_sign_in_profile()
        if profile:
            info.is_new_user = True
            info.profile["user"] = profile
        return info
