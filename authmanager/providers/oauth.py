"""OAuth 2.0 / OpenID Connect authorization-code engine.

Concrete providers supply their endpoints and map the token response to an
AuthUser; the engine owns the rest of the flow:

1. fresh state and nonce are stored under ``<provider>_oauth_state`` and
   ``<provider>_oauth_nonce``;
2. the authorization URL is built and handed to the Authorizer;
3. the redirect is validated (provider error, state, code);
4. the code is exchanged at the token endpoint;
5. the ID token nonce, when present, is compared with the flow nonce;
6. user and credential are persisted.

State and nonce are removed whatever the outcome.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging

from abc import abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode

import httpx

from ..config import DEFAULT_REDIRECT_URI, OAuthProviderOptions, ProviderOptions
from ..exceptions import AuthError, AuthErrorCode
from ..handshake import Authorizer, LoopbackAuthorizer
from ..log import redact_sensitive_data
from ..security import PKCEPair, decode_id_token_claims, generate_security_context
from ..storage import CredentialStore
from ..types import (
    AdditionalUserInfo,
    AuthCredential,
    AuthorizationResponse,
    AuthResult,
    AuthUser,
    OAuthSecurityContext,
    ProviderUserInfo,
    SignInOptions,
    SignOutOptions,
    UserMetadata,
    now_iso,
    now_ms,
)
from .base import AuthProvider


logger = logging.getLogger(__name__)


OAUTH_ERROR_CODES: dict[str, AuthErrorCode] = {
    "invalid_request": AuthErrorCode.INVALID_REQUEST,
    "unauthorized_client": AuthErrorCode.APP_NOT_AUTHORIZED,
    "access_denied": AuthErrorCode.ACCESS_DENIED,
    "unsupported_response_type": AuthErrorCode.UNSUPPORTED_GRANT_TYPE,
    "unsupported_grant_type": AuthErrorCode.UNSUPPORTED_GRANT_TYPE,
    "invalid_scope": AuthErrorCode.INVALID_SCOPE,
    "server_error": AuthErrorCode.SERVER_ERROR,
    "temporarily_unavailable": AuthErrorCode.TEMPORARILY_UNAVAILABLE,
    "invalid_grant": AuthErrorCode.INVALID_GRANT,
    "invalid_client": AuthErrorCode.CLIENT_NOT_FOUND,
    "interaction_required": AuthErrorCode.INTERACTION_REQUIRED,
    "login_required": AuthErrorCode.LOGIN_REQUIRED,
    "consent_required": AuthErrorCode.CONSENT_REQUIRED,
    # GitHub
    "bad_verification_code": AuthErrorCode.INVALID_GRANT,
    # Apple
    "user_cancelled_authorize": AuthErrorCode.USER_CANCELLED,
}


def map_oauth_error(error: str | None) -> AuthErrorCode:
    """Translate an OAuth ``error`` value into an AuthErrorCode."""
    return OAUTH_ERROR_CODES.get(error or "", AuthErrorCode.INTERNAL_ERROR)


@dataclass(frozen=True)
class OAuthEndpoints:
    """Static description of one provider's OAuth endpoints and client."""

    client_id: str
    authorization_endpoint: str
    token_endpoint: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    client_secret: str | None = None
    revoke_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    scopes: tuple[str, ...] = ()
    response_type: str = "code"
    grant_type: str = "authorization_code"
    additional_params: Mapping[str, str] = field(default_factory=dict)


def create_auth_user(
    provider_id: str,
    uid: str,
    email: str | None = None,
    display_name: str | None = None,
    photo_url: str | None = None,
    phone_number: str | None = None,
    email_verified: bool = False,
    claims: Mapping[str, Any] | None = None,
) -> AuthUser:
    """Build an AuthUser with matching provider data and sign-in metadata."""
    signed_in_at = now_iso()
    return AuthUser(
        uid=uid,
        email=email,
        display_name=display_name,
        photo_url=photo_url,
        phone_number=phone_number,
        email_verified=email_verified,
        provider_data=[
            ProviderUserInfo(
                provider_id=provider_id,
                uid=uid,
                display_name=display_name,
                email=email,
                phone_number=phone_number,
                photo_url=photo_url,
            )
        ],
        metadata=UserMetadata(creation_time=signed_in_at, last_sign_in_time=signed_in_at),
        custom_claims=dict(claims or {}),
    )


def id_token_claims(token_response: Mapping[str, Any]) -> dict[str, Any]:
    """Unverified claims of the response's ID token (display only)."""
    id_token = token_response.get("id_token")
    return decode_id_token_claims(id_token) if isinstance(id_token, str) else {}


class OAuthFlowEngine(AuthProvider):
    """Base class for authorization-code providers.

    Parameters
    ----------
    options : OAuthProviderOptions or dict
        Client ID, secret, redirect URI, scopes, PKCE and timeout.
    store : CredentialStore
        Shared credential store.
    http_client : httpx.AsyncClient, optional
        Client for token and API calls.
    authorizer : Authorizer, optional
        Shows the authorization page and returns the redirect. Defaults to
        a LoopbackAuthorizer using the system browser.
    """

    sign_in_method = "oauth"
    options: OAuthProviderOptions

    def __init__(
        self,
        options: ProviderOptions | dict[str, Any] | None,
        store: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        authorizer: Authorizer | None = None,
    ) -> None:
        super().__init__(options, store, http_client=http_client)
        if not isinstance(self.options, OAuthProviderOptions):
            # plugin providers arrive with untyped options
            self.options = OAuthProviderOptions.model_validate(self.options.model_dump())
        self.authorizer: Authorizer = authorizer or LoopbackAuthorizer(timeout=self.options.auth_timeout)
        # validated redirect of the flow in progress
        self._callback: AuthorizationResponse | None = None

    @abstractmethod
    async def get_endpoints(self) -> OAuthEndpoints:
        """Return the provider's endpoints and client registration."""

    @abstractmethod
    async def parse_user_info(self, token_response: dict[str, Any], nonce: str | None) -> AuthUser:
        """Map a token response (and any profile calls) to an AuthUser."""

    def _base_endpoints(self, **endpoints: Any) -> OAuthEndpoints:
        """Combine provider URLs with the configured client registration."""
        opts = self.options
        return OAuthEndpoints(
            client_id=opts.client_id,
            client_secret=opts.client_secret,
            redirect_uri=opts.redirect_uri,
            scopes=tuple(opts.scopes),
            additional_params=dict(opts.additional_params),
            **endpoints,
        )

    def authorization_params(self, options: SignInOptions) -> dict[str, str]:
        """Provider-specific authorization URL parameters."""
        return {}

    def additional_user_info(self, token_response: dict[str, Any]) -> AdditionalUserInfo:
        """Extra sign-in information; the profile holds the ID token claims."""
        return AdditionalUserInfo(provider_id=self.name, profile=id_token_claims(token_response))

    def build_authorization_url(
        self,
        endpoints: OAuthEndpoints,
        context: OAuthSecurityContext,
        options: SignInOptions,
        pkce: PKCEPair | None = None,
    ) -> str:
        """Build the full authorization URL.

        Caller scopes replace the configured ones; ``custom_parameters``,
        ``login_hint`` and ``prompt`` are passed through verbatim.
        """
        scopes = options.scopes if options.scopes is not None else list(endpoints.scopes)
        params: dict[str, str] = {
            "client_id": endpoints.client_id,
            "redirect_uri": endpoints.redirect_uri,
            "response_type": endpoints.response_type,
            "state": context.state,
            "nonce": context.nonce,
        }
        if scopes:
            params["scope"] = " ".join(scopes)
        if pkce is not None:
            params["code_challenge"] = pkce.challenge
            params["code_challenge_method"] = pkce.method
        params.update(endpoints.additional_params)
        params.update(self.authorization_params(options))
        if options.login_hint:
            params["login_hint"] = options.login_hint
        if options.prompt:
            params["prompt"] = options.prompt
        params.update(options.custom_parameters)

        separator = "&" if "?" in endpoints.authorization_endpoint else "?"
        return f"{endpoints.authorization_endpoint}{separator}{urlencode(params)}"

    async def open_authorization_url(self, url: str, redirect_uri: str) -> AuthorizationResponse:
        """Show the authorization page and wait for the redirect."""
        return await self.authorizer.authorize(url, redirect_uri)

    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        """Run the authorization-code flow.

        Raises
        ------
        AuthError
            Classified failure. ``INVALID_STATE`` and ``INVALID_NONCE`` are
            raised before any user state changes.
        """
        self._ensure_initialized()
        options = options or SignInOptions()
        endpoints = await self.get_endpoints()
        if not endpoints.client_id:
            msg = f"{self.name} provider requires 'client_id'"
            raise self._error(AuthErrorCode.MISSING_CONFIGURATION, msg)

        context = generate_security_context()
        pkce = PKCEPair.generate() if self.options.use_pkce else None
        state_key, nonce_key = self._key("oauth_state"), self._key("oauth_nonce")

        try:
            await self.store.set(state_key, context.state)
            await self.store.set(nonce_key, context.nonce)
            url = self.build_authorization_url(endpoints, context, options, pkce)
            logger.debug("Opening %s authorization page", self.name)
            response = await self.open_authorization_url(url, endpoints.redirect_uri)
            code = await self._validate_callback(response)
            self._callback = response

            token_response = await self.exchange_code(endpoints, code, pkce)
            nonce = await self.store.get(nonce_key)
            self._verify_nonce(token_response, nonce)

            user = await self.parse_user_info(token_response, nonce)
            credential = self.create_credential(token_response)
            user.refresh_token = credential.refresh_token

            await self._save_credential(credential)
            await self._set_current_user(user)
            logger.info("Signed in with %s", self.name)
            return AuthResult(
                user=user,
                credential=credential,
                additional_user_info=self.additional_user_info(token_response),
                operation_type="sign_in",
            )
        except Exception as exc:
            error = AuthError.from_exception(exc, provider=self.name)
            if error is exc:
                raise
            raise error from exc
        finally:
            self._callback = None
            await self.store.remove(state_key)
            await self.store.remove(nonce_key)

    async def _validate_callback(self, response: AuthorizationResponse) -> str:
        if response.error:
            message = response.error_description or response.error
            raise self._error(map_oauth_error(response.error), message, details=response)

        expected = await self.store.get(self._key("oauth_state"))
        if not expected or response.state != expected:
            msg = "State parameter mismatch"
            raise self._error(AuthErrorCode.INVALID_STATE, msg)

        if not response.code:
            msg = "Authorization response did not include a code"
            raise self._error(AuthErrorCode.INVALID_REQUEST, msg)
        return response.code

    def _verify_nonce(self, token_response: Mapping[str, Any], nonce: str | None) -> None:
        claims = id_token_claims(token_response)
        if "nonce" in claims and claims["nonce"] != nonce:
            msg = "ID token nonce does not match the authorization request"
            raise self._error(AuthErrorCode.INVALID_NONCE, msg)

    async def exchange_code(
        self,
        endpoints: OAuthEndpoints,
        code: str,
        pkce: PKCEPair | None = None,
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens."""
        data = {
            "grant_type": endpoints.grant_type,
            "code": code,
            "redirect_uri": endpoints.redirect_uri,
            "client_id": endpoints.client_id,
        }
        if endpoints.client_secret:
            data["client_secret"] = endpoints.client_secret
        if pkce is not None:
            data["code_verifier"] = pkce.verifier
        return await self._token_request(endpoints.token_endpoint, data)

    async def _token_request(self, url: str, data: dict[str, str]) -> dict[str, Any]:
        """POST a form-encoded token request and classify the outcome."""
        response = await self._request("POST", url, data=data, headers={"Accept": "application/json"})
        payload = _parse_token_body(response)
        logger.debug("Token endpoint %s answered %s: %s", url, response.status_code, redact_sensitive_data(payload))

        if payload.get("error"):
            message = payload.get("error_description") or payload["error"]
            raise self._error(map_oauth_error(payload["error"]), str(message), details=payload)
        if not response.is_success:
            code = AuthErrorCode.SERVER_ERROR if response.status_code >= 500 else AuthErrorCode.INTERNAL_ERROR
            msg = f"Token endpoint returned {response.status_code}"
            raise self._error(code, msg, details=payload)
        if not payload.get("access_token"):
            msg = "Token response did not include an access_token"
            raise self._error(AuthErrorCode.INTERNAL_ERROR, msg, details=payload)
        return payload

    def create_credential(self, token_response: Mapping[str, Any]) -> AuthCredential:
        """Build an AuthCredential; ``expires_in`` becomes an absolute epoch ms."""
        expires_in = token_response.get("expires_in")
        expires_at = None
        if expires_in not in (None, ""):
            expires_at = now_ms() + int(float(expires_in) * 1000)
        return AuthCredential(
            provider_id=self.name,
            sign_in_method=self.sign_in_method,
            access_token=token_response.get("access_token"),
            id_token=token_response.get("id_token"),
            refresh_token=token_response.get("refresh_token") or None,
            expires_at=expires_at,
            scope=token_response.get("scope"),
            token_type=token_response.get("token_type") or "Bearer",
        )

    async def fetch_userinfo(self, url: str, access_token: str, **kwargs: Any) -> dict[str, Any]:
        """GET a profile endpoint with the bearer token."""
        headers = {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
        headers.update(kwargs.pop("headers", {}))
        response = await self._request("GET", url, headers=headers, **kwargs)
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.INVALID_CREDENTIALS, "Failed to load profile")
        return response.json()  # type: ignore[no-any-return]

    async def refresh_token(self) -> AuthResult:
        """Refresh the access token.

        A response without a new refresh token keeps the stored one. On
        failure the stored session is left untouched.
        """
        self._ensure_initialized()
        user = self._current_user
        if user is None:
            raise self._error(AuthErrorCode.NO_AUTH_SESSION, "No signed-in user to refresh")
        credential = await self._load_credential()
        if credential is None or not credential.refresh_token:
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, "No refresh token available")

        endpoints = await self.get_endpoints()
        data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": endpoints.client_id,
        }
        if endpoints.client_secret:
            data["client_secret"] = endpoints.client_secret
        payload = await self._token_request(endpoints.token_endpoint, data)

        refreshed = self.create_credential(payload)
        refreshed.refresh_token = refreshed.refresh_token or credential.refresh_token
        refreshed.id_token = refreshed.id_token or credential.id_token
        refreshed.scope = refreshed.scope or credential.scope

        user.refresh_token = refreshed.refresh_token
        await self._save_credential(refreshed)
        await self._set_current_user(user)
        logger.debug("Refreshed %s token", self.name)
        return AuthResult(user=user, credential=refreshed, operation_type="refresh")

    async def revoke_token(self, endpoints: OAuthEndpoints, token: str) -> bool:
        """Revoke a token at the provider (RFC 7009).

        Subclasses with non-standard revocation APIs should override.

        Returns
        -------
        bool
            True if the provider accepted the revocation.
        """
        if not endpoints.revoke_endpoint:
            logger.warning("%s has no revocation endpoint; clearing local state only", self.name)
            return False
        data = {"token": token, "client_id": endpoints.client_id}
        if endpoints.client_secret:
            data["client_secret"] = endpoints.client_secret
        response = await self._request("POST", endpoints.revoke_endpoint, data=data)
        return response.is_success

    async def revoke_access(self) -> None:
        """Revoke the stored token (best effort) and clear local state."""
        credential = await self._load_credential()
        token = credential.access_token or credential.refresh_token if credential else None
        try:
            if token:
                endpoints = await self.get_endpoints()
                if not await self.revoke_token(endpoints, token):
                    logger.warning("%s did not confirm token revocation", self.name)
        except (AuthError, httpx.HTTPError) as exc:
            logger.warning("Token revocation failed for %s: %s", self.name, exc)
        finally:
            await self._clear_stored_data()

    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        """Clear local state, revoking the token first if requested."""
        if options is not None and options.revoke_token:
            await self.revoke_access()
        else:
            await self._clear_stored_data()


def _parse_token_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON or form-encoded token endpoint body."""
    try:
        body = response.json()
    except ValueError:
        return dict(parse_qsl(response.text))
    return body if isinstance(body, dict) else {}
