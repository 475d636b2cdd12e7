"""Passwordless sign-in with an emailed link.

``sign_in`` with an ``email`` mints a random token, builds the link from
``redirect_url`` and asks the backend to email it; the result is pending.
``sign_in`` with ``token`` (or ``verify_magic_link`` / ``handle_link``)
completes the flow. Pending tokens are kept in the credential store, so a
link opened after a restart still verifies with durable persistence.
"""

from __future__ import annotations

import logging
import secrets

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from ..config import MagicLinkOptions
from ..exceptions import AuthErrorCode
from ..types import (
    AdditionalUserInfo,
    AuthCredential,
    AuthResult,
    PendingVerification,
    SignInOptions,
    SignOutOptions,
    now_ms,
)
from .base import AuthProvider, credential_from_backend, user_from_backend


logger = logging.getLogger(__name__)


class MagicLinkProvider(AuthProvider):
    """Email magic link provider."""

    provider_id = "magic_link"
    sign_in_method = "magic_link"
    options: MagicLinkOptions

    def build_link(self, token: str) -> str:
        """Append ``token`` and the provider name to ``redirect_url``."""
        base = urlparse(self._require_option("redirect_url"))
        query = dict(parse_qsl(base.query))
        query.update({"token": token, "provider": self.name})
        return urlunparse(base._replace(query=urlencode(query)))

    async def _load_pending(self) -> dict[str, dict[str, Any]]:
        data = await self.store.get(self._key("pending_links"))
        return data if isinstance(data, dict) else {}

    async def _save_pending(self, pending: dict[str, dict[str, Any]]) -> None:
        if pending:
            await self.store.set(self._key("pending_links"), pending)
        else:
            await self.store.remove(self._key("pending_links"))

    async def get_pending(self, token: str) -> PendingVerification | None:
        """Return the pending verification for ``token``, if any."""
        record = (await self._load_pending()).get(token)
        if record is None:
            return None
        return PendingVerification(
            session_id=token,
            target=record["email"],
            expires_at=int(record["expires_at"]),
            last_sent_at=record.get("sent_at"),
        )

    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        self._ensure_initialized()
        credentials = options.credentials if options else {}
        token = credentials.get("token")
        if token:
            return await self.verify_magic_link(str(token))

        email = credentials.get("email")
        if not email or "@" not in str(email):
            msg = "A valid email address is required for magic link sign-in"
            raise self._error(AuthErrorCode.INVALID_EMAIL, msg)
        return await self.send_link(str(email))

    async def send_link(self, email: str) -> AuthResult:
        """Email a sign-in link to ``email`` and return a pending result."""
        url = self._require_option("send_link_url")
        token = secrets.token_hex(32)
        link = self.build_link(token)

        payload: dict[str, Any] = {"email": email, "magicLink": link, "clientId": self.options.client_id}
        if self.options.email_template:
            payload["template"] = self.options.email_template
        response = await self._request("POST", url, json=payload)
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to send magic link")

        sent_at = now_ms()
        pending = await self._load_pending()
        # drop links that can no longer be redeemed
        pending = {t: r for t, r in pending.items() if int(r.get("expires_at", 0)) >= sent_at}
        pending[token] = {"email": email, "expires_at": sent_at + self.options.link_ttl, "sent_at": sent_at}
        await self._save_pending(pending)
        logger.info("Magic link sent")

        return AuthResult(
            user=None,
            credential=None,
            additional_user_info=AdditionalUserInfo(
                provider_id=self.name,
                pending=True,
                message="Magic link sent. Check your email to complete sign in.",
                profile={"email": email},
            ),
        )

    async def handle_link(self, url: str) -> AuthResult:
        """Verify the token carried by an opened magic link URL."""
        token = dict(parse_qsl(urlparse(url).query)).get("token")
        if not token:
            raise self._error(AuthErrorCode.INVALID_REQUEST, "Link does not carry a sign-in token")
        return await self.verify_magic_link(token)

    async def verify_magic_link(self, token: str) -> AuthResult:
        """Redeem ``token`` and sign the user in.

        Raises
        ------
        AuthError
            ``EXPIRED_ACTION_CODE`` for unknown or expired tokens.
        """
        pending = await self._load_pending()
        record = pending.get(token)
        if record is None:
            raise self._error(AuthErrorCode.EXPIRED_ACTION_CODE, "Invalid or expired magic link")
        if now_ms() > int(record["expires_at"]):
            del pending[token]
            await self._save_pending(pending)
            raise self._error(AuthErrorCode.EXPIRED_ACTION_CODE, "Magic link has expired")

        email = record["email"]
        local_name = email.split("@")[0]
        if self.options.verify_url:
            response = await self._request(
                "POST",
                self.options.verify_url,
                json={"token": token, "email": email, "clientId": self.options.client_id},
            )
            if not response.is_success:
                raise self._error_from_response(
                    response, AuthErrorCode.INVALID_CREDENTIALS, "Failed to verify magic link"
                )
            data = response.json()
            user = user_from_backend(self.name, data, uid=f"magic:{email}", email=email, display_name=local_name)
            credential = credential_from_backend(self.name, self.sign_in_method, data)
            credential.access_token = credential.access_token or token
            is_new_user = bool(data.get("isNewUser") or data.get("is_new_user"))
        else:
            # no backend verification configured: the emailed token is the credential
            user = user_from_backend(self.name, {}, uid=f"magic:{email}", email=email, display_name=local_name)
            credential = AuthCredential(provider_id=self.name, sign_in_method=self.sign_in_method, access_token=token)
            is_new_user = True
        user.email_verified = True

        del pending[token]
        await self._save_pending(pending)

        user.refresh_token = credential.refresh_token
        await self._save_credential(credential)
        await self._set_current_user(user)
        return AuthResult(
            user=user,
            credential=credential,
            additional_user_info=AdditionalUserInfo(provider_id=self.name, is_new_user=is_new_user),
        )

    async def refresh_token(self) -> AuthResult:
        msg = "Magic link sessions cannot be refreshed; sign in again"
        raise self._error(AuthErrorCode.OPERATION_NOT_SUPPORTED, msg)

    async def revoke_access(self) -> None:
        await self._save_pending({})
        await self._clear_stored_data()

    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        await self.revoke_access()
