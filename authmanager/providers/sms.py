"""Phone number sign-in with a one-time SMS code.

Two steps against an application backend:

1. ``sign_in`` with ``phone_number`` POSTs ``send_code_url`` and returns a
   pending result (no user);
2. ``sign_in`` with ``phone_number`` and ``code`` POSTs ``verify_code_url``
   and returns the signed-in user.

Pending verifications live in memory on the provider instance.
"""

from __future__ import annotations

import logging
import math
import re

from typing import Any

from ..config import SMSOptions
from ..exceptions import AuthErrorCode
from ..types import (
    AdditionalUserInfo,
    AuthResult,
    PendingVerification,
    SignInOptions,
    SignOutOptions,
    now_ms,
)
from .base import AuthProvider, credential_from_backend, user_from_backend


logger = logging.getLogger(__name__)

_NON_DIGITS = re.compile(r"\D")


def mask_phone_number(phone_number: str) -> str:
    """Hide all but the last four digits."""
    digits = _NON_DIGITS.sub("", phone_number)
    return f"***-***-{digits[-4:]}"


class SMSProvider(AuthProvider):
    """Two-step SMS code provider."""

    provider_id = "sms"
    sign_in_method = "sms"
    options: SMSOptions

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pending: dict[str, PendingVerification] = {}

    def normalize_phone_number(self, phone_number: str) -> str:
        """Normalize to E.164, prefixing the default country code when absent."""
        digits = _NON_DIGITS.sub("", phone_number)
        if len(digits) < 6:
            msg = f"Invalid phone number: {phone_number!r}"
            raise self._error(AuthErrorCode.INVALID_PHONE_NUMBER, msg)
        if phone_number.strip().startswith("+"):
            return f"+{digits}"
        country = _NON_DIGITS.sub("", self.options.country_code)
        return f"+{country}{digits}"

    def get_pending(self, phone_number: str) -> PendingVerification | None:
        """Return the pending verification for ``phone_number``, if any."""
        return self._pending.get(self.normalize_phone_number(phone_number))

    def can_resend_code(self, phone_number: str) -> tuple[bool, int]:
        """Check the resend throttle.

        Returns
        -------
        tuple[bool, int]
            Whether a new code may be sent, and the seconds left to wait.
        """
        pending = self.get_pending(phone_number)
        if pending is None or pending.last_sent_at is None:
            return True, 0
        remaining = self.options.resend_delay - (now_ms() - pending.last_sent_at)
        if remaining <= 0:
            return True, 0
        return False, math.ceil(remaining / 1000)

    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        self._ensure_initialized()
        credentials = options.credentials if options else {}
        phone_number = credentials.get("phone_number") or credentials.get("phoneNumber")
        if not phone_number:
            msg = "A phone number is required for SMS sign-in"
            raise self._error(AuthErrorCode.INVALID_PHONE_NUMBER, msg)

        code = credentials.get("code")
        if code:
            return await self.verify_code(phone_number, str(code))
        return await self.send_code(phone_number)

    async def send_code(self, phone_number: str) -> AuthResult:
        """Send a code to ``phone_number`` and return a pending result."""
        url = self._require_option("send_code_url")
        phone = self.normalize_phone_number(phone_number)

        allowed, wait = self.can_resend_code(phone)
        if not allowed:
            msg = f"Please wait {wait} seconds before requesting a new code"
            raise self._error(AuthErrorCode.TOO_MANY_REQUESTS, msg)

        response = await self._request(
            "POST",
            url,
            json={
                "phoneNumber": phone,
                "clientId": self.options.client_id,
                "codeLength": self.options.code_length,
            },
        )
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to send SMS code")

        data = response.json()
        session_id = data.get("sessionId") or data.get("session_id")
        if not session_id:
            msg = "SMS backend did not return a session id"
            raise self._error(AuthErrorCode.INTERNAL_ERROR, msg, details=data)

        sent_at = now_ms()
        pending = PendingVerification(
            session_id=str(session_id),
            target=phone,
            expires_at=sent_at + self.options.code_ttl,
            last_sent_at=sent_at,
        )
        self._pending[phone] = pending
        logger.info("SMS code sent to %s", mask_phone_number(phone))

        return AuthResult(
            user=None,
            credential=None,
            additional_user_info=AdditionalUserInfo(
                provider_id=self.name,
                pending=True,
                message=f"SMS code sent to {mask_phone_number(phone)}",
                profile={
                    "phone_number": phone,
                    "session_id": pending.session_id,
                    "expires_at": pending.expires_at,
                },
            ),
        )

    async def resend_code(self, phone_number: str) -> AuthResult:
        """Send a new code, subject to the resend throttle."""
        return await self.send_code(phone_number)

    async def verify_code(self, phone_number: str, code: str) -> AuthResult:
        """Verify ``code`` for ``phone_number`` and sign the user in.

        Raises
        ------
        AuthError
            ``EXPIRED_ACTION_CODE`` once the code TTL passed,
            ``TOO_MANY_REQUESTS`` when no attempts are left,
            ``INVALID_VERIFICATION_CODE`` for a rejected code. The pending
            verification is dropped with the ``max_attempts``-th rejection.
        """
        url = self._require_option("verify_code_url")
        phone = self.normalize_phone_number(phone_number)
        pending = self._pending.get(phone)
        if pending is None:
            msg = "No pending SMS verification for this number"
            raise self._error(AuthErrorCode.INVALID_VERIFICATION_CODE, msg)
        if pending.is_expired():
            del self._pending[phone]
            raise self._error(AuthErrorCode.EXPIRED_ACTION_CODE, "SMS code has expired")
        if pending.attempts >= self.options.max_attempts:
            del self._pending[phone]
            raise self._error(AuthErrorCode.TOO_MANY_REQUESTS, "Too many failed attempts")

        pending.attempts += 1
        response = await self._request(
            "POST",
            url,
            json={
                "phoneNumber": phone,
                "code": code,
                "sessionId": pending.session_id,
                "clientId": self.options.client_id,
            },
        )
        if not response.is_success and pending.attempts >= self.options.max_attempts:
            self._pending.pop(phone, None)
        if response.status_code == 401:
            raise self._error(AuthErrorCode.INVALID_VERIFICATION_CODE, "Invalid SMS code")
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to verify SMS code")

        data = response.json()
        self._pending.pop(phone, None)

        user = user_from_backend(
            self.name,
            data,
            uid=f"sms:{_NON_DIGITS.sub('', phone)}",
            phone_number=phone,
            display_name=phone,
        )
        credential = credential_from_backend(self.name, self.sign_in_method, data)
        user.refresh_token = credential.refresh_token
        await self._save_credential(credential)
        await self._set_current_user(user)

        return AuthResult(
            user=user,
            credential=credential,
            additional_user_info=AdditionalUserInfo(
                provider_id=self.name,
                is_new_user=bool(data.get("isNewUser") or data.get("is_new_user")),
            ),
        )

    async def refresh_token(self) -> AuthResult:
        msg = "SMS sessions cannot be refreshed; sign in again"
        raise self._error(AuthErrorCode.OPERATION_NOT_SUPPORTED, msg)

    async def revoke_access(self) -> None:
        self._pending.clear()
        await self._clear_stored_data()

    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        await self.revoke_access()
