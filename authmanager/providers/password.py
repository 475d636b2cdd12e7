"""Password sign-in against a REST backend.

Endpoints, relative to ``api_url``:

- ``POST /auth/signin``          credentials; 401 means bad credentials
- ``POST /auth/signup``          create an account; 409 means already taken
- ``POST /auth/refresh``         exchange a refresh token
- ``POST /auth/signout``         best effort
- ``POST /auth/update-password`` change the signed-in user's password
- ``POST /auth/reset-password``  send a reset email (email accounts)
- ``POST /auth/verify-email``    send a verification email (email accounts)
- ``POST /auth/check-username``  username availability (username accounts)
"""

from __future__ import annotations

import logging
import re

from typing import Any

from ..config import EmailPasswordOptions, PasswordRequirements, UsernamePasswordOptions
from ..exceptions import AuthError, AuthErrorCode
from ..types import AdditionalUserInfo, AuthResult, SignInOptions, SignOutOptions
from .base import AuthProvider, credential_from_backend, user_from_backend


logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
MIN_PASSWORD_LENGTH = 8


def is_valid_email(email: str) -> bool:
    """Loose syntactic email check."""
    return bool(_EMAIL_RE.match(email))


def password_problem(password: str) -> str | None:
    """Describe why ``password`` is too weak, or None if it is acceptable."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if not re.search(r"[A-Za-z]", password) or not re.search(r"\d", password):
        return "Password must contain letters and numbers"
    return None


def check_password_requirements(password: str, rules: PasswordRequirements) -> str | None:
    """Describe the first rule ``password`` breaks, or None."""
    if len(password) < rules.min_length:
        return f"Password must be at least {rules.min_length} characters long"
    if rules.require_uppercase and not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if rules.require_lowercase and not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if rules.require_numbers and not re.search(r"\d", password):
        return "Password must contain at least one number"
    if rules.require_special_chars and not _SPECIAL_RE.search(password):
        return "Password must contain at least one special character"
    return None


class PasswordBackendProvider(AuthProvider):
    """Session handling shared by the password providers.

    Subclasses implement ``sign_in`` and account creation; this class
    turns backend responses into sessions and owns refresh, password
    change and sign-out.
    """

    sign_in_method = "password"
    options: EmailPasswordOptions | UsernamePasswordOptions

    def _url(self, path: str) -> str:
        return f"{str(self._require_option('api_url')).rstrip('/')}{path}"

    def password_problem(self, password: str) -> str | None:
        """Describe why ``password`` is unacceptable for a new or changed password."""
        return password_problem(password)

    async def _complete(
        self,
        data: dict[str, Any],
        is_new_user: bool = False,
        profile: dict[str, Any] | None = None,
        **fallback: Any,
    ) -> AuthResult:
        user = user_from_backend(self.name, data, **fallback)
        credential = credential_from_backend(self.name, self.sign_in_method, data)
        if not credential.access_token:
            msg = "Backend did not return an access token"
            raise self._error(AuthErrorCode.INTERNAL_ERROR, msg, details=data)
        user.refresh_token = credential.refresh_token
        await self._save_credential(credential)
        await self._set_current_user(user)
        return AuthResult(
            user=user,
            credential=credential,
            additional_user_info=AdditionalUserInfo(
                provider_id=self.name,
                is_new_user=is_new_user or bool(data.get("isNewUser") or data.get("is_new_user")),
                profile=dict(profile or {}),
            ),
        )

    async def refresh_token(self) -> AuthResult:
        self._ensure_initialized()
        user = self._current_user
        if user is None:
            raise self._error(AuthErrorCode.NO_AUTH_SESSION, "No signed-in user to refresh")
        credential = await self._load_credential()
        if credential is None or not credential.refresh_token:
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, "No refresh token available")

        response = await self._request(
            "POST",
            self._url("/auth/refresh"),
            json={"refreshToken": credential.refresh_token, "clientId": self.options.client_id},
        )
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.TOKEN_REFRESH_FAILED, "Failed to refresh token")

        refreshed = credential_from_backend(self.name, self.sign_in_method, response.json())
        refreshed.refresh_token = refreshed.refresh_token or credential.refresh_token
        user.refresh_token = refreshed.refresh_token
        await self._save_credential(refreshed)
        await self._set_current_user(user)
        return AuthResult(user=user, credential=refreshed, operation_type="refresh")

    async def _authorized_post(self, path: str, payload: dict[str, Any]) -> Any:
        credential = await self._load_credential()
        if self._current_user is None or credential is None or not credential.access_token:
            raise self._error(AuthErrorCode.NO_AUTH_SESSION, "User not authenticated")
        return await self._request(
            "POST",
            self._url(path),
            headers={"Authorization": f"Bearer {credential.access_token}"},
            json={**payload, "clientId": self.options.client_id},
        )

    async def update_password(self, current_password: str, new_password: str) -> None:
        """Change the signed-in user's password."""
        problem = self.password_problem(new_password)
        if problem:
            raise self._error(AuthErrorCode.WEAK_PASSWORD, problem)
        response = await self._authorized_post(
            "/auth/update-password",
            {"currentPassword": current_password, "newPassword": new_password},
        )
        if response.status_code == 401:
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, "Current password is incorrect")
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.INTERNAL_ERROR, "Failed to update password")

    async def revoke_access(self) -> None:
        """Tell the backend (best effort) and clear local state."""
        credential = await self._load_credential()
        try:
            if credential is not None and credential.access_token and self.options.api_url:
                await self._request(
                    "POST",
                    self._url("/auth/signout"),
                    headers={"Authorization": f"Bearer {credential.access_token}"},
                    json={"clientId": self.options.client_id},
                )
        except AuthError as exc:
            logger.warning("Backend sign-out failed: %s", exc)
        finally:
            await self._clear_stored_data()

    async def sign_out(self, options: SignOutOptions | None = None) -> None:
        await self.revoke_access()


class EmailPasswordProvider(PasswordBackendProvider):
    """Email/password provider.

    ``sign_in`` expects ``email`` and ``password`` credentials; with
    ``sign_up=True`` it creates the account first.
    """

    provider_id = "email_password"
    options: EmailPasswordOptions

    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        self._ensure_initialized()
        credentials = options.credentials if options else {}
        email = credentials.get("email")
        password = credentials.get("password")
        if not email or not password:
            msg = "Email and password are required"
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, msg)
        if credentials.get("sign_up") or credentials.get("signUp"):
            return await self.sign_up(email, password, credentials.get("display_name"))

        response = await self._request(
            "POST",
            self._url("/auth/signin"),
            json={"email": email, "password": password, "clientId": self.options.client_id},
        )
        if response.status_code == 401:
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, "Invalid email or password")
        if response.status_code == 404:
            raise self._error(AuthErrorCode.USER_NOT_FOUND, "No account exists for this email")
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to sign in")
        return await self._complete(response.json(), email=email, display_name=email.split("@")[0])

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> AuthResult:
        """Create an account and sign it in."""
        self._ensure_initialized()
        if not self.options.allow_sign_up:
            raise self._error(AuthErrorCode.OPERATION_NOT_SUPPORTED, "Sign up is not allowed")
        if not is_valid_email(email):
            raise self._error(AuthErrorCode.INVALID_EMAIL, "Invalid email address")
        problem = self.password_problem(password)
        if problem:
            raise self._error(AuthErrorCode.WEAK_PASSWORD, problem)

        response = await self._request(
            "POST",
            self._url("/auth/signup"),
            json={
                "email": email,
                "password": password,
                "displayName": display_name,
                "clientId": self.options.client_id,
            },
        )
        if response.status_code == 409:
            raise self._error(AuthErrorCode.EMAIL_ALREADY_IN_USE, "Email already in use")
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to create account")
        return await self._complete(
            response.json(), is_new_user=True, email=email, display_name=display_name or email.split("@")[0]
        )

    async def send_password_reset_email(self, email: str) -> None:
        """Ask the backend to email a password reset link."""
        if not is_valid_email(email):
            raise self._error(AuthErrorCode.INVALID_EMAIL, "Invalid email address")
        response = await self._request(
            "POST",
            self._url("/auth/reset-password"),
            json={"email": email, "clientId": self.options.client_id},
        )
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.INTERNAL_ERROR, "Failed to send reset email")

    async def send_email_verification(self) -> None:
        """Ask the backend to email the signed-in user a verification link.

        Raises
        ------
        AuthError
            ``NO_AUTH_SESSION`` when signed out, ``INVALID_REQUEST`` when
            the address is already verified.
        """
        user = self._current_user
        if user is not None and user.email_verified:
            raise self._error(AuthErrorCode.INVALID_REQUEST, "Email already verified")
        response = await self._authorized_post("/auth/verify-email", {})
        if not response.is_success:
            msg = "Failed to send verification email"
            raise self._error_from_response(response, AuthErrorCode.INTERNAL_ERROR, msg)


class UsernamePasswordProvider(PasswordBackendProvider):
    """Username/password provider.

    ``sign_in`` expects ``username`` and ``password`` credentials; with
    ``sign_up=True`` it creates the account first (``email``,
    ``display_name`` and ``photo_url`` are optional). Usernames and
    passwords are checked against the configured requirements before
    an account is created.
    """

    provider_id = "username_password"
    options: UsernamePasswordOptions

    def username_problem(self, username: str) -> str | None:
        """Describe why ``username`` cannot be registered, or None."""
        rules = self.options.username_requirements
        if len(username) < rules.min_length:
            return f"Username must be at least {rules.min_length} characters long"
        if len(username) > rules.max_length:
            return f"Username must be no more than {rules.max_length} characters long"
        if rules.allowed_pattern and not re.fullmatch(rules.allowed_pattern, username):
            return "Username contains invalid characters"
        if username.lower() in {name.lower() for name in rules.reserved_usernames}:
            return "This username is reserved and cannot be used"
        return None

    def password_problem(self, password: str) -> str | None:
        return check_password_requirements(password, self.options.password_requirements)

    async def sign_in(self, options: SignInOptions | None = None) -> AuthResult:
        self._ensure_initialized()
        credentials = options.credentials if options else {}
        username = credentials.get("username")
        password = credentials.get("password")
        if not username or not password:
            msg = "Username and password are required"
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, msg)
        if credentials.get("sign_up") or credentials.get("signUp"):
            return await self.sign_up(
                username,
                password,
                email=credentials.get("email"),
                display_name=credentials.get("display_name"),
                photo_url=credentials.get("photo_url"),
            )

        response = await self._request(
            "POST",
            self._url("/auth/signin"),
            json={"username": username, "password": password, "clientId": self.options.client_id},
        )
        if response.status_code == 401:
            raise self._error(AuthErrorCode.INVALID_CREDENTIALS, "Invalid username or password")
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to sign in")
        return await self._complete(response.json(), profile={"username": username}, display_name=username)

    async def sign_up(
        self,
        username: str,
        password: str,
        email: str | None = None,
        display_name: str | None = None,
        photo_url: str | None = None,
    ) -> AuthResult:
        """Create an account and sign it in."""
        self._ensure_initialized()
        if not self.options.allow_sign_up:
            raise self._error(AuthErrorCode.OPERATION_NOT_SUPPORTED, "Sign up is not allowed")
        problem = self.username_problem(username)
        if problem:
            raise self._error(AuthErrorCode.INVALID_USERNAME, problem)
        problem = self.password_problem(password)
        if problem:
            raise self._error(AuthErrorCode.WEAK_PASSWORD, problem)
        if email and not is_valid_email(email):
            raise self._error(AuthErrorCode.INVALID_EMAIL, "Invalid email address")

        response = await self._request(
            "POST",
            self._url("/auth/signup"),
            json={
                "username": username,
                "password": password,
                "email": email,
                "displayName": display_name,
                "photoURL": photo_url,
                "clientId": self.options.client_id,
            },
        )
        if response.status_code == 409:
            raise self._error(AuthErrorCode.USERNAME_ALREADY_IN_USE, "Username already taken")
        if not response.is_success:
            raise self._error_from_response(response, AuthErrorCode.SIGN_IN_FAILED, "Failed to create account")
        return await self._complete(
            response.json(),
            is_new_user=True,
            profile={"username": username},
            email=email,
            display_name=display_name or username,
        )

    async def check_username_availability(self, username: str) -> bool:
        """Return True if ``username`` is valid and the backend reports it free.

        Invalid usernames are reported unavailable without a request.
        Transport failures raise ``NETWORK_ERROR``.
        """
        if self.username_problem(username):
            return False
        response = await self._request(
            "POST",
            self._url("/auth/check-username"),
            json={"username": username, "clientId": self.options.client_id},
        )
        if not response.is_success:
            logger.debug("Username check answered %s", response.status_code)
            return False
        body = response.json()
        return bool(body.get("available")) if isinstance(body, dict) else False
