"""Configuration for authmanager using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.authmanager] section (project-level)
3. ./authmanager.toml (project-level, explicit)
4. File named by AUTHMANAGER_CONFIG_FILE
5. Environment variables
6. Values passed to the constructor (highest priority)

Environment variables use the AUTHMANAGER_ prefix with nested delimiter __.
Example: AUTHMANAGER_PERSISTENCE=memory,
AUTHMANAGER_PROVIDERS__GOOGLE__CLIENT_ID=your-client-id
"""

from __future__ import annotations

import logging
import os
import re
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://127.0.0.1:8765/callback"


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("authmanager.toml")
    if project_toml.exists():
        files.append(project_toml)

    env_config = os.environ.get("AUTHMANAGER_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config).expanduser()
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("authmanager", {})

        merged = deep_merge(merged, data)

    return merged


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries. Values from ``override`` win."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


def _snake(name: str) -> str:
    return _CAMEL_RE.sub(r"_\1", name).lower()


def _snake_keys(data: Any) -> Any:
    """Rename camelCase keys of a mapping to snake_case (one level)."""
    if not isinstance(data, dict):
        return data
    return {(_snake(k) if isinstance(k, str) else k): v for k, v in data.items()}


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "client_secret",
    "redis_url",
}

_REDACTED = "********"


def _split_scopes(value: Any) -> Any:
    if isinstance(value, str):
        return [s for s in re.split(r"[\s,]+", value) if s]
    return value


# ── Provider options ─────────────────────────────────────────────────


class ProviderOptions(BaseModel):
    """Options shared by every provider.

    ``provider`` is the tag selecting the concrete options model.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider: str = "custom"

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        return _snake_keys(data)


class OAuthProviderOptions(ProviderOptions):
    """Options shared by authorization-code providers."""

    client_id: str = Field(default="", description="OAuth client ID from the provider")
    client_secret: str | None = Field(
        default=None,
        description="OAuth client secret (omit for public clients with PKCE)",
    )
    redirect_uri: str = Field(default=DEFAULT_REDIRECT_URI, description="Registered redirect URI")
    scopes: list[str] = Field(default_factory=list, description="Scopes to request")
    use_pkce: bool = Field(default=False, description="Send a PKCE S256 challenge")
    auth_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for the redirect (None waits indefinitely)",
    )
    additional_params: dict[str, str] = Field(
        default_factory=dict,
        description="Extra authorization URL parameters",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, v: Any) -> Any:
        """Accept a space or comma separated string (from env var) or a list."""
        return _split_scopes(v)


class GoogleOptions(OAuthProviderOptions):
    """Google sign-in options."""

    provider: str = "google"
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    offline_access: bool = Field(default=True, description="Request a refresh token")
    include_granted_scopes: bool = Field(default=True, description="Incremental authorization")
    hosted_domain: str | None = Field(default=None, description="Restrict to a Workspace domain (hd)")


class GitHubOptions(OAuthProviderOptions):
    """GitHub OAuth App options."""

    provider: str = "github"
    scopes: list[str] = Field(default_factory=lambda: ["read:user", "user:email"])
    allow_signup: bool = Field(default=True, description="Offer account creation on the consent page")


class MicrosoftOptions(OAuthProviderOptions):
    """Microsoft identity platform options."""

    provider: str = "microsoft"
    scopes: list[str] = Field(
        default_factory=lambda: ["openid", "email", "profile", "offline_access", "User.Read"]
    )
    tenant: str = Field(default="common", description="Azure AD tenant ID or common/organizations/consumers")


class FacebookOptions(OAuthProviderOptions):
    """Facebook Login options."""

    provider: str = "facebook"
    scopes: list[str] = Field(default_factory=lambda: ["email", "public_profile"])
    api_version: str = Field(default="v18.0", description="Graph API version")


class LinkedInOptions(OAuthProviderOptions):
    """Sign In with LinkedIn (OpenID Connect) options."""

    provider: str = "linkedin"
    scopes: list[str] = Field(default_factory=lambda: ["openid", "profile", "email"])


class SlackOptions(OAuthProviderOptions):
    """Sign in with Slack (OpenID Connect) options."""

    provider: str = "slack"
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    team: str | None = Field(default=None, description="Workspace ID to preselect")


class AppleOptions(OAuthProviderOptions):
    """Sign in with Apple options.

    ``client_id`` is the Services ID. Apple expects ``client_secret`` to be
    a JWT signed with the team's private key; generate it out of band.
    """

    provider: str = "apple"
    scopes: list[str] = Field(default_factory=lambda: ["name", "email"])
    response_mode: str = Field(default="form_post", description="How Apple returns the redirect parameters")


class OIDCOptions(OAuthProviderOptions):
    """Generic OpenID Connect options.

    Endpoints set here take precedence over discovered ones.
    """

    provider: str = "oidc"
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    issuer_url: str = Field(default="", description="Issuer URL used for discovery")
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    revoke_endpoint: str | None = None


class SMSOptions(ProviderOptions):
    """Phone number sign-in options. Durations are milliseconds."""

    provider: str = "sms"
    send_code_url: str = Field(default="", description="Backend endpoint that sends the code")
    verify_code_url: str = Field(default="", description="Backend endpoint that verifies the code")
    client_id: str | None = None
    country_code: str = Field(default="+1", description="Prefix for numbers given without one")
    code_length: int = Field(default=6, ge=4, le=10)
    resend_delay: int = Field(default=60_000, ge=0)
    code_ttl: int = Field(default=600_000, gt=0)
    max_attempts: int = Field(default=3, ge=1)


class MagicLinkOptions(ProviderOptions):
    """Email link sign-in options. Durations are milliseconds."""

    provider: str = "magic_link"
    send_link_url: str = Field(default="", description="Backend endpoint that emails the link")
    verify_url: str | None = Field(default=None, description="Backend endpoint that redeems the token")
    client_id: str | None = None
    redirect_url: str = Field(default="", description="Base URL the emailed link points at")
    link_ttl: int = Field(default=900_000, gt=0)
    email_template: str | None = None


class EmailPasswordOptions(ProviderOptions):
    """Email/password options for a REST backend."""

    provider: str = "email_password"
    api_url: str = Field(default="", description="Base URL of the auth backend")
    client_id: str | None = None
    allow_sign_up: bool = True


class UsernameRequirements(BaseModel):
    """Rules a new username must satisfy."""

    model_config = ConfigDict(extra="ignore")

    min_length: int = Field(default=3, ge=1)
    max_length: int = Field(default=20, ge=1)
    allowed_pattern: str = Field(default=r"^[A-Za-z0-9_-]+$", description="Regex the whole username must match")
    reserved_usernames: list[str] = Field(default_factory=lambda: ["admin", "root", "system", "user"])

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        return _snake_keys(data)


class PasswordRequirements(BaseModel):
    """Rules a new password must satisfy."""

    model_config = ConfigDict(extra="ignore")

    min_length: int = Field(default=8, ge=1)
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = False

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        return _snake_keys(data)


class UsernamePasswordOptions(ProviderOptions):
    """Username/password options for a REST backend."""

    provider: str = "username_password"
    api_url: str = Field(default="", description="Base URL of the auth backend")
    client_id: str | None = None
    allow_sign_up: bool = True
    username_requirements: UsernameRequirements = Field(default_factory=UsernameRequirements)
    password_requirements: PasswordRequirements = Field(default_factory=PasswordRequirements)


class CustomProviderOptions(ProviderOptions):
    """Options for plugin providers. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)


PROVIDER_OPTIONS: dict[str, type[ProviderOptions]] = {
    "google": GoogleOptions,
    "github": GitHubOptions,
    "microsoft": MicrosoftOptions,
    "facebook": FacebookOptions,
    "linkedin": LinkedInOptions,
    "slack": SlackOptions,
    "oidc": OIDCOptions,
    "apple": AppleOptions,
    "sms": SMSOptions,
    "magic_link": MagicLinkOptions,
    "email_password": EmailPasswordOptions,
    "username_password": UsernamePasswordOptions,
}


def parse_provider_options(name: str, value: Any) -> ProviderOptions:
    """Build the options model for provider ``name``.

    The ``provider`` key selects the model and defaults to ``name``;
    unknown tags produce CustomProviderOptions.
    """
    if isinstance(value, ProviderOptions):
        return value
    data = _snake_keys(dict(value or {}))
    tag = data.get("provider") or name
    data["provider"] = tag
    return PROVIDER_OPTIONS.get(tag, CustomProviderOptions).model_validate(data)


# ── Settings ─────────────────────────────────────────────────────────


class _TomlConfigSource(PydanticBaseSettingsSource):
    """Settings source reading the merged TOML configuration files."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        return _snake_keys(_load_toml_config())


class AuthManagerSettings(BaseSettings):
    """Top-level authmanager settings.

    Environment prefix: AUTHMANAGER_

    Camel-case keys (``autoRefreshToken``, ``tokenRefreshBuffer``,
    ``enableLogging``, ``logLevel``...) are accepted alongside snake_case.
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTHMANAGER_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    providers: dict[str, SerializeAsAny[ProviderOptions]] = Field(
        default_factory=dict,
        description="Per-provider options keyed by provider name",
    )
    persistence: Literal["local", "session", "memory", "redis"] = Field(
        default="local",
        description="Credential persistence backend",
    )
    auto_refresh_token: bool = Field(default=True, description="Refresh tokens before they expire")
    token_refresh_buffer: int = Field(
        default=300_000,
        ge=0,
        description="Milliseconds before expiry at which to refresh",
    )
    enable_logging: bool = Field(default=False, description="Emit package log records")
    log_level: Literal["debug", "info", "warn", "warning", "error"] = Field(default="info")
    storage_prefix: str = Field(default="authmanager_", description="Credential key namespace")
    storage_path: str | None = Field(default=None, description="File for local persistence")
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL for redis persistence")
    platform: Literal["desktop", "web", "ios", "android"] | None = Field(
        default=None,
        description="Override runtime platform detection",
    )

    def __init__(self, **data: Any) -> None:
        super().__init__(**_snake_keys(data))

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Explicit values, then environment, then TOML files."""
        return (init_settings, env_settings, _TomlConfigSource(settings_cls), file_secret_settings)

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        return _snake_keys(data)

    @field_validator("log_level", mode="before")
    @classmethod
    def _lower_log_level(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @field_validator("providers", mode="before")
    @classmethod
    def _tag_providers(cls, v: Any) -> Any:
        """Select each provider's options model from its tag or key."""
        if not isinstance(v, dict):
            return v
        return {name: parse_provider_options(name, value) for name, value in v.items()}

    def provider_options(self, name: str) -> ProviderOptions | None:
        """Return the options configured for ``name``, if any."""
        return self.providers.get(name)

    def show(self) -> str:
        """Format settings as a readable table with secrets redacted."""
        lines = ["authmanager configuration", "=" * 60, ""]

        data = self.model_dump(exclude={"providers", *_SENSITIVE_FIELDS})
        for field_name, field_value in data.items():
            lines.append(f"  {field_name:22} = {field_value}")
        lines.extend(f"  {rn:22} = {_REDACTED}" for rn in sorted(_SENSITIVE_FIELDS & type(self).model_fields.keys()))

        for name, options in self.providers.items():
            lines.append(f"\n[providers.{name}]")
            lines.append("-" * 40)
            for field_name, field_value in options.model_dump(exclude=_SENSITIVE_FIELDS).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:22} = {value_str}")
            lines.extend(
                f"  {rn:22} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & type(options).model_fields.keys())
                if getattr(options, rn, None)
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> AuthManagerSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return AuthManagerSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()
