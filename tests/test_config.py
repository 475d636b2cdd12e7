"""Unit tests for settings layering and provider options."""

from __future__ import annotations

from pathlib import Path

import pytest

from pydantic import ValidationError

from authmanager.config import (
    DEFAULT_REDIRECT_URI,
    AuthManagerSettings,
    CustomProviderOptions,
    GitHubOptions,
    GoogleOptions,
    OIDCOptions,
    SMSOptions,
    clear_settings,
    deep_merge,
    get_settings,
    parse_provider_options,
)


# ── Provider options ───────────────────────────────────────────────────


class TestProviderOptions:
    """Tests for the tagged provider options models."""

    def test_model_selected_by_name(self) -> None:
        """The provider key picks the options model."""
        options = parse_provider_options("google", {"client_id": "abc"})
        assert isinstance(options, GoogleOptions)
        assert options.client_id == "abc"
        assert options.scopes == ["openid", "email", "profile"]
        assert options.redirect_uri == DEFAULT_REDIRECT_URI
        assert options.offline_access is True

    def test_explicit_provider_tag(self) -> None:
        """An explicit provider tag overrides the key."""
        options = parse_provider_options("work_sso", {"provider": "oidc", "issuerUrl": "https://id.example"})
        assert isinstance(options, OIDCOptions)
        assert options.issuer_url == "https://id.example"

    def test_camel_case_keys(self) -> None:
        """camelCase option names are accepted."""
        options = parse_provider_options("github", {"clientId": "id", "clientSecret": "s", "usePkce": True})
        assert isinstance(options, GitHubOptions)
        assert options.client_secret == "s"
        assert options.use_pkce is True

    def test_scopes_from_string(self) -> None:
        """Space or comma separated scopes are split."""
        options = parse_provider_options("google", {"scopes": "openid, email drive"})
        assert options.scopes == ["openid", "email", "drive"]

    def test_unknown_provider_keeps_extras(self) -> None:
        """Plugin providers keep arbitrary options."""
        options = parse_provider_options("acme", {"tenant_key": "k"})
        assert isinstance(options, CustomProviderOptions)
        assert options.provider == "acme"
        assert options.model_extra == {"tenant_key": "k"}

    def test_sms_defaults(self) -> None:
        """SMS durations default to one minute, ten minutes and three attempts."""
        options = parse_provider_options("sms", None)
        assert isinstance(options, SMSOptions)
        assert options.resend_delay == 60_000
        assert options.code_ttl == 600_000
        assert options.max_attempts == 3
        assert options.country_code == "+1"

    def test_validation(self) -> None:
        """Out-of-range values are rejected."""
        with pytest.raises(ValidationError):
            parse_provider_options("sms", {"code_length": 2})

    def test_instance_passthrough(self) -> None:
        """Options models are returned unchanged."""
        options = GoogleOptions(client_id="x")
        assert parse_provider_options("google", options) is options


# ── Settings ───────────────────────────────────────────────────────────


class TestAuthManagerSettings:
    """Tests for AuthManagerSettings."""

    def test_defaults(self) -> None:
        """Defaults match the documented behavior."""
        settings = AuthManagerSettings()
        assert settings.persistence == "local"
        assert settings.auto_refresh_token is True
        assert settings.token_refresh_buffer == 300_000
        assert settings.enable_logging is False
        assert settings.log_level == "info"
        assert settings.storage_prefix == "authmanager_"
        assert settings.providers == {}

    def test_camel_case_keys(self) -> None:
        """Top-level camelCase keys are accepted."""
        settings = AuthManagerSettings(
            autoRefreshToken=False, tokenRefreshBuffer=1000, enableLogging=True, logLevel="DEBUG"
        )
        assert settings.auto_refresh_token is False
        assert settings.token_refresh_buffer == 1000
        assert settings.enable_logging is True
        assert settings.log_level == "debug"

    def test_providers_are_tagged(self) -> None:
        """Provider entries become their options models."""
        settings = AuthManagerSettings(providers={"google": {"clientId": "g"}, "github": {"client_id": "h"}})
        assert isinstance(settings.provider_options("google"), GoogleOptions)
        assert isinstance(settings.provider_options("github"), GitHubOptions)
        assert settings.provider_options("slack") is None

    def test_env_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """AUTHMANAGER_ variables configure settings."""
        monkeypatch.setenv("AUTHMANAGER_PERSISTENCE", "memory")
        monkeypatch.setenv("AUTHMANAGER_TOKEN_REFRESH_BUFFER", "60000")
        settings = AuthManagerSettings()
        assert settings.persistence == "memory"
        assert settings.token_refresh_buffer == 60_000

    def test_explicit_beats_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Constructor values win over environment variables."""
        monkeypatch.setenv("AUTHMANAGER_PERSISTENCE", "memory")
        assert AuthManagerSettings(persistence="session").persistence == "session"

    def test_invalid_persistence(self) -> None:
        """Unknown persistence names are rejected."""
        with pytest.raises(ValidationError):
            AuthManagerSettings(persistence="cloud")

    def test_show_redacts_secrets(self) -> None:
        """show() never prints client secrets."""
        settings = AuthManagerSettings(providers={"github": {"client_id": "id", "client_secret": "hunter2"}})
        text = settings.show()
        assert "hunter2" not in text
        assert "[providers.github]" in text
        assert "client_secret" in text
        assert "********" in text


class TestTomlConfig:
    """Tests for TOML configuration files."""

    def test_project_file(self, tmp_path: Path) -> None:
        """./authmanager.toml is read."""
        (tmp_path / "authmanager.toml").write_text(
            'persistence = "session"\n\n[providers.google]\nclient_id = "from-toml"\n'
        )
        settings = AuthManagerSettings()
        assert settings.persistence == "session"
        assert settings.provider_options("google").client_id == "from-toml"

    def test_pyproject_section(self, tmp_path: Path) -> None:
        """[tool.authmanager] in pyproject.toml is read."""
        (tmp_path / "pyproject.toml").write_text('[tool.authmanager]\nautoRefreshToken = false\n')
        assert AuthManagerSettings().auto_refresh_token is False

    def test_config_file_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """AUTHMANAGER_CONFIG_FILE names an extra file that overrides project files."""
        (tmp_path / "authmanager.toml").write_text('persistence = "session"\nstorage_prefix = "proj_"\n')
        extra = tmp_path / "override.toml"
        extra.write_text('persistence = "memory"\n')
        monkeypatch.setenv("AUTHMANAGER_CONFIG_FILE", str(extra))
        settings = AuthManagerSettings()
        assert settings.persistence == "memory"
        assert settings.storage_prefix == "proj_"

    def test_env_beats_toml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables win over TOML files."""
        (tmp_path / "authmanager.toml").write_text('persistence = "session"\n')
        monkeypatch.setenv("AUTHMANAGER_PERSISTENCE", "memory")
        assert AuthManagerSettings().persistence == "memory"

    def test_explicit_merges_with_toml(self, tmp_path: Path) -> None:
        """Explicit provider options merge into TOML provider options."""
        (tmp_path / "authmanager.toml").write_text('[providers.github]\nclient_id = "toml-id"\nclient_secret = "s"\n')
        settings = AuthManagerSettings(providers={"github": {"client_id": "explicit"}})
        github = settings.provider_options("github")
        assert github.client_id == "explicit"
        assert github.client_secret == "s"

    def test_unreadable_file_ignored(self, tmp_path: Path) -> None:
        """A malformed TOML file is skipped."""
        (tmp_path / "authmanager.toml").write_text("persistence = [unterminated\n")
        assert AuthManagerSettings().persistence == "local"


class TestSettingsCache:
    """Tests for get_settings / clear_settings."""

    def test_cached_until_cleared(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """get_settings is cached; clear_settings reloads."""
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("AUTHMANAGER_PERSISTENCE", "memory")
        assert get_settings().persistence == "local"
        clear_settings()
        assert get_settings().persistence == "memory"


class TestDeepMerge:
    """Tests for deep_merge."""

    def test_nested_override(self) -> None:
        """Nested dicts merge and override values win."""
        base = {"a": 1, "providers": {"google": {"client_id": "x", "scopes": ["a"]}}}
        override = {"providers": {"google": {"client_id": "y"}}, "b": 2}
        assert deep_merge(base, override) == {
            "a": 1,
            "b": 2,
            "providers": {"google": {"client_id": "y", "scopes": ["a"]}},
        }
        assert base["providers"]["google"]["client_id"] == "x"
