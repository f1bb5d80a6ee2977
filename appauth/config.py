"""Configuration system for appauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.appauth] section (project-level)
3. ./appauth.toml (project-level, explicit)
4. ~/.config/appauth/config.toml (user-level, overrides project)
5. Environment variables (fill keys the files leave unset)

Environment variables use the APPAUTH_ prefix with nested delimiter __.
Example: APPAUTH_AUTH__CLIENT_ID, APPAUTH_AUTH__PLATFORM__IO__REDIRECT_URL

Application code that already holds its configuration as a mapping
(``{"auth": {"clientId": ...}}`` or ``{"auth.clientId": ...}``) builds
``AuthSettings`` with ``AuthSettings.from_mapping``.
"""

from __future__ import annotations

import os
import sys

from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .exceptions import ConfigurationError


if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomli as tomllib  # type: ignore[import-not-found]
    except ImportError:
        tomllib = None


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    appauth_toml = Path("appauth.toml")
    if appauth_toml.exists():
        files.append(appauth_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "appauth" / "config.toml"
    else:
        user_config = Path("~/.config/appauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("APPAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    if tomllib is None:
        return {}

    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError):
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("appauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _unflatten(config: Mapping[str, Any]) -> dict[str, Any]:
    """Expand dotted keys (``auth.clientId``) into nested dictionaries."""
    nested: dict[str, Any] = {}
    for key, value in config.items():
        if isinstance(value, Mapping):
            value = _unflatten(value)
        parts = str(key).split(".")
        target = nested
        for part in parts[:-1]:
            existing = target.get(part)
            if not isinstance(existing, dict):
                existing = {}
                target[part] = existing
            target = existing
        leaf = parts[-1]
        if isinstance(value, dict) and isinstance(target.get(leaf), dict):
            target[leaf] = _deep_merge(target[leaf], value)
        else:
            target[leaf] = value
    return nested


# Application config keys that differ from the settings field names.
_KEY_ALIASES: dict[str, str] = {
    "authorizationEndpoint": "authorization_endpoint",
    "tokenEndpoint": "token_endpoint",
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "redirectUrl": "redirect_url",
}

# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_secret"}

_REDACTED = "********"


def _normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase application keys onto settings field names."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            value = _normalize_keys(value)
        result[_KEY_ALIASES.get(key, key)] = value
    return result


def _split_list(v: Any) -> Any:
    """Accept a space- or comma-separated string (from env var) or a list."""
    if isinstance(v, str):
        return [s for s in v.replace(",", " ").split() if s]
    return v


class RedirectSettings(BaseModel):
    """Redirect configuration for one platform family."""

    redirect_url: str | None = Field(
        default=None,
        description="Redirect URL registered with the authorization server",
    )


class PlatformSettings(BaseModel):
    """Platform selection and per-platform redirect URLs.

    TOML section: [auth.platform], [auth.platform.web], [auth.platform.io]
    """

    name: Literal["auto", "web", "native", "unsupported"] = Field(
        default="auto",
        description="Login flow platform: auto-detect, web, native or unsupported",
    )
    web: RedirectSettings = Field(default_factory=RedirectSettings)
    io: RedirectSettings = Field(default_factory=RedirectSettings)


class AuthSettings(BaseSettings):
    """Authentication configuration.

    Environment prefix: APPAUTH_AUTH__
    Example: APPAUTH_AUTH__CLIENT_ID=your-client-id
    Example: APPAUTH_AUTH__PLATFORM__IO__REDIRECT_URL=http://localhost:9004/cb

    TOML section: [auth]
    """

    model_config = SettingsConfigDict(
        env_prefix="APPAUTH_AUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    provider: Literal["oauth2", "dummy"] = Field(
        default="oauth2",
        description="Auth provider: oauth2 or dummy",
    )

    # Endpoints and client credentials (required by the oauth2 provider)
    authorization_endpoint: str = Field(
        default="",
        description="Authorization endpoint URL",
    )
    token_endpoint: str = Field(
        default="",
        description="Token endpoint URL",
    )
    client_id: str = Field(
        default="",
        description="OAuth2 client ID",
    )
    client_secret: str | None = Field(
        default=None,
        description="OAuth2 client secret (omit for public clients)",
    )

    scopes: Annotated[list[str] | None, NoDecode] = Field(
        default=None,
        description="OAuth2 scopes to request (space- or comma-separated from env)",
    )

    platform: PlatformSettings = Field(default_factory=PlatformSettings)

    storage: Literal["keyring", "memory"] = Field(
        default="keyring",
        description="Credential storage backend: keyring or memory",
    )

    timeout: float | None = Field(
        default=None,
        gt=0,
        description="Seconds to wait for the authorization response (None waits forever)",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _parse_scopes(cls, v: Any) -> Any:
        """Accept a separated string or a list."""
        return _split_list(v)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> AuthSettings:
        """Build settings from an application config mapping.

        Accepts nested (``{"auth": {"clientId": ...}}``) or dotted
        (``{"auth.clientId": ...}``) keys.

        Parameters
        ----------
        config : Mapping[str, Any]
            The application configuration.

        Returns
        -------
        AuthSettings
            The parsed auth settings.

        Raises
        ------
        ConfigurationError
            If the mapping holds invalid values.
        """
        section = _unflatten(config).get("auth") or {}
        if not isinstance(section, dict):
            msg = "The 'auth' configuration section must be a mapping"
            raise ConfigurationError(msg, key="auth")
        try:
            return cls(**_normalize_keys(section))
        except ValidationError as exc:
            first = exc.errors()[0]
            key = "auth." + ".".join(str(p) for p in first.get("loc", ()))
            msg = f"Invalid auth configuration: {first.get('msg', exc)}"
            raise ConfigurationError(msg, key=key) from exc

    def require_oauth2(self) -> None:
        """Validate the keys the OAuth2 provider cannot run without.

        Raises
        ------
        ConfigurationError
            If an endpoint or the client id is missing or malformed.
        """
        for field_name, key in (
            ("authorization_endpoint", "auth.authorizationEndpoint"),
            ("token_endpoint", "auth.tokenEndpoint"),
        ):
            value = getattr(self, field_name)
            if not value:
                msg = f"Missing required configuration key '{key}'"
                raise ConfigurationError(msg, key=key)
            parsed = urlparse(value)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                msg = f"Configuration key '{key}' must be an absolute http(s) URL"
                raise ConfigurationError(msg, key=key)
        if not self.client_id:
            msg = "Missing required configuration key 'auth.clientId'"
            raise ConfigurationError(msg, key="auth.clientId")


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: APPAUTH_LOG__
    Example: APPAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="APPAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class AppAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: APPAUTH__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.appauth] section
    3. ./appauth.toml (project-level)
    4. ~/.config/appauth/config.toml (user-level, overrides project)
    5. Environment variables (fill keys the files leave unset)
    """

    model_config = SettingsConfigDict(
        env_prefix="APPAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    log: LogSettings = Field(default_factory=LogSettings)
    auth: AuthSettings | None = Field(
        default=None,
        description="Authentication settings (None to disable)",
    )

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()
        merged = _deep_merge(toml_config, data)

        if isinstance(merged.get("auth"), dict):
            merged["auth"] = AuthSettings(**_normalize_keys(merged["auth"]))
        elif merged.get("auth") is None and os.environ.get("APPAUTH_AUTH__CLIENT_ID"):
            # Env-only configuration works without a config file.
            merged["auth"] = AuthSettings()

        super().__init__(**merged)

    def _sections(self) -> list[str]:
        names = ["log"]
        if self.auth is not None:
            names.append("auth")
        return names

    def to_toml(self) -> str:
        """Export settings as TOML string."""
        lines = ["# appauth configuration", "# Generated by: appauth config --toml", ""]

        for section_name in self._sections():
            section = getattr(self, section_name)
            data = section.model_dump(exclude=_SENSITIVE_FIELDS)
            nested = {k: v for k, v in data.items() if isinstance(v, dict)}
            lines.append(f"[{section_name}]")
            lines.extend(
                f"{k} = {_toml_value(v)}"
                for k, v in data.items()
                if v is not None and k not in nested
            )
            lines.extend(
                f'{rn} = "{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & type(section).model_fields.keys())
            )
            lines.append("")
            lines.extend(_toml_tables(section_name, nested))

        return "\n".join(lines)

    def to_env(self) -> str:
        """Export settings as shell environment variables."""
        lines = ["# appauth environment variables", "# Generated by: appauth config --env", ""]

        for section_name in self._sections():
            section = getattr(self, section_name)
            prefix = f"APPAUTH_{section_name.upper()}__"
            data = section.model_dump(exclude=_SENSITIVE_FIELDS)
            for name, value in _flatten_env(data):
                lines.append(f'export {prefix}{name}="{value}"')
            lines.extend(
                f'export {prefix}{rn.upper()}="{_REDACTED}"'
                for rn in sorted(_SENSITIVE_FIELDS & type(section).model_fields.keys())
            )

        return "\n".join(lines)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["appauth configuration", "=" * 60]

        for section_name in self._sections():
            section = getattr(self, section_name)
            data = section.model_dump(exclude=_SENSITIVE_FIELDS)
            lines.append(f"\n{section_name}")
            lines.append("-" * 40)
            for name, value in _flatten_env(data, sep="."):
                value_str = str(value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {name.lower():28} = {value_str}")
            lines.extend(
                f"  {rn:28} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & type(section).model_fields.keys())
            )

        return "\n".join(lines)


def _toml_value(value: Any) -> str:
    if isinstance(value, list):
        return "[" + ", ".join(f'"{v}"' for v in value) + "]"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


def _toml_tables(prefix: str, tables: dict[str, Any]) -> list[str]:
    lines: list[str] = []
    for name, data in tables.items():
        nested = {k: v for k, v in data.items() if isinstance(v, dict)}
        lines.append(f"[{prefix}.{name}]")
        lines.extend(
            f"{k} = {_toml_value(v)}" for k, v in data.items() if v is not None and k not in nested
        )
        lines.append("")
        lines.extend(_toml_tables(f"{prefix}.{name}", nested))
    return lines


def _flatten_env(data: dict[str, Any], sep: str = "__") -> list[tuple[str, str]]:
    items: list[tuple[str, str]] = []
    for key, value in data.items():
        if isinstance(value, dict):
            items.extend((f"{key.upper()}{sep}{k}", v) for k, v in _flatten_env(value, sep))
        elif value is None:
            continue
        elif isinstance(value, list):
            items.append((key.upper(), ",".join(str(v) for v in value)))
        elif isinstance(value, bool):
            items.append((key.upper(), "true" if value else "false"))
        else:
            items.append((key.upper(), str(value)))
    return items


@lru_cache(maxsize=1)
def get_settings() -> AppAuthSettings:
    """Get the global settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return AppAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> AppAuthSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
