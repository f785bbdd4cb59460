"""Config discovery and loading for the Integrate SDK command line.

Configuration comes from integrate.json files plus a .env file:

    {
      "oauthApiBase": "https://app.example.com/api/integrate/oauth",
      "serverUrl": "https://tools.example.com/api/v1/mcp",
      "flow": {"mode": "popup", "popup": {"width": 600, "height": 700}, "callbackTimeout": 300},
      "maxReauthRetries": 1,
      "integrations": {
        "github": {"scopes": ["repo", "user"]},
        "linear": {"provider": "linear", "scopes": ["read"], "tools": ["linear_list_issues"]}
      }
    }

String values may reference environment variables as ${VAR}.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .client import ClientConfig
from .environment import Environment
from .integrations import (
    Integration,
    generic_oauth_integration,
    github_integration,
    gmail_integration,
    simple_integration,
)
from .oauth.tokens import DEFAULT_POPUP_HEIGHT, DEFAULT_POPUP_WIDTH, OAuthFlowConfig, PopupOptions
from .reauth import DEFAULT_MAX_REAUTH_RETRIES

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "integrate.json"

# Directories to search for config files, in priority order
CONFIG_SEARCH_DIRS = [
    Path("."),                        # Current directory
    Path(".integrate"),               # Project-level .integrate directory
    Path.home() / ".integrate",       # User-level .integrate directory
]

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".integrate" / ".env",
]

ENV_OAUTH_API_BASE = "INTEGRATE_OAUTH_API_BASE"
ENV_SERVER_URL = "INTEGRATE_SERVER_URL"


class ConfigError(ValueError):
    """Configuration is missing or invalid."""

    pass


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Missing variables resolve to an empty string.
    """
    if "${" not in value:
        return value

    result = value
    for match in re.finditer(r"\$\{([^}]+)\}", value):
        result = result.replace(match.group(0), os.environ.get(match.group(1), ""))
    return result


def _resolve(value: Any) -> Any:
    """Resolve ${VAR} references recursively through JSON data."""
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, list):
        return [_resolve(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve(v) for k, v in value.items()}
    return value


@dataclass
class IntegrationSettings:
    """Configuration of a single integration."""

    name: str
    provider: str | None = None
    scopes: list[str] | None = None
    tools: list[str] | None = None
    redirect_uri: str | None = None

    def to_integration(self) -> Integration:
        """Build the Integration, using the built-in definitions for github and gmail."""
        provider = self.provider or self.name

        if provider == "github":
            integration = github_integration(scopes=self.scopes, redirect_uri=self.redirect_uri, tools=self.tools)
        elif provider == "gmail":
            integration = gmail_integration(scopes=self.scopes, redirect_uri=self.redirect_uri, tools=self.tools)
        elif self.scopes is None and self.provider is None:
            return simple_integration(self.name, self.tools or [])
        else:
            integration = generic_oauth_integration(
                id=self.name,
                provider=provider,
                scopes=self.scopes or [],
                tools=self.tools or [],
                redirect_uri=self.redirect_uri,
            )

        integration.id = self.name
        return integration


@dataclass
class Config:
    """Complete Integrate SDK command line configuration."""

    oauth_api_base: str | None = None
    server_url: str | None = None
    flow: OAuthFlowConfig = field(default_factory=OAuthFlowConfig)
    max_reauth_retries: int = DEFAULT_MAX_REAUTH_RETRIES
    integrations: dict[str, IntegrationSettings] = field(default_factory=dict)
    config_paths: list[Path] = field(default_factory=list)  # All config files loaded
    env_path: Path | None = None

    @property
    def config_path(self) -> Path | None:
        """Primary config (first found)."""
        return self.config_paths[0] if self.config_paths else None

    def to_client_config(self, environment: Environment | None = None) -> ClientConfig:
        """Build the ClientConfig for IntegrateClient.

        Raises:
            ConfigError: If no OAuth API base is configured
        """
        if not self.oauth_api_base:
            raise ConfigError(
                f"No OAuth API base configured. Set \"oauthApiBase\" in {CONFIG_FILE_NAME} "
                f"or the {ENV_OAUTH_API_BASE} environment variable."
            )

        return ClientConfig(
            oauth_api_base=self.oauth_api_base,
            server_url=self.server_url,
            integrations=[s.to_integration() for s in self.integrations.values()],
            environment=environment,
            flow=self.flow,
            max_reauth_retries=self.max_reauth_retries,
        )


def find_config_files(explicit_path: Path | None = None) -> list[Path]:
    """Find integrate.json files.

    Args:
        explicit_path: If provided, returns only this path if it exists.

    Returns:
        List of found config file paths, ordered by search directory priority.
    """
    if explicit_path:
        if explicit_path.exists():
            return [explicit_path]
        return []

    found_files: list[Path] = []
    seen_resolved: set[Path] = set()  # Same file reachable via different dirs

    for search_dir in CONFIG_SEARCH_DIRS:
        candidate = search_dir / CONFIG_FILE_NAME
        if not candidate.is_file():
            continue

        resolved = candidate.resolve()
        if resolved in seen_resolved:
            continue
        seen_resolved.add(resolved)
        found_files.append(candidate)

    return found_files


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def parse_flow_config(data: dict[str, Any]) -> OAuthFlowConfig:
    """Parse the "flow" section.

    Raises:
        ConfigError: If the mode or numbers are invalid
    """
    popup = data.get("popup", {})
    try:
        return OAuthFlowConfig(
            mode=data.get("mode", "redirect"),
            popup_options=PopupOptions(
                width=int(popup.get("width", DEFAULT_POPUP_WIDTH)),
                height=int(popup.get("height", DEFAULT_POPUP_HEIGHT)),
            ),
            callback_timeout=float(data.get("callbackTimeout", 300)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid flow configuration: {e}") from e


def parse_integration_settings(name: str, data: dict[str, Any]) -> IntegrationSettings:
    """Parse an integration configuration from JSON data."""
    return IntegrationSettings(
        name=name,
        provider=data.get("provider"),
        scopes=data.get("scopes"),
        tools=data.get("tools"),
        redirect_uri=data.get("redirectUri"),
    )


def load_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
) -> Config:
    """Load configuration from discovered or explicit paths.

    Values from earlier files win; environment variables override the
    OAuth API base and server URL.

    Args:
        config_path: Explicit path to config file (optional)
        env_path: Explicit path to .env file (optional)

    Returns:
        Config object

    Raises:
        ConfigError: If an explicit config file does not exist or a file is invalid
    """
    # Find and load .env file first so ${VAR} references resolve
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    config_files = find_config_files(config_path)
    if config_path and not config_files:
        raise ConfigError(f"Config file not found: {config_path}")

    config = Config(config_paths=config_files, env_path=env_file)
    seen: set[str] = set()

    for config_file in config_files:
        try:
            with open(config_file) as f:
                data = _resolve(json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_file}: {e}") from e

        if "oauthApiBase" in data and "oauthApiBase" not in seen:
            config.oauth_api_base = data["oauthApiBase"]
        if "serverUrl" in data and "serverUrl" not in seen:
            config.server_url = data["serverUrl"]
        if "flow" in data and "flow" not in seen:
            config.flow = parse_flow_config(data["flow"])
        if "maxReauthRetries" in data and "maxReauthRetries" not in seen:
            config.max_reauth_retries = int(data["maxReauthRetries"])
        seen.update(data.keys())

        for name, settings in data.get("integrations", {}).items():
            if name not in config.integrations:  # First definition wins
                config.integrations[name] = parse_integration_settings(name, settings)

        logger.debug(f"Loaded config from {config_file}")

    config.oauth_api_base = os.environ.get(ENV_OAUTH_API_BASE) or config.oauth_api_base
    config.server_url = os.environ.get(ENV_SERVER_URL) or config.server_url

    return config
