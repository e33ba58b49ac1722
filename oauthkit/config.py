"""Config discovery and loading for oauthkit."""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .credentials import Credentials
from .errors import ConfigurationError
from .store import DEFAULT_STORE_DIR
from .transport import DEFAULT_TIMEOUT


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Handles:
    - Full replacement: "${VAR}" -> "value"
    - Partial replacement: "prefix_${VAR}_suffix" -> "prefix_value_suffix"
    - Multiple vars: "${VAR1}_${VAR2}" -> "value1_value2"
    - Missing vars resolve to empty string
    """
    if "${" not in value:
        return value

    result = value
    for match in re.finditer(r'\$\{([^}]+)\}', value):
        env_value = os.environ.get(match.group(1), "")
        result = result.replace(match.group(0), env_value)
    return result


def _resolve(value: Any) -> Any:
    """Expand ${VAR} references in strings, recursively through lists and dicts."""
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, list):
        return [_resolve(item) for item in value]
    if isinstance(value, dict):
        return {key: _resolve(item) for key, item in value.items()}
    return value


@dataclass
class ProviderSettings:
    """Client configuration for a single provider."""

    name: str
    client_id: str = ""
    client_secret: str = ""
    callback: str | None = None
    scope: list[str] = field(default_factory=list)
    endpoints: dict[str, str] = field(default_factory=dict)
    rsa_private_key: Path | None = None

    def credentials(self, callback_url: str) -> Credentials:
        """Build credentials for one authorization attempt.

        Raises:
            ConfigurationError: If client_id or client_secret is missing
        """
        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                f"Provider {self.name!r} needs client_id and client_secret in its settings"
            )
        return Credentials(self.client_id, self.client_secret, callback_url)

    def read_rsa_private_key(self) -> bytes | None:
        """Load the PEM key for RSA-SHA1 providers, if one is configured."""
        if self.rsa_private_key is None:
            return None
        try:
            return self.rsa_private_key.expanduser().read_bytes()
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read RSA private key for {self.name!r}: {e}"
            ) from e


@dataclass
class OAuthConfig:
    """Complete oauthkit configuration."""

    providers: dict[str, ProviderSettings] = field(default_factory=dict)
    extra_providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    http_timeout: float = DEFAULT_TIMEOUT
    store_backend: str = "memory"
    store_dir: Path = DEFAULT_STORE_DIR
    config_path: Path | None = None  # Primary config (first found)
    config_paths: list[Path] = field(default_factory=list)  # All config files loaded
    env_path: Path | None = None

    def provider_settings(self, name: str) -> ProviderSettings:
        """Settings for a provider.

        Raises:
            ConfigurationError: If the provider is not configured
        """
        try:
            return self.providers[name.strip().lower()]
        except KeyError:
            raise ConfigurationError(f"No settings configured for provider {name!r}") from None


# Directories to search for config files, in priority order
CONFIG_SEARCH_DIRS = [
    Path("."),
    Path(".oauthkit"),
    Path.home() / ".oauthkit",
]

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".oauthkit" / ".env",
]

STORE_BACKENDS = ("memory", "file")


def find_config_files(explicit_path: Path | None = None) -> list[Path]:
    """Find all JSON config files with 'oauth' in the filename.

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
    seen_resolved: set[Path] = set()

    for search_dir in CONFIG_SEARCH_DIRS:
        if not search_dir.exists() or not search_dir.is_dir():
            continue

        for json_file in sorted(search_dir.glob("*.json")):
            if "oauth" not in json_file.name.lower():
                continue

            # Same file reached through different search dirs
            resolved = json_file.resolve()
            if resolved in seen_resolved:
                continue
            seen_resolved.add(resolved)

            found_files.append(json_file)

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


def parse_provider_settings(name: str, data: dict[str, Any]) -> ProviderSettings:
    """Parse one provider's settings from JSON data (after ${VAR} expansion)."""
    scope = data.get("scope", [])
    if isinstance(scope, str):
        scope = scope.split()
    key_path = data.get("rsa_private_key")

    return ProviderSettings(
        name=name.strip().lower(),
        client_id=data.get("client_id", ""),
        client_secret=data.get("client_secret", ""),
        callback=data.get("callback") or None,
        scope=list(scope),
        endpoints=dict(data.get("endpoints", {})),
        rsa_private_key=Path(key_path) if key_path else None,
    )


def parse_config(data: dict[str, Any]) -> OAuthConfig:
    """Build an OAuthConfig from one parsed config document.

    Raises:
        ConfigurationError: If a section has the wrong shape
    """
    data = _resolve(data)

    providers_data = data.get("providers", {})
    if not isinstance(providers_data, dict):
        raise ConfigurationError("'providers' must be an object keyed by provider name")

    extra = data.get("extra_providers", {})
    if not isinstance(extra, dict):
        raise ConfigurationError("'extra_providers' must be an object keyed by provider name")

    http_client = data.get("http_client", {})
    if not isinstance(http_client, dict):
        raise ConfigurationError("'http_client' must be an object")
    try:
        http_timeout = float(http_client.get("timeout", DEFAULT_TIMEOUT))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"http_client.timeout must be a number, got {http_client.get('timeout')!r}"
        ) from e

    store = data.get("token_store", {})
    if not isinstance(store, dict):
        raise ConfigurationError("'token_store' must be an object")
    backend = store.get("backend", "memory")
    if backend not in STORE_BACKENDS:
        raise ConfigurationError(f"token_store.backend must be one of {STORE_BACKENDS}")

    return OAuthConfig(
        providers={
            name.strip().lower(): parse_provider_settings(name, settings)
            for name, settings in providers_data.items()
        },
        extra_providers={name.strip().lower(): dict(entry) for name, entry in extra.items()},
        http_timeout=http_timeout,
        store_backend=backend,
        store_dir=Path(store["path"]).expanduser() if store.get("path") else DEFAULT_STORE_DIR,
    )


def load_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
) -> OAuthConfig:
    """Load oauthkit configuration from discovered or explicit paths.

    The .env file is loaded first so ${VAR} references in the JSON files
    can use it. When several config files are found, the first definition of
    each provider wins; scalar settings come from the first file.

    Raises:
        FileNotFoundError: If no config file is found
        json.JSONDecodeError: If any config file is invalid JSON
        ConfigurationError: If a config file has the wrong shape
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    config_files = find_config_files(config_path)
    if not config_files:
        searched = ", ".join(str(p) for p in CONFIG_SEARCH_DIRS)
        raise FileNotFoundError(
            f"No oauthkit config file found.\n\n"
            f"Searched directories for *oauth*.json files:\n"
            f"  {searched}\n\n"
            f"Create a config file with your providers. Example (oauth.json):\n\n"
            f'{{\n  "providers": {{\n'
            f'    "github": {{\n'
            f'      "client_id": "${{GITHUB_CLIENT_ID}}",\n'
            f'      "client_secret": "${{GITHUB_CLIENT_SECRET}}",\n'
            f'      "scope": ["repo"]\n'
            f"    }}\n  }}\n}}"
        )

    with open(config_files[0]) as f:
        config = parse_config(json.load(f))

    for config_file in config_files[1:]:
        with open(config_file) as f:
            parsed = parse_config(json.load(f))

        for name, settings in parsed.providers.items():
            config.providers.setdefault(name, settings)
        for name, entry in parsed.extra_providers.items():
            config.extra_providers.setdefault(name, entry)

    config.config_path = config_files[0]
    config.config_paths = config_files
    config.env_path = env_file
    return config
