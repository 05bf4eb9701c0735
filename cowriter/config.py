"""Configuration loader for the cowriter service.

Reads a JSON config file containing provider definitions, LLM
configurations, rate-limit parameters and authentication settings. API keys
are resolved from environment variables.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


@dataclass
class ProviderConfig:
    """Configuration for a single OpenAI-compatible provider."""

    name: str
    base_url: str
    api_key_env: str
    default_model: str

    @property
    def api_key(self) -> Optional[str]:
        """Resolve the API key from the environment variable."""
        return os.getenv(self.api_key_env)


@dataclass
class LlmConfigurationEntry:
    """Raw LLM configuration as declared in the config file."""

    identifier: str
    name: str
    provider: str
    model: str
    is_default: bool = False
    active: bool = True
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class RateLimitConfig:
    """Sliding-window parameters (per backend user)."""

    requests_per_minute: int = 20
    window_seconds: int = 60


@dataclass
class AuthConfig:
    """API key authentication configuration."""

    enabled: bool = False
    api_keys: Dict[str, str] = field(default_factory=dict)  # key_name -> sha256_hash


@dataclass
class CowriterConfig:
    """Top-level service configuration."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    configurations: List[LlmConfigurationEntry] = field(default_factory=list)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    tasks_file: Optional[str] = None
    log_file: str = "logs/cowriter.log"


def load_config(path: Union[str, Path]) -> CowriterConfig:
    """Load service configuration from a JSON file.

    Args:
        path: Path to the JSON config file.

    Returns:
        A fully resolved CowriterConfig instance.

    Raises:
        FileNotFoundError: If the config file does not exist.
        ValueError: If the config file contains invalid data.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw: Dict[str, Any] = json.load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a JSON object at the top level")

    try:
        providers: Dict[str, ProviderConfig] = {}
        for name, prov in raw.get("providers", {}).items():
            providers[name] = ProviderConfig(
                name=name,
                base_url=prov["base_url"],
                api_key_env=prov["api_key_env"],
                default_model=prov.get("default_model", ""),
            )

        configurations: List[LlmConfigurationEntry] = []
        for entry in raw.get("configurations", []):
            provider = entry["provider"]
            if provider not in providers:
                raise ValueError(
                    "Configuration '{}' references unknown provider '{}'".format(
                        entry["identifier"], provider
                    )
                )
            configurations.append(
                LlmConfigurationEntry(
                    identifier=entry["identifier"],
                    name=entry.get("name", entry["identifier"]),
                    provider=provider,
                    model=entry.get("model") or providers[provider].default_model,
                    is_default=entry.get("is_default", False),
                    active=entry.get("active", True),
                    temperature=entry.get("temperature"),
                    max_tokens=entry.get("max_tokens"),
                )
            )
    except KeyError as exc:
        raise ValueError("Missing required config key: {}".format(exc)) from exc

    rate_limit_raw = raw.get("rate_limit", {})
    rate_limit = RateLimitConfig(
        requests_per_minute=rate_limit_raw.get("requests_per_minute", 20),
        window_seconds=rate_limit_raw.get("window_seconds", 60),
    )

    auth_raw = raw.get("auth", {})
    auth = AuthConfig(
        enabled=auth_raw.get("enabled", False),
        api_keys=auth_raw.get("api_keys", {}),
    )

    return CowriterConfig(
        providers=providers,
        configurations=configurations,
        rate_limit=rate_limit,
        auth=auth,
        tasks_file=raw.get("tasks_file"),
        log_file=raw.get("log_file", "logs/cowriter.log"),
    )
