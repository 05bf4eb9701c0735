"""Read-only repository of LLM configurations.

Resolves the configuration an editor request should run with: the one named
by the request, or the site default. Configurations are declared in the
service config file and never edited at runtime.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from cowriter.config import CowriterConfig, LlmConfigurationEntry
from cowriter.provider import ChatOptions


@dataclass(frozen=True)
class LlmConfiguration:
    """A named provider/model preset selectable from the editor."""

    identifier: str
    name: str
    provider: str
    model: str
    is_default: bool = False
    active: bool = True
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @classmethod
    def from_entry(cls, entry: LlmConfigurationEntry) -> "LlmConfiguration":
        return cls(
            identifier=entry.identifier,
            name=entry.name,
            provider=entry.provider,
            model=entry.model,
            is_default=entry.is_default,
            active=entry.active,
            temperature=entry.temperature,
            max_tokens=entry.max_tokens,
        )

    def to_chat_options(self) -> ChatOptions:
        """Build the per-call options for this configuration."""
        return ChatOptions(
            provider=self.provider,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


class ConfigurationRepository:
    """Lookup over the configured LLM presets, in declaration order."""

    def __init__(self, configurations: Iterable[LlmConfiguration]) -> None:
        self._configurations: List[LlmConfiguration] = list(configurations)

    @classmethod
    def from_config(cls, config: CowriterConfig) -> "ConfigurationRepository":
        return cls(LlmConfiguration.from_entry(e) for e in config.configurations)

    def find_active(self) -> List[LlmConfiguration]:
        """Return every active configuration, preserving order."""
        return [c for c in self._configurations if c.active]

    def find_default(self) -> Optional[LlmConfiguration]:
        """Return the first active configuration flagged as default."""
        for configuration in self.find_active():
            if configuration.is_default:
                return configuration
        return None

    def find_one_by_identifier(self, identifier: str) -> Optional[LlmConfiguration]:
        """Return the active configuration with this identifier, if any."""
        for configuration in self.find_active():
            if configuration.identifier == identifier:
                return configuration
        return None

    def resolve(self, identifier: Optional[str]) -> Optional[LlmConfiguration]:
        """Resolve a requested identifier, falling back to the default."""
        if identifier:
            return self.find_one_by_identifier(identifier)
        return self.find_default()
