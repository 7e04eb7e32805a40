"""Settings via pydantic-settings with BRIDGE_ env prefix.

Upstream credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) the Anthropic tooling
uses, so one .env file works for both.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Values that deployment dashboards use to mean "unset"
_PLACEHOLDER_KEYS = frozenset({"", "-", "_"})


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BRIDGE_", env_file=".env")

    # Runtime
    host: str = "0.0.0.0"
    port: int = 9095
    log_level: str = "info"

    # Client gate: when set, clients must send "Authorization: Bearer <api_key>"
    api_key: str = ""

    # Upstream
    api_base_url: str = "https://api.anthropic.com"
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    anthropic_beta: str = "fine-grained-tool-streaming-2025-05-14,interleaved-thinking-2025-05-14"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 600  # seconds; long thinking turns stream slowly

    # Truncation
    truncation_enabled: bool = True
    token_limit: int = 195_000
    min_messages_to_keep: int = 4
    tokens_per_image: int = 1600
    chars_per_token: float = 3.5

    # Request shaping for OpenAI-format clients
    system_preamble: str = "You are Claude Code, Anthropic's official CLI for Claude."
    default_max_tokens: int = 32_000
    thinking_enabled: bool = True
    thinking_budget: int = 16_000

    @model_validator(mode="after")
    def _validate_truncation(self) -> "Settings":
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")
        if self.tokens_per_image < 0:
            raise ValueError("tokens_per_image must be >= 0")
        if self.min_messages_to_keep < 1:
            raise ValueError("min_messages_to_keep must be >= 1")
        return self

    @property
    def client_key_required(self) -> bool:
        return self.api_key not in _PLACEHOLDER_KEYS
