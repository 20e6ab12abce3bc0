"""Settings via pydantic-settings with REIN_ env prefix.

Credential fields use validation_alias to read the same unprefixed env
vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) that other Anthropic
tooling uses, so one .env file drives everything.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REIN_", env_file=".env")

    log_level: str = "info"
    agent_id: str | None = None

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096

    # Extended thinking
    thinking_mode: Literal["off", "manual"] = "off"
    thinking_budget: int = 10000  # budget_tokens for manual mode (min 1024)

    # Direct API settings
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    max_steps: int = 10  # Max model/tool round-trips per turn

    # Prompt queues
    steering_mode: Literal["fifo", "all"] = "fifo"
    follow_up_mode: Literal["fifo", "all"] = "fifo"

    @model_validator(mode="after")
    def _validate_thinking(self) -> "Settings":
        if self.thinking_mode == "manual":
            if self.thinking_budget < 1024:
                raise ValueError("thinking_budget must be >= 1024 (API minimum)")
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self

    @property
    def provider_options(self) -> dict[str, dict]:
        """Anthropic request extras derived from the thinking settings."""
        if self.thinking_mode == "manual":
            return {
                "anthropic": {
                    "thinking": {"type": "enabled", "budget_tokens": self.thinking_budget},
                },
            }
        return {}
