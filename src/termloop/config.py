"""Configuration management for termloop."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from termloop.errors import ConfigurationError
from termloop.tokens import TokenBudget


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="TERMLOOP_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Model configuration
    model: str | None = Field(None, description="Primary model, e.g. 'openai:gpt-4o'")
    api_key: str | None = Field(None, description="API key for the LLM provider")
    api_base: str | None = Field(None, description="Optional API base URL")
    action_model: str | None = Field(None, description="Secondary model used for policy decisions")
    image_inputs: bool = Field(default=False, description="Both models accept image input")
    max_output_tokens: int | None = Field(None, ge=1, description="Cap on tokens per model reply")
    max_context_tokens: int = Field(default=200_000, description="Context window of the primary model")
    action_max_context_tokens: int = Field(default=200_000, description="Context window of the action model")
    model_max_retries: int = Field(default=4, ge=1, description="Attempts per model invocation")
    model_retry_delays: tuple[float, ...] = Field(
        default=(1.0, 2.0, 4.0, 6.0), description="Backoff delays between attempts, in seconds"
    )

    # Run loop configuration
    recursion_limit: int = Field(default=200, ge=1, description="Maximum node visits per run")
    command_policy_mode: str = Field(default="standard", description="Mode passed to the command policy")
    debug_mode: bool = Field(default=False, description="Emit debug history events and keep raw responses")
    builtin_tools: dict[str, bool] = Field(default_factory=dict, description="Built-in tool enable overrides")

    # Token budgeting
    chars_per_token: int = Field(default=4, ge=1)
    output_reserve: int = Field(default=10_000, ge=0)
    prune_protect: int = Field(default=40_000, ge=0)
    prune_minimum: int = Field(default=20_000, ge=0)
    recent_tool_results_protected: int = Field(default=10, ge=0)
    prune_protected_tools: tuple[str, ...] = Field(default=("skill",))

    # System configuration
    home: Path = Field(default=Path("~/.termloop"), description="Data directory for sessions and skills")
    workspace: Path | None = Field(None, description="Workspace directory for project skills")
    log_level: str = Field(default="INFO", description="Log level")

    def resolve_home(self) -> Path:
        return self.home.expanduser().resolve()

    def resolved_action_model(self) -> str | None:
        return self.action_model or self.model

    def context_window(self) -> int:
        """The smallest context window across the models bound for a turn."""
        windows = [value for value in (self.max_context_tokens, self.action_max_context_tokens) if value > 0]
        return min(windows) if windows else 0

    def token_budget(self) -> TokenBudget:
        return TokenBudget(
            chars_per_token=self.chars_per_token,
            output_reserve=self.output_reserve,
            prune_protect=self.prune_protect,
            prune_minimum=self.prune_minimum,
            recent_tool_results_protected=self.recent_tool_results_protected,
            protected_tools=frozenset(self.prune_protected_tools),
        )


def load_settings(**overrides: object) -> Settings:
    """Build settings from the environment, applying explicit overrides."""

    try:
        return Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise ConfigurationError(f"invalid termloop settings: {exc}") from exc
