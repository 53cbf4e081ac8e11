"""Settings via pydantic-settings with AUTOREACT_ env prefix.

Model credentials use validation_alias to read the unprefixed
OPENAI_API_KEY so the same .env works for other OpenAI-compatible tools.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="AUTOREACT_", env_file=".env")

    # Reasoning loop
    system_prompt: str = ""
    language: str = "en"  # en, zh_CN
    max_steps: int = 30
    default_model: str = ""
    show_tool_details: bool = True
    recovery_failure_threshold: int = 2  # consecutive identical failures before a hint
    detailed_prompt_message_limit: int = 10

    # History compression (token estimates, see react/compaction.py)
    enable_compression: bool = True
    compression_threshold_tokens: int = 64000
    keep_recent_tokens: int = 12000
    max_tokens_after_compression: int = 16000
    compression_temperature: float = 0.3
    compression_max_tokens: int = 1000

    # Session expiry
    enable_session_expiration: bool = True
    session_expire_minutes: float = 60
    session_cleanup_interval_minutes: float = 10

    # Frontend tools and task tracking
    frontend_tool_timeout: float = 30.0  # seconds
    task_expire_minutes: float = 30

    # LLM (OpenAI-compatible)
    llm_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    llm_base_url: str = "https://api.openai.com/v1"
    llm_models: str = "gpt-4o-mini"  # comma-separated
    llm_timeout_connect: int = 10  # seconds
    llm_timeout_read: int = 120  # seconds
    demo_model_enabled: bool = False

    # REST tools with relative paths resolve against this
    tool_base_url: str = "http://localhost:8000"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    base_path: str = "/auto-ai/v1"

    @model_validator(mode="after")
    def _validate_limits(self) -> "Settings":
        if self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.recovery_failure_threshold < 1:
            raise ValueError("recovery_failure_threshold must be >= 1")
        if self.frontend_tool_timeout <= 0:
            raise ValueError("frontend_tool_timeout must be > 0")
        if self.keep_recent_tokens >= self.compression_threshold_tokens:
            raise ValueError(
                f"keep_recent_tokens ({self.keep_recent_tokens}) must be < "
                f"compression_threshold_tokens ({self.compression_threshold_tokens})"
            )
        return self

    @property
    def model_names(self) -> list[str]:
        return [name.strip() for name in self.llm_models.split(",") if name.strip()]

    @property
    def session_expire_seconds(self) -> float:
        return self.session_expire_minutes * 60

    @property
    def session_cleanup_interval_seconds(self) -> float:
        return self.session_cleanup_interval_minutes * 60
