from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Groundwork backend.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,   # env var names are case-sensitive
        extra="ignore",
        populate_by_name=True,
    )

    # these will read from ENV and DEBUG in env/system
    env: str = Field(default="local", alias="ENV")
    debug: bool = Field(default=False, alias="DEBUG")

    # Missing key is allowed: every model call degrades to fallback content.
    openai_api_key: Optional[str] = Field(
        default=None,
        description="OpenAI API key",
        alias="OPENAI_API_KEY",
    )
    openai_model: str = Field(default="gpt-4.1-mini", alias="OPENAI_MODEL")
    model_timeout_seconds: float = Field(default=20.0, alias="MODEL_TIMEOUT_SECONDS")
    model_max_retries: int = Field(default=1, alias="MODEL_MAX_RETRIES")

    # ---- Rate limiting ----
    # coarse: fixed window, every endpoint
    rate_limit_general_max: int = Field(default=100, alias="RATE_LIMIT_GENERAL_MAX")
    rate_limit_general_window_seconds: int = Field(default=15 * 60, alias="RATE_LIMIT_GENERAL_WINDOW_SECONDS")
    # fine: sliding window, per content type
    rate_limit_ai_max: int = Field(default=10, alias="RATE_LIMIT_AI_MAX")
    rate_limit_ai_window_seconds: int = Field(default=60, alias="RATE_LIMIT_AI_WINDOW_SECONDS")
    # device namespace only
    rate_limit_device_max: int = Field(default=20, alias="RATE_LIMIT_DEVICE_MAX")
    rate_limit_device_window_seconds: int = Field(default=60, alias="RATE_LIMIT_DEVICE_WINDOW_SECONDS")
    rate_limit_redis_url: Optional[str] = Field(default=None, alias="RATE_LIMIT_REDIS_URL")

    # ---- Identity ----
    # "token_a:user_a,token_b:user_b"
    api_tokens: str = Field(default="", alias="API_TOKENS")
    allow_device_identity: bool = Field(default=True, alias="ALLOW_DEVICE_IDENTITY")

    # ---- Safety policy ----
    safety_escalate_on_classifier_failure: bool = Field(
        default=False,
        description=(
            "When the keyword pre-filter matched but the classifier failed, "
            "flag intervention instead of returning the non-blocking default."
        ),
        alias="SAFETY_ESCALATE_ON_CLASSIFIER_FAILURE",
    )

    default_step_seconds: int = Field(default=10, alias="DEFAULT_STEP_SECONDS")

    @property
    def token_map(self) -> Dict[str, str]:
        """Parse API_TOKENS into {token: user_id}."""
        tokens: Dict[str, str] = {}
        for pair in self.api_tokens.split(","):
            token, sep, user_id = pair.strip().partition(":")
            if sep and token.strip() and user_id.strip():
                tokens[token.strip()] = user_id.strip()
        return tokens


@lru_cache
def get_settings() -> Settings:
    return Settings()
