"""Configuration settings for the application."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Pydantic settings class for the application."""

    # Define the settings with default values and types
    # These will be loaded from environment variables or a .env file if not provided
    API_PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "info"  # Options: debug, info, warning, error, critical

    # LLM provider (OpenAI-compatible chat completions endpoint)
    OPENAI_API_KEY: str | None = None
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    OPENAI_MODEL: str = "gpt-4o-mini"

    # LLM resilience
    LLM_TIMEOUT_MS: int = 30_000
    LLM_MAX_ATTEMPTS: int = 3
    LLM_BASE_DELAY_MS: int = 1_000
    LLM_MAX_DELAY_MS: int = 8_000
    LLM_FAILURE_THRESHOLD: int = 5
    LLM_RESET_TIMEOUT_MS: int = 30_000
    LLM_HALF_OPEN_REQUESTS: int = 2

    # Workflow
    TOOL_TIMEOUT_MS: int = 30_000
    PLAN_WARN_MS: int = 10_000
    EXECUTE_WARN_MS: int = 30_000
    SOLVE_WARN_MS: int = 15_000
    DEFAULT_LOCALE: str = "zh"  # Options: zh, en

    # Memory
    RECENT_MESSAGE_LIMIT: int = 20
    USER_CONTEXT_TTL_S: int = 300

    # Accounting
    REDIS_URL: str | None = None
    USAGE_LOG_PATH: str = "./data/token_usage.jsonl"

    class Config:
        """Configuration for Pydantic settings."""

        # Load environment variables from a .env file
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
