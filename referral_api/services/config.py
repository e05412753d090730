"""
Configuration settings for the Referral Stream API
"""
from typing import List, Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
import json


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    API_VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    LOG_LEVEL: str = Field(default="INFO")

    # CORS Settings
    CORS_ORIGINS: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://localhost:8080",
        ]
    )

    @field_validator("CORS_ORIGINS", "RESOURCE_REQUIRED_FIELDS", mode="before")
    @classmethod
    def parse_list(cls, v):
        """Parse list settings from JSON string if needed"""
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                # If not JSON, treat as comma-separated list
                return [item.strip() for item in v.split(",") if item.strip()]
        return v

    # Completion service (OpenAI Responses API)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    OPENAI_BASE_URL: str = Field(default="https://api.openai.com/v1")

    # Model Configuration
    REFERRAL_MODEL: str = Field(default="gpt-5-mini")
    CHAT_MODEL: str = Field(default="gpt-5-mini")
    SUGGESTION_MODEL: str = Field(default="gpt-4o-mini")
    REFERRAL_MAX_TOKENS: int = Field(default=8000)
    ACTION_PLAN_MAX_TOKENS: int = Field(default=3000)
    CHAT_MAX_TOKENS: int = Field(default=2000)
    SUGGESTION_MAX_TOKENS: int = Field(default=300)
    TEMPERATURE: Optional[float] = Field(default=None)  # reasoning models reject temperature
    REASONING_EFFORT: Literal["low", "medium"] = Field(default="low")
    SEARCH_CONTEXT_SIZE: Literal["low", "medium", "large"] = Field(default="medium")

    # Timeouts (seconds)
    COMPLETION_TIMEOUT: float = Field(default=180.0)  # wall clock per completion stream
    REQUEST_TIMEOUT: float = Field(default=30.0)  # connect/read per HTTP call

    # Streaming protocol
    RESOURCE_REQUIRED_FIELDS: List[str] = Field(default=["number", "title"])
    ACTION_PLAN_EMIT_INTERVAL: float = Field(default=0.25)

    # Prompt content
    DEFAULT_OUTPUT_LANGUAGE: str = Field(default="English")
    ORGANIZATION_NAME: str = Field(default="Goodwill Central Texas")

    # OpenTelemetry Configuration
    OTEL_ENABLED: bool = Field(default=False)
    OTEL_ENDPOINT: str = Field(default="http://localhost:4317")
    OTEL_SERVICE_NAME: str = Field(default="referral-stream-api")
