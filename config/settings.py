"""
Configuration settings for the WhatsApp Session Gateway.

Loads environment variables and provides centralized configuration management.
"""

import re
from typing import Any, List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")

class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App configuration
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server configuration
    PORT: int = 3000
    HOST: str = "0.0.0.0"

    # Access control
    API_KEY: Optional[str] = None
    ALLOWED_ORIGIN: str = "*"

    # Session storage
    AUTH_ROOT: str = "./auth"

    # Live events
    SSE_KEEPALIVE_SECONDS: float = 25.0
    RECONNECT_DELAY_SECONDS: float = 3.0

    # QR rendering
    QR_WIDTH: int = 256
    QR_MARGIN: int = 1

    # Outbound webhook (optional)
    WEBHOOK_URL: Optional[str] = None
    WEBHOOK_TIMEOUT_SECONDS: float = 10.0

    # Retry configuration
    MAX_RETRIES: int = 3
    RETRY_DELAY: float = 1.0

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @field_validator("PORT")
    @classmethod
    def validate_port(cls, v):
        if v <= 0 or v > 65535:
            raise ValueError("PORT must be between 1 and 65535")
        return v

    @field_validator("SSE_KEEPALIVE_SECONDS", "RECONNECT_DELAY_SECONDS")
    @classmethod
    def validate_positive_interval(cls, v):
        if v <= 0:
            raise ValueError("intervals must be positive")
        return v

    @field_validator("WEBHOOK_URL", "API_KEY")
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    def get_allowed_origins(self) -> List[str]:
        """Get CORS origins; "*" allows any origin."""
        if self.ALLOWED_ORIGIN.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGIN.split(",") if origin.strip()]

    def get_log_config(self) -> dict:
        """Get logging configuration."""
        return {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                },
                "detailed": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
                }
            },
            "handlers": {
                "default": {
                    "level": self.LOG_LEVEL,
                    "formatter": "detailed" if self.DEBUG else "standard",
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout"
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": self.LOG_LEVEL,
                    "propagate": False
                }
            }
        }

def is_valid_session_id(session_id: Any) -> bool:
    """Session ids become directory names under AUTH_ROOT."""
    if not isinstance(session_id, str) or not session_id or session_id in (".", ".."):
        return False
    return bool(SESSION_ID_PATTERN.match(session_id))

# Global settings instance
settings = Settings()
