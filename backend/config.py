# backend/config.py
"""
Configuration management for TrafficLens Backend
Loads settings from environment variables
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    debug: bool = True

    # Gemini Vision Configuration
    gemini_api_key: str = ""  # Empty string if not set - reported per request
    gemini_model: str = "gemini-2.0-flash"
    gemini_api_base: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout_seconds: float = 60.0
    gemini_temperature: Optional[float] = None
    gemini_max_output_tokens: Optional[int] = None
    credential_setup_link: str = "https://aistudio.google.com/app/apikeys"

    # Request limits
    max_payload_mb: float = 15.0  # Outbound model request ceiling
    max_upload_size_mb: int = 20  # Inbound video upload ceiling
    upload_dir: str = "./uploads"

    # Frame sampling
    frame_count: int = 5
    jpeg_quality: float = 0.7

    # Pipeline pacing
    stage_dwell_seconds: float = 0.6

    # CORS Settings
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    cors_allow_credentials: bool = True

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file

    @property
    def max_payload_bytes(self) -> int:
        return int(self.max_payload_mb * 1024 * 1024)

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_size_mb * 1024 * 1024


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings"""
    return settings
