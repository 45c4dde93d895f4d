"""
Configuration management for the Threat Modeler backend
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: str = ""

    # Server
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000

    # Uploads
    max_upload_size: int = 10485760  # 10MB
    default_language: str = "pt-BR"

    # Queue
    queue_attempts: int = 3
    queue_backoff_ms: int = 5000  # Exponential backoff base
    queue_keep_completed: int = 100
    queue_keep_failed: int = 50
    queue_poll_interval: float = 1.0  # Seconds between dispatcher polls
    max_workers: int = 4  # Concurrent analysis jobs

    # Progress stream
    progress_poll_interval: float = 2.0

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file="../.env",
        env_file_encoding="utf-8"
    )

    # Environment
    python_env: str = "development"

    # CORS
    cors_origins: list = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]

    # OpenAI (primary detector + threat analysis)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-2024-08-06"
    enable_ai_analysis: bool = True

    # Secondary detector (object-detection microservice)
    secondary_detector_url: str = "http://localhost:8001"
    secondary_probe_timeout: float = 5.0
    secondary_predict_timeout: float = 30.0
    secondary_confidence: float = 0.05


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
