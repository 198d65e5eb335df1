from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    aws_region: str = ""
    aws_profile: str = ""

    helm_binary: str = "helm"
    kubectl_binary: str = "kubectl"
    command_timeout_seconds: int = 120
    readiness_poll_seconds: float = 5.0

    log_level: str = "INFO"
    log_file: str = ""


@lru_cache
def get_settings() -> Settings:
    return Settings()
