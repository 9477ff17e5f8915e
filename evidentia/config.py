"""Evidentia configuration management."""

from functools import lru_cache
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

EICAR_SIGNATURE = r"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EVIDENTIA_",
        case_sensitive=False,
    )

    # Application
    app_name: str = "Evidentia"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000"]

    @field_validator(
        "cors_origins",
        "allowed_extensions",
        "blocked_extensions",
        "malware_signatures",
        mode="before",
    )
    @classmethod
    def parse_comma_separated(cls, v: Any) -> list[str]:
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    # Intake limits
    max_file_size: int = 100 * 1024 * 1024
    large_file_threshold: int = 10 * 1024 * 1024
    chunk_size: int = 1024 * 1024
    sample_size: int = 8 * 1024
    yield_every_chunks: int = 10

    allowed_extensions: Annotated[list[str], NoDecode] = [
        ".log", ".txt", ".csv", ".tsv", ".tab", ".json", ".jsonl", ".ndjson",
        ".xml", ".evtx", ".evt", ".syslog", ".pcap", ".pcapng", ".gz",
        ".zip", ".pdf", ".doc", ".docx", ".xls", ".xlsx",
        ".png", ".jpg", ".jpeg", ".gif",
    ]
    blocked_extensions: Annotated[list[str], NoDecode] = [
        ".exe", ".dll", ".bat", ".cmd", ".scr", ".pif", ".com", ".vbs", ".js", ".jar",
    ]
    malware_signatures: Annotated[list[str], NoDecode] = [EICAR_SIGNATURE]

    # Storage
    upload_path: str = "./data/uploads"
    quarantine_path: str = "./data/quarantine"

    # Timeouts (seconds)
    analysis_timeout_seconds: float = 300.0
    custom_parser_timeout_seconds: float = 30.0

    # AI summarization
    ai_enabled: bool = False
    ai_endpoint: str = ""
    ai_api_key: str = ""
    ai_timeout_seconds: float = 60.0
    ai_max_input_chars: int = 20000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
