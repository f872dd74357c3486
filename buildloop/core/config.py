from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    """Engine settings - all configurable via environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "BuildLoop"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # ==========================================
    # Oracle (Claude)
    # ==========================================
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_BASE_URL: str = ""  # Empty means use default Anthropic URL
    ORACLE_MODEL: str = "claude-sonnet-4-20250514"
    ORACLE_MAX_TOKENS: int = 16000
    ORACLE_TEMPERATURE: float = 0.7
    ORACLE_REQUEST_TIMEOUT: int = 300  # seconds
    ORACLE_CONNECT_TIMEOUT: int = 60  # seconds
    ORACLE_MAX_RETRIES: int = 2  # additional attempts after the first call
    ORACLE_RETRY_BASE_DELAY: float = 1.0  # seconds
    ORACLE_RETRY_MAX_DELAY: float = 8.0  # seconds

    # ==========================================
    # Version history
    # ==========================================
    HISTORY_MAX_VERSIONS: int = 20

    # ==========================================
    # Verification / self-correction
    # ==========================================
    VERIFY_TIMEOUT_MS: int = 2000
    MAX_CORRECTION_ATTEMPTS: int = 3

    # ==========================================
    # Context budget
    # ==========================================
    CONTEXT_MAX_MESSAGE_HISTORY: int = 50
    CONTEXT_KEEP_RECENT_MESSAGES: int = 50
    CONTEXT_SUMMARY_CHARS: int = 100
    CONTEXT_SCAN_MESSAGES: int = 20
    CONTEXT_MAX_FILES: int = 16
    CONTEXT_MAX_FILE_BYTES: int = 50000  # 50KB per file
    CONTEXT_FILE_BYTE_BUDGET: int = 100000  # 100KB total

    # ==========================================
    # Telemetry
    # ==========================================
    TELEMETRY_MAX_ENTRIES: int = 200

    # ==========================================
    # Persistence
    # ==========================================
    WORKSPACE_FILE: str = ".buildloop/workspace.json"

    @field_validator("HISTORY_MAX_VERSIONS", "CONTEXT_KEEP_RECENT_MESSAGES", "CONTEXT_MAX_FILES")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("ORACLE_MAX_RETRIES", "VERIFY_TIMEOUT_MS", "MAX_CORRECTION_ATTEMPTS")
    @classmethod
    def must_not_be_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @property
    def verify_timeout_seconds(self) -> float:
        return self.VERIFY_TIMEOUT_MS / 1000.0


# Create settings instance
settings = Settings()
