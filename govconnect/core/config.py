"""
Application Configuration
"""
from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    APP_NAME: str = "GovConnect Channel Console"
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Channel/livechat backend (the dashboard API, consumed over HTTP)
    BACKEND_BASE_URL: str = "http://localhost:3001"
    BACKEND_API_TOKEN: str = ""
    BACKEND_TIMEOUT_SECONDS: float = 15.0

    @field_validator("BACKEND_BASE_URL", mode="before")
    @classmethod
    def normalize_backend_url(cls, v: str) -> str:
        """Docker service names come as host:port only, so add http:// when missing"""
        v = (v or "").strip()
        if v and not v.startswith("http"):
            v = f"http://{v}"
        return v.rstrip("/")

    # Retry settings for idempotent reads
    # Total attempts, including the first one
    BACKEND_MAX_RETRIES: int = 3
    # HTTP codes treated as transient (comma-separated)
    BACKEND_TRANSIENT_STATUS_CODES: str = "502,503,504,429"

    @field_validator("BACKEND_MAX_RETRIES", mode="after")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("BACKEND_MAX_RETRIES must be at least 1")
        return v

    # Polling intervals
    CONVERSATION_POLL_INTERVAL_SECONDS: float = 3.0
    PAIRING_STATUS_INTERVAL_SECONDS: float = 1.0  # login detection
    PAIRING_QR_INTERVAL_SECONDS: float = 2.0      # QR codes expire, refreshed separately
    SESSION_AUTO_REFRESH_SECONDS: float = 15.0    # outside the pairing dialog

    @field_validator(
        "CONVERSATION_POLL_INTERVAL_SECONDS",
        "PAIRING_STATUS_INTERVAL_SECONDS",
        "PAIRING_QR_INTERVAL_SECONDS",
        "SESSION_AUTO_REFRESH_SECONDS",
        mode="after",
    )
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("polling intervals must be positive")
        return v

    # Message view
    NEAR_BOTTOM_THRESHOLD_PX: int = 150

    # Circuit breaker for the backend
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_TIMEOUT_SECONDS: float = 30.0

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """An empty bearer token cannot talk to the backend outside DEBUG."""
        import warnings

        if not self.BACKEND_API_TOKEN:
            if not self.DEBUG:
                raise ValueError(
                    "BACKEND_API_TOKEN is empty with DEBUG=False. "
                    "Every backend endpoint requires a bearer token."
                )
            warnings.warn(
                "BACKEND_API_TOKEN is empty; backend calls will be rejected with 401.",
                stacklevel=2,
            )
        return self

    @property
    def transient_status_codes(self) -> set[int]:
        return {
            int(code.strip())
            for code in self.BACKEND_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
