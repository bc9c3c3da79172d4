"""Application configuration using Pydantic Settings"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator, model_validator
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "data/logs"

    # API
    API_V1_PREFIX: str = "/api/v1"
    # Stored as string to avoid pydantic-settings JSON parsing; use cors_origins_list property
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5000"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS_ORIGINS from comma-separated string"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    # Blob storage backend: "local" (filesystem) or "s3"
    STORAGE_BACKEND: str = "local"
    LOCAL_STORAGE_ROOT: str = "data/storage"
    LOCAL_MIRROR_ROOT: Optional[str] = None  # Local uploads tree also covered by repair scans

    S3_BUCKET: Optional[str] = None
    S3_ENDPOINT_URL: Optional[str] = None
    S3_REGION: Optional[str] = None
    S3_ACCESS_KEY: Optional[str] = None
    S3_SECRET_KEY: Optional[str] = None

    # Key naming conventions
    PRIMARY_ROOT: str = "shared/uploads"
    # Earlier deployments, most recent first. An empty entry means "bare key, no root".
    LEGACY_ROOTS: str = "uploads,shared,"

    @property
    def legacy_roots_list(self) -> List[str]:
        """Parse LEGACY_ROOTS keeping an empty entry for the bare-key convention"""
        return [root.strip().strip("/") for root in self.LEGACY_ROOTS.split(",")]

    # Frame extraction
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    THUMBNAIL_WIDTH: int = 600
    MIN_FRAME_BYTES: int = 1024  # Near-empty (black frame) outputs fall under this
    EXTRACTION_OFFSETS: str = "1.0,2.0,0.5,3.0,0.1"
    EXTRACTION_TIMEOUT_SECONDS: float = 15.0
    EXTRACTION_PROBE_DURATION: bool = True

    @property
    def extraction_offsets_list(self) -> List[float]:
        """Parse EXTRACTION_OFFSETS preserving order"""
        return [float(part) for part in self.EXTRACTION_OFFSETS.split(",") if part.strip()]

    # Circuit breaker for the serving read path
    BREAKER_FAILURE_THRESHOLD: int = 3
    BREAKER_COOLDOWN_SECONDS: float = 30.0
    BREAKER_CALL_TIMEOUT_SECONDS: float = 0.5

    # Write the same thumbnail under poster and legacy-duplicate keys
    WRITE_LEGACY_THUMBNAIL_VARIANTS: bool = True

    # Repair scanner
    REPAIR_WORKERS: int = 4
    REPAIR_SCHEDULE_ENABLED: bool = False
    REPAIR_INTERVAL_MINUTES: int = 360

    @field_validator('STORAGE_BACKEND', mode='after')
    @classmethod
    def validate_storage_backend(cls, v: str) -> str:
        """Validate storage backend name."""
        valid_backends = ['local', 's3']
        if v not in valid_backends:
            raise ValueError(f"STORAGE_BACKEND must be one of {valid_backends}")
        return v

    @field_validator('EXTRACTION_OFFSETS', mode='after')
    @classmethod
    def validate_extraction_offsets(cls, v: str) -> str:
        """Offsets must parse as non-negative floats and not be empty."""
        parts = [part for part in v.split(",") if part.strip()]
        if not parts:
            raise ValueError("EXTRACTION_OFFSETS must contain at least one offset")
        for part in parts:
            try:
                offset = float(part)
            except ValueError:
                raise ValueError(f"Invalid extraction offset: {part!r}")
            if offset < 0:
                raise ValueError(f"Extraction offset must be >= 0: {part!r}")
        return v

    @field_validator('MIN_FRAME_BYTES', 'BREAKER_FAILURE_THRESHOLD', 'REPAIR_WORKERS', mode='after')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @model_validator(mode='after')
    def validate_timeouts(self) -> "Settings":
        """Storage calls are sub-second-scale, subprocess work is seconds-scale."""
        if self.BREAKER_CALL_TIMEOUT_SECONDS >= self.EXTRACTION_TIMEOUT_SECONDS:
            raise ValueError(
                "BREAKER_CALL_TIMEOUT_SECONDS must be smaller than EXTRACTION_TIMEOUT_SECONDS"
            )
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


# Global settings instance
settings = Settings()
