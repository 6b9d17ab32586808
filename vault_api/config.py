"""Application Configuration using Pydantic Settings."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from weightvault.codec import BackendType, CompressionLevel, CompressionOptions
from weightvault.coordinator import CoordinatorConfig


DAY_MS = 24 * 60 * 60 * 1000


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="WEIGHTVAULT_",
    )

    # Application
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./weightvault.db"
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_echo: bool = False

    # Artifact storage
    artifact_store: str = "local"  # local | s3
    artifact_dir: str = "./artifacts"

    # S3/MinIO Storage
    s3_endpoint: Optional[str] = "http://localhost:9000"
    s3_access_key: Optional[str] = "minioadmin"
    s3_secret_key: Optional[str] = "minioadmin"
    s3_bucket: str = "weightvault-artifacts"
    s3_region: str = "us-east-1"
    s3_prefix: str = "models"

    # Compression policy
    compression_level: CompressionLevel = CompressionLevel.BALANCED
    compression_backend: BackendType = BackendType.AUTO
    enable_pruning: bool = True
    enable_weight_sharing: bool = False

    # Retention
    cleanup_max_age_days: int = 30

    # Backend selection
    parallel_min_total_weights: int = 10_000
    parallel_min_avg_layer_size: int = 1_000
    enable_parallel: bool = True
    probe_timeout_seconds: float = 5.0
    device_preference: str = "auto"
    max_buffer_elements: int = 2 ** 26

    # CORS
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string into list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def cleanup_max_age_ms(self) -> int:
        return self.cleanup_max_age_days * DAY_MS

    def coordinator_config(self) -> CoordinatorConfig:
        return CoordinatorConfig(
            parallel_min_total_weights=self.parallel_min_total_weights,
            parallel_min_avg_layer_size=self.parallel_min_avg_layer_size,
            enable_parallel=self.enable_parallel,
            probe_timeout_seconds=self.probe_timeout_seconds,
            device_preference=self.device_preference,
            max_buffer_elements=self.max_buffer_elements,
        )

    def default_options(self) -> CompressionOptions:
        return CompressionOptions(
            level=self.compression_level,
            quantization=True,
            pruning=self.enable_pruning,
            weight_sharing=self.enable_weight_sharing,
            backend=self.compression_backend,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
