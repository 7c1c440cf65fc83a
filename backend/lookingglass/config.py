"""
Configuration settings for the looking glass backend.
"""

from pydantic_settings import BaseSettings
from pydantic import ConfigDict

MIB = 1024 * 1024
KIB = 1024


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "Looking Glass API"
    debug: bool = False

    # Chunk endpoint
    chunk_size: int = 4 * MIB
    chunk_cache_capacity: int = 32
    chunk_generator: str = "pattern"  # "pattern" or "random"
    request_timeout: float = 30.0  # seconds, per request
    max_upload_factor: int = 2  # uploads may declare up to chunk_size * factor
    timed_chunk_min_size: int = 256 * KIB
    timed_chunk_max_size: int = 8 * MIB

    # Throughput client
    speedtest_concurrency: int = 8
    speedtest_max_attempts: int = 3
    speedtest_backoff_unit: float = 1.0  # retry n waits unit * 2**n seconds
    speedtest_phase_timeout: float = 60.0
    speedtest_progress_interval: float = 0.1
    upload_buffer_pool_size: int = 4
    timed_test_duration: float = 5.0
    timed_target_chunk_seconds: float = 0.2

    # Live MTR
    mtr_window_size: int = 100
    mtr_loss_batch: int = 10

    # ASN / reverse DNS enrichment
    dns_api_url: str = "https://dns.google/resolve"
    dns_cache_ttl: float = 12 * 60 * 60
    dns_cache_capacity: int = 1024
    dns_timeout: float = 5.0
    enrichment_workers: int = 4

    # Probe execution
    command_timeout: float = 120.0
    livemtr_cycles: int = 0  # 0 runs until the client disconnects

    # CORS
    cors_origins: list[str] = ["*"]

    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8")


# Global settings instance
settings = Settings()
