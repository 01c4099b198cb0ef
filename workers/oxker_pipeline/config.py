"""
Pipeline configuration
"""
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Pipeline settings, read from OXKER_PIPELINE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OXKER_PIPELINE_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Filesystem layout
    WORKSPACE_ROOT: Path = Path("/tmp/oxker_pipeline/runs")
    CACHE_ROOT: Path = Path("/tmp/oxker_pipeline/cache")
    ARTIFACTS_PATH: Path = Path("/files/artifacts")

    # Tools
    CARGO_BIN: str = "cargo"
    RUSTUP_BIN: str = "rustup"
    APT_GET_BIN: str = "apt-get"

    # Installing the cross host package needs root; off unless asked for
    INSTALL_HOST_PACKAGES: bool = False

    # Per-command timeout
    BUILD_TIMEOUT: int = 1800  # seconds

    LOG_LEVEL: str = "INFO"

    # Keep the per-run workspace after a successful run
    KEEP_WORKSPACE: bool = False

    def artifacts_dir(self, target_triple: str) -> Path:
        """Per-target output directory: artifact, image and receipt."""
        return self.ARTIFACTS_PATH / target_triple
