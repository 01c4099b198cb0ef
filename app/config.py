"""
Application configuration
"""
from pydantic_settings import SettingsConfigDict

from oxker_pipeline.config import PipelineSettings


class Settings(PipelineSettings):
    """API settings on top of the pipeline settings"""

    model_config = SettingsConfigDict(
        env_prefix="OXKER_PIPELINE_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8080
    API_TITLE: str = "oxker pipeline API"
    API_VERSION: str = "1.0.0"


settings = Settings()
