"""Configuration management with YAML and environment variable support."""

from functools import lru_cache
from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///contipipe.db"
    tmp_dir: Path = Path("tmp")
    public_base_url: Optional[str] = None

    @field_validator("tmp_dir", mode="before")
    @classmethod
    def convert_tmp_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ModelsConfig(BaseModel):
    """Model identifiers for generation and analysis."""

    default_video_model: str = "veo-3.1-generate-001"
    clip_model: str = "openai/clip-vit-base-patch32"
    depth_model: str = "Intel/dpt-hybrid-midas"
    face_model: str = "buffalo_l"


class ContinuityConfig(BaseModel):
    """Continuity engine tuning parameters."""

    default_style_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    default_identity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    default_face_strength: float = Field(default=0.8, ge=0.0, le=1.0)
    depth_variance_threshold: float = 0.005
    parallax_scale: float = 0.05
    persist_max_attempts: int = Field(default=3, ge=1)
    representative_frame_candidates: int = Field(default=5, ge=1)
    histogram_bins: int = Field(default=32, ge=2)


class HttpConfig(BaseModel):
    """Outbound download parameters."""

    download_timeout: float = 60.0
    download_retry_attempts: int = 4


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: CONTIPIPE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="CONTIPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = StorageConfig()
    models: ModelsConfig = ModelsConfig()
    continuity: ContinuityConfig = ContinuityConfig()
    http: HttpConfig = HttpConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Init settings (explicit overrides, used by tests)
        2. Environment variables
        3. .env file
        4. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process and hand the same instance to consumers."""
    return Settings()
