"""
Settings for the RMBG background-removal service.

Every value can be overridden from the environment or a `.env` file;
names match the field names, case-insensitively.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    # Model location + runtime
    model_id: str = "briaai/RMBG-1.4"
    model_dir: Path = Path("resources/models")
    model_device: str = "cpu"
    torchscript_filename: str = "model.torchscript.pt"
    autoload_model: bool = True

    # Hugging Face hub download
    model_download_base_url: str = "https://huggingface.co"
    model_revision: str = "main"
    request_timeout_seconds: int = 30

    # Output + history
    history_db_path: Path = Path("history.db")
    store_original_in_history: bool = True
    output_suffix: str = "-no-bg"

    log_level: str = "INFO"

    # Optional mask refinement
    refine_mask: bool = False
    edge_smooth_blend: float = Field(0.55, ge=0.0, le=1.0)
    edge_band_low: float = Field(0.08, ge=0.0, le=1.0)
    edge_band_high: float = Field(0.92, ge=0.0, le=1.0)
    bilateral_sigma_color: float = Field(28.0, ge=0.0)
    alpha_band_pull: float = Field(0.015, ge=0.0)
    cc_keep_threshold: float = Field(0.05, ge=0.0, le=1.0)

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/rmbg_debug")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError("LOG_LEVEL must be one of " + "|".join(sorted(LOG_LEVELS)))
        return level

    @field_validator("output_suffix")
    @classmethod
    def validate_output_suffix(cls, v: str) -> str:
        if "/" in v or "\\" in v:
            raise ValueError("OUTPUT_SUFFIX must not contain path separators")
        return v

    @property
    def model_path(self) -> Path:
        """Directory (or TorchScript file) holding the model weights."""
        return self.model_dir / self.model_id


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()

