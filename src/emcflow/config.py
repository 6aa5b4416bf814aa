"""Configuration loading and validation for emcflow."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator


class EMCConfig(BaseModel):
    """Engine settings shared by every step of a run."""

    chunk_size: int = Field(1000, ge=1)
    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(1000, ge=0)
    chunk_delay_ms: int = Field(100, ge=0)  # Pause between successful chunks
    verification_window_days: float = Field(0, ge=0)
    key_column: str = "id"

    @field_validator("key_column")
    @classmethod
    def validate_key_column(cls, v: str) -> str:
        """Key column must be a plain SQL identifier."""
        if not v.replace("_", "").isalnum() or v[0].isdigit():
            raise ValueError(f"key_column must be a plain identifier, got: {v!r}")
        return v


class DatabaseConfig(BaseModel):
    """Database configuration.

    ``url`` takes any SQLAlchemy URL. Without it, a SQLite file named
    ``path`` is created under ``data_dir``.
    """

    path: str = "emcflow.db"
    url: str | None = None


class Config(BaseModel):
    """Root configuration for emcflow."""

    data_dir: Path = Path("./data")
    log_level: str = "INFO"
    log_json: bool = True

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    emc: EMCConfig = Field(default_factory=EMCConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log_level is valid."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v_upper

    @property
    def database_path(self) -> Path:
        """Get full path to the SQLite database file."""
        return self.data_dir / self.database.path

    @property
    def database_url(self) -> str:
        """SQLAlchemy URL of the target database."""
        if self.database.url:
            return self.database.url
        return f"sqlite:///{self.database_path}"

    @classmethod
    def load(cls, config_path: Path | str = Path("emcflow.yaml")) -> "Config":
        """Load configuration from YAML file with env var overlay.

        Args:
            config_path: Path to YAML configuration file.

        Returns:
            Validated Config instance.

        Raises:
            FileNotFoundError: If config file doesn't exist.
            ValueError: If config is invalid.
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        return cls.model_validate(apply_env_overrides(yaml_config))

    @classmethod
    def load_or_default(cls, config_path: Path | str | None = None) -> "Config":
        """Load configuration, falling back to defaults if file not found.

        Environment overrides apply to the defaults as well.
        """
        if config_path is None:
            for path in [Path("emcflow.yaml"), Path("emcflow.yml")]:
                if path.exists():
                    return cls.load(path)
            return cls.model_validate(apply_env_overrides({}))

        try:
            return cls.load(config_path)
        except FileNotFoundError:
            return cls.model_validate(apply_env_overrides({}))


def apply_env_overrides(raw: dict) -> dict:
    """Overlay EMC_* environment variables on a raw config mapping."""
    if "EMC_DATA_DIR" in os.environ:
        raw["data_dir"] = os.environ["EMC_DATA_DIR"]
    if "EMC_LOG_LEVEL" in os.environ:
        raw["log_level"] = os.environ["EMC_LOG_LEVEL"]
    if "EMC_LOG_JSON" in os.environ:
        raw["log_json"] = os.environ["EMC_LOG_JSON"].lower() == "true"
    if "EMC_DATABASE_URL" in os.environ:
        database = dict(raw.get("database") or {})
        database["url"] = os.environ["EMC_DATABASE_URL"]
        raw["database"] = database
    return raw
