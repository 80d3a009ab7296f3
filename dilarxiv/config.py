"""Configuration management with Pydantic and XDG base directory support."""

import os
import sys
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, PrivateAttr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "https://echanges.dila.gouv.fr/OPENDATA/"

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


def get_xdg_data_home() -> Path:
    """Get XDG_DATA_HOME directory, defaulting to ~/.local/share."""
    xdg_data = os.getenv("XDG_DATA_HOME")
    if xdg_data:
        return Path(xdg_data)
    return Path.home() / ".local" / "share"


def _default_workers() -> int:
    return max(1, min(8, os.cpu_count() or 1))


class Settings(BaseSettings):
    """dilarxiv configuration settings.

    Precedence: CLI flag > environment variable > .env file > defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="DILARXIV_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Data directories
    data_dir: Path | None = Field(
        default=None,
        description="Override data directory (defaults to XDG_DATA_HOME/dilarxiv)",
    )

    index_dir: Path | None = Field(
        default=None,
        description="Override index directory (defaults to <data_dir>/index)",
    )

    # Acquisition
    base_url: str = Field(
        default=DEFAULT_BASE_URL,
        description="Root URL of the DILA open-data listing",
    )

    download_workers: int = Field(
        default=10,
        ge=1,
        le=64,
        description="Maximum number of concurrent archive downloads",
    )

    download_retries: int = Field(
        default=3,
        ge=0,
        description="Retries per archive after a transient network failure",
    )

    download_backoff_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial retry delay, doubled after every attempt",
    )

    request_timeout_seconds: float = Field(
        default=30.0,
        ge=1.0,
        description="Connect/read timeout for HTTP requests (seconds)",
    )

    download_chunk_bytes: int = Field(
        default=1 << 20,
        ge=1024,
        description="Chunk size for streamed archive writes",
    )

    # Extraction and parsing
    extract_workers: int = Field(
        default_factory=_default_workers,
        ge=1,
        description="Number of fonds extracted in parallel",
    )

    parse_workers: int = Field(
        default_factory=_default_workers,
        ge=1,
        description="Number of parser processes feeding the index builder",
    )

    parse_queue_size: int = Field(
        default=256,
        ge=1,
        description="Maximum number of parsed documents in flight (backpressure window)",
    )

    # Index construction
    memory_budget_mb: float = Field(
        default=256.0,
        gt=0,
        description="Memory budget of the index writer heap and key spool",
    )

    # One-shot search
    oneshot_chunk_size: int = Field(
        default=10,
        ge=1,
        description="Archives downloaded, indexed and searched together by 'oneshot'",
    )

    # Query
    default_limit: int = Field(
        default=10,
        ge=1,
        description="Number of results returned when no explicit count is requested",
    )

    log_level: LogLevel = Field(
        default="WARNING",
        description="Root logging level for the CLI",
    )

    _resolved_data_dir: Path | None = PrivateAttr(default=None)
    _data_dir_warning_emitted: bool = PrivateAttr(default=False)

    @field_validator("base_url")
    @classmethod
    def _ensure_trailing_slash(cls, value: str) -> str:
        return value if value.endswith("/") else value + "/"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    def get_data_dir(self) -> Path:
        """Get the data directory, creating if necessary."""
        if self._resolved_data_dir is not None:
            return self._resolved_data_dir

        if self.data_dir:
            data_dir = self.data_dir
            data_dir.mkdir(parents=True, exist_ok=True)
            self._resolved_data_dir = data_dir
            return data_dir

        primary_dir = get_xdg_data_home() / "dilarxiv"
        try:
            primary_dir.mkdir(parents=True, exist_ok=True)
            self._resolved_data_dir = primary_dir
            return primary_dir
        except PermissionError as exc:
            fallback = Path.cwd() / ".dilarxiv-data"
            fallback.mkdir(parents=True, exist_ok=True)
            self._resolved_data_dir = fallback
            if not self._data_dir_warning_emitted:
                print(
                    f"Warning: cannot create data directory at {primary_dir} ({exc}). "
                    f"Using local '{fallback}' instead. Pass --data-dir to override.",
                    file=sys.stderr,
                )
                self._data_dir_warning_emitted = True
            return fallback

    def get_tarball_dir(self) -> Path:
        """Get path to the downloaded archives (``tarball/<FOND>/``)."""
        tarball_dir = self.get_data_dir() / "tarball"
        tarball_dir.mkdir(parents=True, exist_ok=True)
        return tarball_dir

    def get_extracted_dir(self) -> Path:
        """Get path to the extracted document tree (``extracted/<FOND>/``)."""
        extracted_dir = self.get_data_dir() / "extracted"
        extracted_dir.mkdir(parents=True, exist_ok=True)
        return extracted_dir

    def get_results_dir(self) -> Path:
        """Get path to the files kept by one-shot searches (``results/<FOND>/``)."""
        return self.get_data_dir() / "results"

    def get_index_dir(self) -> Path:
        """Get path to the search index directory.

        The directory is not created here: a missing index must be reported as
        such by readers.
        """
        if self.index_dir is not None:
            return self.index_dir
        return self.get_data_dir() / "index"

    def get_memory_budget_bytes(self) -> int:
        return int(self.memory_budget_mb * 1024 * 1024)


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Set the global settings instance (useful for testing)."""
    global _settings
    _settings = settings
