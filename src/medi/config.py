"""Configuration module for medi."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from medi import __version__

# User-level overrides live next to the data directory
_USER_ENV = Path.home() / ".medi" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Bulk operations touching more notes than this leave the index stale
# instead of patching it note by note.
DEFAULT_BULK_DELTA_THRESHOLD = 50


def _default_base_dir() -> Path:
    return Path(os.getenv("MEDI_BASE_DIR", str(Path.home() / ".medi")))


def _optional_path(env_name: str) -> Optional[Path]:
    value = os.getenv(env_name)
    return Path(value) if value else None


def sqlite_url(path: Path) -> str:
    """SQLAlchemy URL for a SQLite file."""
    return f"sqlite:///{path}"


class MediConfig(BaseModel):
    """Configuration for the note store and its derived index."""

    # Base directory; relative paths below are resolved against it
    base_dir: Path = Field(default_factory=_default_base_dir)
    # Canonical store (sole source of truth)
    database_path: Path = Field(
        default_factory=lambda: Path(os.getenv("MEDI_DB_PATH", "medi_db.sqlite"))
    )
    # Derived search index; safe to delete at any time
    index_path: Path = Field(
        default_factory=lambda: Path(os.getenv("MEDI_INDEX_PATH", "medi_index.sqlite"))
    )
    # Default target for exports when the caller gives no path
    export_dir: Optional[Path] = Field(
        default_factory=lambda: _optional_path("MEDI_EXPORT_DIR")
    )
    bulk_delta_threshold: int = Field(
        default_factory=lambda: int(
            os.getenv("MEDI_BULK_DELTA_THRESHOLD", str(DEFAULT_BULK_DELTA_THRESHOLD))
        )
    )
    # Seconds a writer waits for another process to release the store
    busy_timeout: float = Field(
        default_factory=lambda: float(os.getenv("MEDI_BUSY_TIMEOUT", "10"))
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("MEDI_LOG_LEVEL", "WARNING").upper()
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: _optional_path("MEDI_LOG_DIR")
    )
    version: str = Field(default=__version__)

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _validate_limits(self) -> "MediConfig":
        """Reject settings that would make the store unusable."""
        if self.bulk_delta_threshold < 0:
            raise ValueError("bulk_delta_threshold must be >= 0")
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.log_level}")
        if self.busy_timeout > 300:
            logger.warning(
                "busy_timeout=%.0fs is very long; a stuck writer will block "
                "other invocations for that long",
                self.busy_timeout,
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        path = Path(path).expanduser()
        if path.is_absolute():
            return path
        return self.base_dir.expanduser() / path

    def get_store_path(self) -> Path:
        """Absolute path of the canonical store, creating its directory."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def get_index_path(self) -> Path:
        """Absolute path of the derived index, creating its directory."""
        index_path = self.get_absolute_path(self.index_path)
        index_path.parent.mkdir(parents=True, exist_ok=True)
        return index_path

    def get_store_url(self) -> str:
        """Get the database URL for the canonical store."""
        return sqlite_url(self.get_store_path())

    def get_index_url(self) -> str:
        """Get the database URL for the search index."""
        return sqlite_url(self.get_index_path())


# Create a global config instance
config = MediConfig()
