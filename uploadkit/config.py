"""
Runtime settings for the upload engine, read from the environment.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from uploadkit.domain.errors import UploadError
from uploadkit.services.size_policy import parse_size

ENV_PREFIX = "UPLOADKIT_"


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Configuration surface of the ingestion pipeline."""

    model_config = ConfigDict(frozen=True)

    max_file_size: str = "5M"
    max_name_length: int = Field(40, ge=0)
    temp_dir: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))
    base_dir: Path = Path("./var")
    upload_dir: str = "files/uploads/"
    scan_enabled: bool = False
    scan_fail_open: bool = False
    remote_timeout: float = Field(10.0, gt=0)
    ajax_field: str = "qqfile"
    workers: int = Field(1, ge=1)
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    storage_bucket: Optional[str] = None
    storage_root: Optional[Path] = None
    storage_url: str = "file://"

    @field_validator("max_file_size")
    @classmethod
    def validate_max_file_size(cls, v):
        try:
            parse_size(v)
        except UploadError as exc:
            raise ValueError(exc.message) from exc
        return v

    @property
    def max_file_bytes(self) -> int:
        return parse_size(self.max_file_size)

    @property
    def upload_root(self) -> Path:
        """Absolute destination directory: base_dir / upload_dir."""
        return (Path(self.base_dir) / self.upload_dir.strip("/")).resolve()

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            max_file_size=_env("MAX_FILE_SIZE", "5M"),
            max_name_length=int(_env("MAX_NAME_LENGTH", "40")),
            temp_dir=Path(_env("TEMP_DIR", tempfile.gettempdir())),
            base_dir=Path(_env("BASE_DIR", "./var")),
            upload_dir=_env("UPLOAD_DIR", "files/uploads/"),
            scan_enabled=_env_flag("SCAN_ENABLED"),
            scan_fail_open=_env_flag("SCAN_FAIL_OPEN"),
            remote_timeout=float(_env("REMOTE_TIMEOUT", "10")),
            ajax_field=_env("AJAX_FIELD", "qqfile"),
            workers=int(_env("WORKERS", "1")),
            cors_origins=tuple(
                origin.strip()
                for origin in _env("CORS_ORIGINS", "http://localhost:3000").split(",")
                if origin.strip()
            ),
            storage_bucket=_env("STORAGE_BUCKET", "") or None,
            storage_root=Path(_env("STORAGE_ROOT", "")) if _env("STORAGE_ROOT", "") else None,
            storage_url=_env("STORAGE_URL", "file://"),
        )
