"""
Domain models for the upload engine.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from uploadkit.domain.errors import UploadError
from uploadkit.services.size_policy import format_size


class SourceKind(str, enum.Enum):
    """Where the bytes of an entry come from."""

    FORM = "form"
    STREAM = "stream"
    LOCAL_IMPORT = "local-import"
    REMOTE_IMPORT = "remote-import"


class EntryState(str, enum.Enum):
    """Lifecycle of an entry inside a pipeline run."""

    PENDING = "pending"
    VALIDATED = "validated"
    DESTINATION_RESOLVED = "destination_resolved"
    MATERIALIZED = "materialized"
    TRANSFORMED = "transformed"
    RECORDED = "recorded"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


class Anchor(str, enum.Enum):
    """Crop reference edge."""

    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"
    CENTER = "center"


class FlipAxis(str, enum.Enum):
    VERTICAL = "vertical"
    HORIZONTAL = "horizontal"
    BOTH = "both"


@dataclass(frozen=True, slots=True)
class Rect:
    x: int
    y: int
    width: int
    height: int

    def box(self) -> tuple[int, int, int, int]:
        """Return (left, upper, right, lower) as Pillow expects."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass(frozen=True, slots=True)
class TransformDescriptor:
    """Pure-data description of a raster transform."""

    source: Rect
    dest: Rect
    width: int
    height: int
    quality: int = 100
    flip_horizontal: bool = False
    flip_vertical: bool = False
    append: str = ""
    target: Optional[Path] = None

    def with_target(self, target: Path) -> "TransformDescriptor":
        return replace(self, target=Path(target))

    def with_quality(self, quality: int) -> "TransformDescriptor":
        return replace(self, quality=quality)

    @property
    def label(self) -> str:
        return self.append.strip("_")


@dataclass(slots=True)
class FormFile:
    """A multipart field staged to a temporary file by the web layer."""

    name: str
    content_type: Optional[str]
    path: Path
    size: int
    error: int = 0


@dataclass(slots=True)
class UploadEntry:
    """One ingested file, keyed by its field within a request."""

    field: str
    name: str
    source: SourceKind
    source_location: str
    ext: str = ""
    mime_type: Optional[str] = None
    size: int = 0
    error_code: int = 0
    group: Optional[str] = None
    path: Optional[Path] = None
    width: Optional[int] = None
    height: Optional[int] = None
    uploaded_at: Optional[datetime] = None
    custom_name: Optional[str] = None
    url: Optional[str] = None
    derived: Dict[str, Path] = field(default_factory=dict)
    state: EntryState = EntryState.PENDING
    error: Optional[UploadError] = None

    @property
    def is_image(self) -> bool:
        return self.group == "image"

    def reject(self, error: UploadError) -> None:
        self.state = EntryState.REJECTED
        self.error = error
        self.group = None
        self.width = None
        self.height = None

    def public_view(self, base_dir: Path | None = None) -> "EntryView":
        """Return caller-visible metadata with paths relative to `base_dir`."""

        def _public(path: Path | None) -> str | None:
            if path is None:
                return None
            if base_dir is not None:
                try:
                    return "/" + Path(path).relative_to(base_dir).as_posix()
                except ValueError:
                    pass
            return str(path)

        return EntryView(
            field=self.field,
            name=self.name,
            ext=self.ext,
            type=self.mime_type,
            group=self.group,
            size=self.size,
            filesize=format_size(self.size),
            source=self.source,
            path=_public(self.path),
            width=self.width,
            height=self.height,
            uploaded=self.uploaded_at,
            url=self.url,
            derived={label: _public(p) for label, p in self.derived.items()},
        )


class EntryView(BaseModel):
    """Metadata returned to API clients once an entry is recorded."""

    model_config = ConfigDict(frozen=True)

    field: str
    name: str
    ext: str
    type: Optional[str] = None
    group: Optional[str] = None
    size: int
    filesize: str
    source: SourceKind
    path: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    uploaded: Optional[datetime] = None
    url: Optional[str] = None
    derived: Dict[str, Optional[str]] = Field(default_factory=dict)


@dataclass(slots=True)
class BatchResult:
    """Aggregate outcome of `IngestionPipeline.upload_all`."""

    entries: Dict[str, EntryView] = field(default_factory=dict)
    failures: Dict[str, UploadError] = field(default_factory=dict)
    rolled_back: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class RemoteImportRequest(BaseModel):
    """Body of the remote import endpoint."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    url: str = Field(..., min_length=1, max_length=2048)
    name: Optional[str] = Field(None, max_length=255)
    overwrite: bool = False

    @field_validator("url")
    @classmethod
    def validate_scheme(cls, v):
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("Only absolute http(s) URLs can be imported")
        return v


class TransformRequest(BaseModel):
    """One transform applied to an uploaded image."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["resize", "crop", "scale", "flip"]
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)
    percent: float = Field(0.5, gt=0)
    anchor: Anchor = Anchor.CENTER
    axis: FlipAxis = FlipAxis.VERTICAL
    quality: int = Field(100, ge=0, le=100)
    expand: bool = False
    aspect: bool = True
    append: Optional[str] = None
    prepend: Optional[str] = None

    def options(self) -> Dict[str, Any]:
        """Keyword arguments for the matching pipeline transform."""
        common = {"quality": self.quality, "append": self.append, "prepend": self.prepend}
        if self.kind == "resize":
            return {
                "width": self.width,
                "height": self.height,
                "expand": self.expand,
                "aspect": self.aspect,
                **common,
            }
        if self.kind == "crop":
            return {"width": self.width, "height": self.height, "anchor": self.anchor, **common}
        if self.kind == "scale":
            return {"percent": self.percent, **common}
        return {"axis": self.axis, **common}
