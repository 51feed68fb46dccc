"""Accepted file types grouped by category, and media type detection."""

from __future__ import annotations

import logging
import mimetypes
import os
from pathlib import Path
from types import MappingProxyType
from typing import Final, Iterable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_GROUP: Final = "misc"

PNG_MAGIC: Final = b"\x89PNG\r\n\x1a\n"
JPEG_SOI: Final = b"\xff\xd8\xff"
GIF_MAGICS: Final = (b"GIF87a", b"GIF89a")
SNIFF_BYTES: Final = 512

# (signature, offset, media type); first match wins.
SIGNATURES: Final[tuple[tuple[bytes, int, str], ...]] = (
    (PNG_MAGIC, 0, "image/png"),
    (JPEG_SOI, 0, "image/jpeg"),
    (GIF_MAGICS[0], 0, "image/gif"),
    (GIF_MAGICS[1], 0, "image/gif"),
    (b"%PDF-", 0, "application/pdf"),
    (b"PK\x03\x04", 0, "application/zip"),
    (b"\x1f\x8b", 0, "application/x-gzip"),
    (b"Rar!\x1a\x07", 0, "application/x-rar-compressed"),
    (b"7z\xbc\xaf\x27\x1c", 0, "application/x-7z-compressed"),
    (b"II*\x00", 0, "image/tiff"),
    (b"MM\x00*", 0, "image/tiff"),
    (b"ID3", 0, "audio/mpeg"),
    (b"OggS", 0, "audio/ogg"),
    (b"ftypqt", 4, "video/quicktime"),
    (b"ftyp", 4, "video/mp4"),
)

DEFAULT_MIME_TYPES: Final[dict[str, dict[str, tuple[str, ...]]]] = {
    "image": {
        "gif": ("image/gif",),
        "jpg": ("image/jpeg", "image/pjpeg"),
        "jpeg": ("image/jpeg", "image/pjpeg"),
        "jpe": ("image/jpeg", "image/pjpeg"),
        "png": ("image/png", "image/x-png"),
        "bmp": ("image/bmp", "image/x-ms-bmp"),
    },
    "text": {
        "txt": ("text/plain",),
        "md": ("text/markdown", "text/plain"),
        "csv": ("text/csv", "text/comma-separated-values", "text/plain"),
        "html": ("text/html",),
        "htm": ("text/html",),
        "xml": ("text/xml", "application/xml"),
        "css": ("text/css",),
        "js": ("text/javascript", "application/javascript", "application/x-javascript"),
    },
    "document": {
        "pdf": ("application/pdf",),
        "doc": ("application/msword",),
        "docx": ("application/vnd.openxmlformats-officedocument.wordprocessingml.document",),
        "xls": ("application/vnd.ms-excel",),
        "xlsx": ("application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",),
        "ppt": ("application/vnd.ms-powerpoint",),
        "pptx": ("application/vnd.openxmlformats-officedocument.presentationml.presentation",),
        "rtf": ("application/rtf", "text/rtf"),
        "odt": ("application/vnd.oasis.opendocument.text",),
    },
    "archive": {
        "zip": ("application/zip", "application/x-zip-compressed"),
        "gz": ("application/x-gzip", "application/gzip"),
        "gzip": ("application/x-gzip", "application/gzip"),
        "tar": ("application/x-tar",),
        "rar": ("application/x-rar-compressed", "application/vnd.rar"),
        "7z": ("application/x-7z-compressed",),
    },
    "audio": {
        "mp3": ("audio/mpeg", "audio/mp3"),
        "wav": ("audio/wav", "audio/x-wav"),
        "ogg": ("audio/ogg",),
    },
    "video": {
        "mp4": ("video/mp4",),
        "mov": ("video/quicktime",),
        "avi": ("video/x-msvideo",),
        "mpeg": ("video/mpeg",),
    },
    "application": {
        "json": ("application/json",),
        "swf": ("application/x-shockwave-flash",),
    },
}


def extension_of(name: str | os.PathLike[str]) -> str:
    """Return the lower-cased extension of `name` without the dot."""
    base = os.path.basename(os.fspath(name).split("?", 1)[0])
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[1].strip().lower()


def sniff_media_type(data: bytes) -> str | None:
    """Return the media type detected from magic bytes, or None."""
    for signature, offset, media_type in SIGNATURES:
        if data[offset : offset + len(signature)] == signature:
            return media_type
    return None


class MimeRegistry:
    """
    Immutable mapping of group -> extension -> accepted mime types.

    Build one at process start (usually `MimeRegistry.default()`) and share it
    between pipelines; `register` returns a new registry instead of mutating.
    """

    __slots__ = ("_groups",)

    def __init__(self, groups: Mapping[str, Mapping[str, Iterable[str]]] | None = None):
        frozen: dict[str, Mapping[str, tuple[str, ...]]] = {}
        for group, table in (groups or {}).items():
            frozen[group or DEFAULT_GROUP] = MappingProxyType(
                {
                    ext.lower().lstrip("."): tuple(dict.fromkeys(m.lower() for m in mimes))
                    for ext, mimes in table.items()
                }
            )
        self._groups = MappingProxyType(frozen)

    @classmethod
    def default(cls) -> "MimeRegistry":
        return cls(DEFAULT_MIME_TYPES)

    def register(self, group: str | None, ext: str, mime_type: str) -> "MimeRegistry":
        """Return a copy of this registry that also accepts `mime_type` for `ext`."""
        if not ext or not mime_type:
            return self
        group = group or DEFAULT_GROUP
        ext = ext.lower().lstrip(".")
        groups = {name: dict(table) for name, table in self._groups.items()}
        table = groups.setdefault(group, {})
        table[ext] = tuple(table.get(ext, ())) + (mime_type.lower(),)
        return MimeRegistry(groups)

    def groups(self) -> list[str]:
        return list(self._groups)

    def extensions(self, group: str) -> list[str]:
        return list(self._groups.get(group, {}))

    def accepted(self, ext: str) -> frozenset[str]:
        """Every mime accepted for `ext` across all groups."""
        ext = ext.lower().lstrip(".")
        found: set[str] = set()
        for table in self._groups.values():
            found.update(table.get(ext, ()))
        return frozenset(found)

    def lookup(self, ext: str | None, mime_type: str | None) -> str | None:
        """
        Return the group accepting both `ext` and `mime_type`, or None.

        The mime must be accepted for that extension within the same group;
        a known extension with an unknown mime fails closed.
        """
        if not ext or not mime_type:
            return None
        ext = ext.lower().lstrip(".")
        mime_type = mime_type.split(";", 1)[0].strip().lower()
        for group, table in self._groups.items():
            if mime_type in table.get(ext, ()):
                return group
        return None

    def mime_for_extension(self, ext: str) -> str | None:
        """First registered mime for `ext`."""
        ext = ext.lower().lstrip(".")
        for table in self._groups.values():
            if ext in table and table[ext]:
                return table[ext][0]
        return None

    def extension_for(self, mime_type: str | None) -> str | None:
        """First registered extension accepting `mime_type`."""
        if not mime_type:
            return None
        mime_type = mime_type.lower()
        for table in self._groups.values():
            for ext, mimes in table.items():
                if mime_type in mimes:
                    return ext
        return None

    def mime_type_of(
        self,
        path: str | os.PathLike[str],
        data: bytes | None = None,
        inspect_content: bool = True,
    ) -> str | None:
        """
        Best-effort media type of a file.

        Content is inspected first (from `data` or the file itself when it
        exists), then the extension is looked up in this registry and finally
        in the platform `mimetypes` table. Not authoritative. Pass
        `inspect_content=False` to infer from the name alone.
        """
        if data is None and inspect_content:
            candidate = Path(path)
            try:
                if candidate.is_file():
                    with candidate.open("rb") as handle:
                        data = handle.read(SNIFF_BYTES)
            except OSError as exc:
                logger.warning("Could not read %s for sniffing: %s", candidate, exc)

        if data:
            sniffed = sniff_media_type(data)
            if sniffed:
                return sniffed

        ext = extension_of(path)
        if ext:
            registered = self.mime_for_extension(ext)
            if registered:
                return registered

        guessed, _ = mimetypes.guess_type(os.fspath(path))
        return guessed
