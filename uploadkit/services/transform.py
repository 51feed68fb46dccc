"""
Pillow execution of transform descriptors.

Decodes GIF, PNG or JPEG data, applies the source window, flips and resample
described by a `TransformDescriptor`, and re-encodes in the source format.
Output files are written next to their target and renamed into place.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Tuple

from PIL import Image, UnidentifiedImageError

from uploadkit.domain.errors import IOFailure, InvalidGeometry, UnsupportedFormat
from uploadkit.domain.models import TransformDescriptor

logger = logging.getLogger(__name__)

# What Pillow raises for undecodable or oversized (decompression bomb) images.
DECODE_ERRORS: Final = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)

# Pillow format names keyed by accepted mime types and short names.
FORMATS: Final[dict[str, str]] = {
    "image/gif": "GIF",
    "image/png": "PNG",
    "image/x-png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "gif": "GIF",
    "png": "PNG",
    "jpeg": "JPEG",
    "jpg": "JPEG",
}
ALPHA_FORMATS: Final = frozenset({"GIF", "PNG"})
GIF_TRANSPARENT_INDEX: Final = 255


@dataclass(frozen=True, slots=True)
class Dimensions:
    width: int
    height: int
    mime_type: str | None


def raster_format(source_format: str | None) -> str:
    """Map a mime type or short name to the Pillow format used for encoding."""
    fmt = FORMATS.get((source_format or "").lower())
    if fmt is None:
        raise UnsupportedFormat(f"Cannot transform images of type {source_format!r}")
    return fmt


def _open(data: bytes) -> Image.Image:
    try:
        im = Image.open(io.BytesIO(data))
        im.load()
    except DECODE_ERRORS as exc:
        raise UnsupportedFormat(f"Image data could not be decoded: {exc}") from exc
    return im


def dimensions(source: bytes | str | os.PathLike[str]) -> Dimensions:
    """Probe width, height and mime type without decoding the whole raster."""
    try:
        if isinstance(source, (bytes, bytearray)):
            im = Image.open(io.BytesIO(source))
        else:
            im = Image.open(os.fspath(source))
        with im:
            return Dimensions(im.width, im.height, Image.MIME.get(im.format or ""))
    except DECODE_ERRORS as exc:
        raise UnsupportedFormat(f"Could not read image dimensions: {exc}") from exc


def _encode(im: Image.Image, fmt: str, quality: int) -> bytes:
    out = io.BytesIO()
    if fmt == "JPEG":
        im.convert("RGB").save(out, format=fmt, quality=max(0, min(100, quality)))
    elif fmt == "GIF":
        # GIF keeps one fully transparent palette slot for the alpha channel.
        alpha = im.getchannel("A")
        paletted = im.convert("RGB").convert(
            "P", palette=Image.Palette.ADAPTIVE, colors=GIF_TRANSPARENT_INDEX
        )
        mask = alpha.point(lambda a: 255 if a <= 128 else 0)
        paletted.paste(GIF_TRANSPARENT_INDEX, mask=mask)
        paletted.save(out, format=fmt, transparency=GIF_TRANSPARENT_INDEX)
    else:
        im.save(out, format=fmt)
    return out.getvalue()


class TransformExecutor:
    """Apply a `TransformDescriptor` to GIF, PNG or JPEG data with Pillow."""

    def apply(self, data: bytes, source_format: str, descriptor: TransformDescriptor) -> bytes:
        """Return the encoded output for `descriptor`, in the source format."""
        fmt = raster_format(source_format)
        source = _open(data)

        window = descriptor.source
        if (
            window.x < 0
            or window.y < 0
            or window.x + window.width > source.width
            or window.y + window.height > source.height
        ):
            raise InvalidGeometry(
                f"Source window {window} exceeds image bounds {source.width}x{source.height}"
            )

        mode = "RGBA" if fmt in ALPHA_FORMATS else "RGB"
        region = source.convert(mode).crop(window.box())
        if descriptor.flip_horizontal:
            region = region.transpose(Image.Transpose.FLIP_LEFT_RIGHT)
        if descriptor.flip_vertical:
            region = region.transpose(Image.Transpose.FLIP_TOP_BOTTOM)

        dest = descriptor.dest
        if (dest.width, dest.height) != region.size:
            # BOX averages every source pixel covering a destination pixel.
            region = region.resize((dest.width, dest.height), Image.Resampling.BOX)

        background = (255, 255, 255, 0) if mode == "RGBA" else (255, 255, 255)
        canvas = Image.new(mode, (descriptor.width, descriptor.height), background)
        canvas.paste(region, (dest.x, dest.y))
        return _encode(canvas, fmt, descriptor.quality)

    def apply_to_file(
        self,
        source_path: str | os.PathLike[str],
        source_format: str,
        descriptor: TransformDescriptor,
    ) -> Tuple[Path, int]:
        """
        Transform the file at `source_path` and write `descriptor.target`.

        Output goes to a temporary file in the target directory and is renamed
        into place once fully written. Returns (target, size_bytes).
        """
        if descriptor.target is None:
            raise IOFailure("Transform has no target path")
        target = Path(descriptor.target)

        try:
            data = Path(source_path).read_bytes()
        except OSError as exc:
            raise IOFailure(f"Could not read {source_path}: {exc}") from exc

        output = self.apply(data, source_format, descriptor)

        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".tmp-", suffix=target.suffix)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(output)
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise IOFailure(f"Could not write {target}: {exc}") from exc

        logger.info(
            "Wrote %s (%sx%s, %s bytes)", target, descriptor.width, descriptor.height, len(output)
        )
        return target, len(output)
