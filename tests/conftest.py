# tests/conftest.py
import io
import struct
import sys
import zlib
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from uploadkit.config import Settings  # noqa: E402
from uploadkit.services.audit import audit_log  # noqa: E402


@pytest.fixture(autouse=True)
def reset_audit_log():
    """Ensure audit records do not leak across tests."""
    audit_log.clear()
    yield
    audit_log.clear()


@pytest.fixture()
def settings(tmp_path):
    """Settings rooted in an isolated temporary directory."""
    return Settings(
        max_file_size="1M",
        temp_dir=tmp_path / "tmp",
        base_dir=tmp_path / "var",
        upload_dir="files/uploads/",
    )


@pytest.fixture()
def make_image():
    """Build encoded image bytes with Pillow."""

    def _make(width=8, height=4, fmt="PNG", color=(200, 30, 30, 255)):
        mode = "RGBA" if fmt in ("PNG", "GIF") else "RGB"
        im = Image.new(mode, (width, height), color if mode == "RGBA" else color[:3])
        out = io.BytesIO()
        if fmt == "GIF":
            im.convert("RGB").save(out, format=fmt)
        else:
            im.save(out, format=fmt)
        return out.getvalue()

    return _make


@pytest.fixture()
def bomb_png():
    """PNG header claiming 20000x20000 pixels, past Pillow's decompression bomb limit."""

    def _chunk(kind, data):
        return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))

    header = struct.pack(">IIBBBBB", 20000, 20000, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + _chunk(b"IHDR", header) + _chunk(b"IEND", b"")
