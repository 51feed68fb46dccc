"""
Tests for the accepted types registry and media type detection.
"""

from uploadkit.services.mime_registry import (
    PNG_MAGIC,
    MimeRegistry,
    extension_of,
    sniff_media_type,
)


class TestLookup:
    """Extension and mime must agree within one group."""

    def test_matching_pair_returns_group(self):
        registry = MimeRegistry.default()
        assert registry.lookup("jpg", "image/jpeg") == "image"
        assert registry.lookup("txt", "text/plain") == "text"
        assert registry.lookup("pdf", "application/pdf") == "document"

    def test_lookup_is_case_insensitive_and_ignores_parameters(self):
        registry = MimeRegistry.default()
        assert registry.lookup("PNG", "Image/PNG") == "image"
        assert registry.lookup("txt", "text/plain; charset=utf-8") == "text"

    def test_mismatched_pair_is_rejected(self):
        registry = MimeRegistry.default()
        assert registry.lookup("jpg", "application/pdf") is None
        assert registry.lookup("exe", "application/x-msdownload") is None

    def test_missing_inputs_fail_closed(self):
        registry = MimeRegistry.default()
        assert registry.lookup("", "image/png") is None
        assert registry.lookup("png", None) is None


class TestRegister:
    """Registering returns a new registry and leaves the original alone."""

    def test_register_adds_type_to_copy(self):
        registry = MimeRegistry.default()
        extended = registry.register("image", "webp", "image/webp")

        assert extended.lookup("webp", "image/webp") == "image"
        assert registry.lookup("webp", "image/webp") is None

    def test_register_without_group_uses_misc(self):
        extended = MimeRegistry.default().register(None, "bin", "application/octet-stream")
        assert extended.lookup("bin", "application/octet-stream") == "misc"
        assert "misc" in extended.groups()

    def test_register_extends_existing_extension(self):
        extended = MimeRegistry.default().register("image", "jpg", "image/jpg")
        assert {"image/jpeg", "image/pjpeg", "image/jpg"} <= extended.accepted("jpg")


class TestDetection:
    """Best-effort media type detection."""

    def test_sniffs_magic_bytes(self):
        assert sniff_media_type(PNG_MAGIC + b"\x00" * 8) == "image/png"
        assert sniff_media_type(b"\xff\xd8\xff\xe0rest") == "image/jpeg"
        assert sniff_media_type(b"GIF89a....") == "image/gif"
        assert sniff_media_type(b"%PDF-1.7") == "application/pdf"
        assert sniff_media_type(b"hello") is None

    def test_content_wins_over_extension(self, tmp_path):
        disguised = tmp_path / "notes.txt"
        disguised.write_bytes(PNG_MAGIC + b"\x00" * 16)
        assert MimeRegistry.default().mime_type_of(disguised) == "image/png"

    def test_falls_back_to_extension(self, tmp_path):
        text = tmp_path / "notes.txt"
        text.write_text("just text")
        assert MimeRegistry.default().mime_type_of(text) == "text/plain"

    def test_name_only_detection(self):
        registry = MimeRegistry.default()
        assert registry.mime_type_of("photo.JPG", inspect_content=False) == "image/jpeg"

    def test_extension_for_mime(self):
        registry = MimeRegistry.default()
        assert registry.extension_for("image/png") == "png"
        assert registry.extension_for("application/x-unknown") is None


def test_extension_of():
    assert extension_of("Photo.JPG") == "jpg"
    assert extension_of("archive.tar.gz") == "gz"
    assert extension_of("https://example.com/a/b/image.png?size=2") == "png"
    assert extension_of("README") == ""
