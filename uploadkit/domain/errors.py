"""Typed failures raised by the ingestion pipeline."""

from __future__ import annotations


class UploadError(Exception):
    """Domain exception for upload validation and processing errors."""

    code = "upload_error"
    status = 400

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None):
        self.code = code or self.code
        self.status = status or self.status
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class UnsupportedType(UploadError):
    """Extension and mime type do not resolve to a registered group."""

    code = "unsupported_media_type"
    status = 415


class TransferIncomplete(UploadError):
    """The client transfer did not complete (empty, missing or errored)."""

    code = "transfer_incomplete"
    status = 400


class PayloadTooLarge(UploadError):
    code = "payload_too_large"
    status = 413


class RejectedByScan(UploadError):
    """The malware scanner flagged the file or could not be consulted."""

    code = "rejected_by_scan"
    status = 422


class InvalidOptions(UploadError):
    code = "invalid_options"
    status = 400


class InvalidGeometry(UploadError):
    code = "invalid_geometry"
    status = 400


class UnsupportedFormat(UploadError):
    """Raster format outside GIF/PNG/JPEG or undecodable image data."""

    code = "unsupported_format"
    status = 415


class IOFailure(UploadError):
    code = "io_failure"
    status = 500


class DestinationConflict(UploadError):
    """Collision probing exhausted its bound without finding a free name."""

    code = "destination_conflict"
    status = 409


class EntryNotFound(UploadError):
    code = "entry_not_found"
    status = 404
