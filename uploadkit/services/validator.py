"""
Validation rules applied to every entry before it is materialized.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from uploadkit.domain.errors import (
    PayloadTooLarge,
    RejectedByScan,
    TransferIncomplete,
    UnsupportedType,
)
from uploadkit.domain.models import EntryState, SourceKind, UploadEntry
from uploadkit.security.scanning import Scanner, ScanUnavailable, ScanVerdict
from uploadkit.services.mime_registry import MimeRegistry
from uploadkit.services.size_policy import format_size

logger = logging.getLogger(__name__)


class Validator:
    """Cross-checks type, transfer state, size and (optionally) scan verdict."""

    def __init__(
        self,
        registry: MimeRegistry,
        max_bytes: Optional[int] = None,
        scanner: Optional[Scanner] = None,
        scan_enabled: bool = False,
        scan_fail_open: bool = False,
    ):
        self.registry = registry
        self.max_bytes = max_bytes
        self.scanner = scanner
        self.scan_enabled = scan_enabled
        self.scan_fail_open = scan_fail_open

    def check_type(self, entry: UploadEntry) -> str:
        group = self.registry.lookup(entry.ext, entry.mime_type)
        if group is None:
            raise UnsupportedType(
                f"Files of type {entry.mime_type or 'unknown'} with extension "
                f".{entry.ext or '?'} are not allowed"
            )
        return group

    def check_transfer(self, entry: UploadEntry) -> None:
        """Make sure a client upload actually arrived in full."""
        if entry.error_code:
            raise TransferIncomplete(f"Upload failed with transport error {entry.error_code}")
        if entry.source is SourceKind.FORM and not Path(entry.source_location).is_file():
            raise TransferIncomplete("Uploaded file is missing from the staging area")
        if entry.size <= 0:
            raise TransferIncomplete("Uploaded file is empty")

    def check_size(self, entry: UploadEntry) -> None:
        if self.max_bytes is not None and entry.size > self.max_bytes:
            raise PayloadTooLarge(f"Maximum upload size is {format_size(self.max_bytes)}")

    def check_scan(self, entry: UploadEntry, path: Path) -> None:
        if not self.scan_enabled:
            return
        if self.scanner is None:
            verdict_error = ScanUnavailable("no scanner configured")
        else:
            try:
                verdict = self.scanner.scan(path)
            except ScanUnavailable as exc:
                verdict_error = exc
            else:
                if verdict is ScanVerdict.INFECTED:
                    raise RejectedByScan("File was rejected by the malware scanner")
                return

        if self.scan_fail_open:
            logger.warning("Scan unavailable for %s, accepting: %s", entry.field, verdict_error)
            return
        raise RejectedByScan(f"Malware scan unavailable: {verdict_error}")

    def local_path(self, entry: UploadEntry) -> Optional[Path]:
        """Path of the bytes when they are already on this machine."""
        if entry.source is SourceKind.REMOTE_IMPORT:
            return entry.path
        return Path(entry.source_location)

    def validate(self, entry: UploadEntry, is_import: bool = False) -> str:
        """
        Run every rule against `entry` and set its group on success.

        Imports skip the transfer check; everything else applies to all
        sources. Remote imports are sized and scanned once downloaded.
        """
        group = self.check_type(entry)
        if not is_import:
            self.check_transfer(entry)
        self.check_size(entry)

        path = self.local_path(entry)
        if path is not None and path.is_file():
            self.check_scan(entry, path)

        entry.group = group
        entry.state = EntryState.VALIDATED
        return group
