"""Malware scanning collaborator used by the validator."""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
from typing import Protocol

logger = logging.getLogger(__name__)


class ScanVerdict(str, enum.Enum):
    CLEAN = "clean"
    INFECTED = "infected"


class ScanUnavailable(Exception):
    """The scan engine could not produce a verdict."""


class Scanner(Protocol):
    def scan(self, path: str | os.PathLike[str]) -> ScanVerdict: ...


class ClamscanScanner:
    """Run the ClamAV command line scanner on a single file."""

    def __init__(self, binary: str = "clamscan", timeout: float = 60.0):
        self.binary = binary
        self.timeout = timeout

    def scan(self, path: str | os.PathLike[str]) -> ScanVerdict:
        executable = shutil.which(self.binary)
        if executable is None:
            raise ScanUnavailable(f"{self.binary} is not installed")

        try:
            result = subprocess.run(
                [executable, "--no-summary", os.fspath(path)],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ScanUnavailable(f"{self.binary} failed: {exc}") from exc

        # clamscan: 0 = clean, 1 = virus found, 2 = error
        if result.returncode == 0:
            return ScanVerdict.CLEAN
        if result.returncode == 1:
            logger.warning("Scanner flagged %s: %s", path, result.stdout.strip())
            return ScanVerdict.INFECTED
        raise ScanUnavailable(result.stderr.strip() or f"exit code {result.returncode}")
