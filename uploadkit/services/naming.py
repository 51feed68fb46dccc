"""
Safe file naming and collision-free destination selection.

Names are sanitized to `[A-Za-z0-9._/ -]`, whitespace becomes `_`, and clashes
are resolved by probing `_1`, `_2`, ... before the extension. Probing and
reserving a name happen under a per-directory lock so that concurrent workers
in one process never pick the same file.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from uploadkit.domain.errors import DestinationConflict, InvalidOptions
from uploadkit.services.mime_registry import extension_of

logger = logging.getLogger(__name__)

MAX_PROBES: Final = 10_000
COLLISION_SEPARATOR: Final = "_"

ILLEGAL_CHARS_RE = re.compile(r"[^-_.a-zA-Z0-9/\s]")
WHITESPACE_RE = re.compile(r"\s+")


def sanitize(value: str | None) -> str:
    """Drop characters outside the allowed set and turn whitespace runs into `_`."""
    if not value:
        return ""
    return WHITESPACE_RE.sub("_", ILLEGAL_CHARS_RE.sub("", str(value)))


@dataclass(frozen=True, slots=True)
class NamingContext:
    """Inputs of a single name resolution."""

    base: str
    ext: str
    append: str = ""
    prepend: str = ""
    max_length: int | None = None

    def filename(self) -> str:
        base = sanitize(self.base).strip()
        if self.max_length and self.max_length > 0 and len(base) > self.max_length:
            base = base[: self.max_length]
        name = sanitize(self.prepend) + base + sanitize(self.append)
        if self.ext:
            name = f"{name}.{self.ext}"
        return name.strip("/")


def format_name(
    raw_name: str,
    append: str | None = "",
    prepend: str | None = "",
    max_length: int | None = None,
    fallback_ext: str | None = None,
) -> str:
    """
    Derive a safe filename from `raw_name`.

    The extension is kept from the raw name (lower-cased) or taken from
    `fallback_ext` when the name has none; only the base is truncated.
    """
    raw_name = os.fspath(raw_name or "")
    ext = extension_of(raw_name)
    base = raw_name
    if ext:
        base = raw_name[: -(len(ext) + 1)]
    else:
        ext = (fallback_ext or "").lower().lstrip(".")

    context = NamingContext(
        base=base,
        ext=ext,
        append=append or "",
        prepend=prepend or "",
        max_length=max_length,
    )
    name = context.filename()
    if not name or name == f".{ext}":
        raise InvalidOptions(f"Cannot derive a file name from {raw_name!r}")
    return name


def _inside(directory: Path, candidate: Path) -> Path:
    """Resolve `candidate` and make sure it stays inside `directory`."""
    root = directory.resolve()
    resolved = candidate.resolve()
    if resolved != root and root not in resolved.parents:
        raise InvalidOptions("Invalid storage path detected", code="path_traversal")
    return resolved


def resolve_destination(
    directory: str | os.PathLike[str],
    name: str,
    *,
    overwrite: bool = False,
    append: str | None = "",
    prepend: str | None = "",
    max_length: int | None = None,
    fallback_ext: str | None = None,
    separator: str = COLLISION_SEPARATOR,
    max_probes: int = MAX_PROBES,
    reserve: bool = False,
) -> Path:
    """
    Return a free path for `name` inside `directory`.

    Without `overwrite`, an existing file makes the resolver probe
    `append + separator + "1"`, `"2"`, ... in order until a name is unused.
    With `overwrite`, the existing file is removed and the name reused.
    When `reserve` is true an empty placeholder is created atomically so that
    nobody else can claim the name before the bytes arrive.
    """
    directory = Path(directory)
    append = append or ""
    candidate = format_name(name, append, prepend, max_length, fallback_ext)
    dest = _inside(directory, directory / candidate)

    if overwrite:
        if dest.exists():
            logger.info("Overwriting existing file %s", dest)
            dest.unlink()
        dest.parent.mkdir(parents=True, exist_ok=True)
        if reserve:
            dest.touch()
        return dest

    number = 0
    while True:
        if number:
            candidate = format_name(name, f"{append}{separator}{number}", prepend, max_length, fallback_ext)
            dest = _inside(directory, directory / candidate)

        if not dest.exists():
            if not reserve:
                return dest
            dest.parent.mkdir(parents=True, exist_ok=True)
            try:
                with dest.open("xb"):
                    pass
                return dest
            except FileExistsError:
                pass

        number += 1
        if number > max_probes:
            raise DestinationConflict(
                f"No free name for {name!r} after {max_probes} attempts in {directory}"
            )


class DirectoryLocks:
    """One mutex per destination directory for probe-and-reserve sections."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, directory: str | os.PathLike[str]) -> threading.Lock:
        key = str(Path(directory).resolve())
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def reserve_destination(self, directory: str | os.PathLike[str], name: str, **options) -> Path:
        """Probe for a free name and create its placeholder under the directory lock."""
        with self.lock_for(directory):
            return resolve_destination(directory, name, reserve=True, **options)


# Shared by every pipeline in the process.
directory_locks = DirectoryLocks()
