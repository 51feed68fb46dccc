"""
Ingestion pipeline: validate -> resolve destination -> materialize -> record.

One pipeline instance serves one request. Entries are explicit objects keyed
by field; each moves through `EntryState` on its own, and batch uploads can
roll back everything they materialized when a single field fails.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import IO, Any, Callable, Dict, Iterable, Mapping, Optional, Union
from urllib.parse import unquote, urlparse

import requests

from uploadkit.adapters.storage import StorageBackend
from uploadkit.config import Settings
from uploadkit.domain.errors import (
    EntryNotFound,
    InvalidOptions,
    IOFailure,
    TransferIncomplete,
    UnsupportedType,
    UploadError,
)
from uploadkit.domain.models import (
    Anchor,
    BatchResult,
    EntryState,
    EntryView,
    FlipAxis,
    FormFile,
    SourceKind,
    TransformDescriptor,
    TransformRequest,
    UploadEntry,
)
from uploadkit.security.scanning import ClamscanScanner, Scanner
from uploadkit.services import geometry
from uploadkit.services.audit import AuditLog, audit_log
from uploadkit.services.mime_registry import SNIFF_BYTES, MimeRegistry, extension_of
from uploadkit.services.naming import (
    DirectoryLocks,
    directory_locks,
    format_name,
    resolve_destination,
)
from uploadkit.services.transform import Dimensions, TransformExecutor, dimensions
from uploadkit.services.validator import Validator

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
MOVED_SUFFIX = "_moved"

NameFormatter = Callable[[str, str, UploadEntry], str]
NameOption = Union[str, NameFormatter, None]

TRANSFORMABLE_STATES = frozenset(
    {EntryState.MATERIALIZED, EntryState.TRANSFORMED, EntryState.RECORDED}
)


def _with_ext(name: str, ext: str) -> str:
    """Make sure `name` ends in `.ext`; the original extension always wins."""
    if not ext or extension_of(name) == ext:
        return name
    return f"{name}.{ext}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class IngestionPipeline:
    """Ingests form fields, streams, local files and remote URLs."""

    def __init__(
        self,
        settings: Settings,
        registry: Optional[MimeRegistry] = None,
        scanner: Optional[Scanner] = None,
        executor: Optional[TransformExecutor] = None,
        locks: Optional[DirectoryLocks] = None,
        audit: Optional[AuditLog] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.registry = registry or MimeRegistry.default()
        if scanner is None and settings.scan_enabled:
            scanner = ClamscanScanner()
        self.validator = Validator(
            self.registry,
            max_bytes=settings.max_file_bytes,
            scanner=scanner,
            scan_enabled=settings.scan_enabled,
            scan_fail_open=settings.scan_fail_open,
        )
        self.executor = executor or TransformExecutor()
        self.locks = locks or directory_locks
        self.audit = audit or audit_log
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.base_dir = Path(settings.base_dir).resolve()
        self.final_dir = settings.upload_root
        self.entries: Dict[str, UploadEntry] = {}

    # Directories and paths

    def format_path(self, path: Union[str, os.PathLike[str]]) -> Path:
        """Return `path` anchored at the base directory unless it already is."""
        candidate = Path(path)
        if candidate.is_absolute():
            resolved = candidate.resolve()
            if resolved == self.base_dir or self.base_dir in resolved.parents:
                return resolved
            candidate = Path(str(candidate).lstrip("/"))
        resolved = (self.base_dir / candidate).resolve()
        if resolved != self.base_dir and self.base_dir not in resolved.parents:
            raise InvalidOptions("Invalid storage path detected", code="path_traversal")
        return resolved

    def check_directory(self, directory: Optional[str] = None) -> Path:
        """Create the destination directory if needed and make it current."""
        relative = (directory or self.settings.upload_dir).strip("/")
        final_dir = self.format_path(relative)
        try:
            final_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IOFailure(f"Could not create {final_dir}: {exc}") from exc
        self.final_dir = final_dir
        return final_dir

    # Registering sources

    def add_form_file(self, field: str, form_file: FormFile) -> UploadEntry:
        entry = UploadEntry(
            field=field,
            name=form_file.name,
            source=SourceKind.FORM,
            source_location=str(form_file.path),
            ext=extension_of(form_file.name),
            mime_type=form_file.content_type,
            size=form_file.size,
            error_code=form_file.error,
        )
        self.entries[field] = entry
        return entry

    def add_form_files(self, files: Mapping[str, FormFile]) -> None:
        for field, form_file in files.items():
            self.add_form_file(field, form_file)

    def add_stream(self, field: str, name: str, stream: IO[bytes]) -> UploadEntry:
        """Stage a raw request body (AJAX upload) into the temp directory."""
        temp_dir = Path(self.settings.temp_dir)
        temp_dir.mkdir(parents=True, exist_ok=True)
        if hasattr(stream, "seek"):
            stream.seek(0)

        try:
            with tempfile.NamedTemporaryFile(
                dir=temp_dir, prefix="uploadkit-", delete=False
            ) as staged:
                shutil.copyfileobj(stream, staged, CHUNK_SIZE)
                size = staged.tell()
        except OSError as exc:
            raise IOFailure(f"Could not stage stream for {field}: {exc}") from exc

        with open(staged.name, "rb") as handle:
            head = handle.read(SNIFF_BYTES)

        entry = UploadEntry(
            field=field,
            name=name,
            source=SourceKind.STREAM,
            source_location=staged.name,
            ext=extension_of(name),
            mime_type=self.registry.mime_type_of(name, data=head, inspect_content=False),
            size=size,
        )
        self.entries[field] = entry
        return entry

    def entry(self, field: str) -> UploadEntry:
        try:
            return self.entries[field]
        except KeyError:
            raise EntryNotFound(f"No upload named {field!r} in this request") from None

    # State transitions

    def _display_name(self, entry: UploadEntry, name: NameOption) -> str:
        if callable(name):
            entry.custom_name = name(entry.name, entry.field, entry)
            return _with_ext(entry.custom_name, entry.ext)
        if name:
            return _with_ext(name, entry.ext)
        if entry.custom_name:
            return _with_ext(entry.custom_name, entry.ext)
        return entry.name

    def _probe(self, entry: UploadEntry, path: Path) -> Dimensions:
        found = dimensions(path)
        entry.width, entry.height = found.width, found.height
        return found

    def _reserve(
        self,
        entry: UploadEntry,
        name: NameOption,
        overwrite: bool,
        append: Optional[str] = None,
        prepend: Optional[str] = None,
    ) -> Path:
        dest = self.locks.reserve_destination(
            self.final_dir,
            self._display_name(entry, name),
            overwrite=overwrite,
            append=append,
            prepend=prepend,
            max_length=self.settings.max_name_length,
            fallback_ext=entry.ext,
        )
        entry.path = dest
        entry.state = EntryState.DESTINATION_RESOLVED
        return dest

    def _materialize(self, entry: UploadEntry, dest: Path, delete_source: bool = False) -> None:
        source = Path(entry.source_location)
        try:
            if entry.source is SourceKind.FORM:
                try:
                    os.replace(source, dest)
                except OSError:
                    shutil.copyfile(source, dest)
            else:
                shutil.copyfile(source, dest)
                if entry.source is SourceKind.STREAM or delete_source:
                    source.unlink(missing_ok=True)
        except OSError as exc:
            raise IOFailure(f"Could not write {dest.name}: {exc}") from exc

        entry.size = dest.stat().st_size
        entry.uploaded_at = _now()
        entry.state = EntryState.MATERIALIZED

    def _reject(self, entry: UploadEntry, error: UploadError) -> None:
        if entry.path is not None and entry.state in (
            EntryState.DESTINATION_RESOLVED,
            EntryState.MATERIALIZED,
        ):
            entry.path.unlink(missing_ok=True)
        entry.path = None
        entry.reject(error)
        logger.warning("Rejected %s (%s): %s", entry.field, error.code, error.message)
        self.audit.log_event("entry_rejected", entry.field, code=error.code, name=entry.name)

    def _unexpected(self, entry: UploadEntry, exc: Exception) -> IOFailure:
        logger.exception("Unexpected failure while storing %s", entry.field)
        error = IOFailure(f"Could not store {entry.name or entry.field}: {exc}")
        self._reject(entry, error)
        return error

    def record(self, field: str) -> EntryView:
        """Mark the entry as recorded and return its public metadata."""
        entry = self.entry(field)
        if entry.state not in TRANSFORMABLE_STATES:
            raise InvalidOptions(f"Upload {field!r} is {entry.state.value}, not materialized")
        entry.state = EntryState.RECORDED
        self.audit.log_event(
            "entry_recorded", entry.field, path=entry.path, group=entry.group, size=entry.size
        )
        return entry.public_view(self.base_dir)

    # Ingestion

    def upload(
        self,
        field: str,
        name: NameOption = None,
        overwrite: bool = False,
        append: Optional[str] = None,
        prepend: Optional[str] = None,
    ) -> EntryView:
        """Validate and store a form or stream field."""
        entry = self.entry(field)
        if entry.state is not EntryState.PENDING:
            raise InvalidOptions(f"Upload {field!r} was already processed")
        if not entry.ext:
            entry.ext = self.registry.extension_for(entry.mime_type) or ""

        try:
            self.validator.validate(entry)
            if entry.is_image and entry.source is SourceKind.FORM:
                self._probe(entry, Path(entry.source_location))
            dest = self._reserve(entry, name, overwrite, append, prepend)
            self._materialize(entry, dest)
            if entry.is_image and entry.source is not SourceKind.FORM:
                self._probe(entry, dest)
        except UploadError as exc:
            self._reject(entry, exc)
            raise
        except Exception as exc:
            raise self._unexpected(entry, exc) from exc

        logger.info("Stored %s as %s", entry.field, entry.path)
        return self.record(field)

    def upload_all(
        self,
        fields: Optional[Iterable[str]] = None,
        overwrite: bool = False,
        rollback: bool = True,
        workers: Optional[int] = None,
    ) -> BatchResult:
        """
        Upload several fields as one batch.

        Sequential batches stop at the first failure. With `rollback` (the
        default) every file the batch already materialized is deleted once
        all workers are done, so a failed batch leaves nothing behind.
        """
        fields = list(fields) if fields else list(self.entries)
        workers = workers or self.settings.workers
        result = BatchResult()
        self.check_directory()

        def _run(field: str) -> None:
            try:
                result.entries[field] = self.upload(field, overwrite=overwrite)
            except UploadError as exc:
                result.failures[field] = exc
            except Exception as exc:
                logger.exception("Batch worker failed for %s", field)
                result.failures[field] = IOFailure(f"Upload of {field!r} failed: {exc}")

        if workers <= 1:
            for field in fields:
                _run(field)
                if result.failures:
                    break
        else:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(_run, field) for field in fields]
                wait(futures)
            for future in futures:
                future.result()

        if result.failures and rollback:
            for field in list(result.entries):
                entry = self.entries[field]
                if entry.path is not None:
                    entry.path.unlink(missing_ok=True)
                entry.path = None
                entry.state = EntryState.ROLLED_BACK
                result.rolled_back.append(field)
            result.entries.clear()
            logger.warning("Rolled back %d upload(s) after batch failure", len(result.rolled_back))
            self.audit.log_event(
                "batch_rolled_back",
                None,
                fields=",".join(result.rolled_back),
                failed=",".join(result.failures),
            )

        return result

    def import_local(
        self,
        path: Union[str, os.PathLike[str]],
        name: NameOption = None,
        overwrite: bool = False,
        delete: bool = False,
    ) -> EntryView:
        """Copy a file from the local filesystem into the upload directory."""
        source = Path(path)
        if not source.is_file():
            raise IOFailure(f"{source} does not exist", code="source_missing", status=404)
        self.check_directory()

        entry = UploadEntry(
            field=source.name,
            name=source.name,
            source=SourceKind.LOCAL_IMPORT,
            source_location=str(source.resolve()),
            ext=extension_of(source.name),
            mime_type=self.registry.mime_type_of(source),
            size=source.stat().st_size,
        )
        self.entries[entry.field] = entry

        try:
            self.validator.validate(entry, is_import=True)
            if entry.is_image:
                self._probe(entry, source)
            dest = self._reserve(entry, name, overwrite)
            self._materialize(entry, dest, delete_source=delete)
        except UploadError as exc:
            self._reject(entry, exc)
            raise
        except Exception as exc:
            raise self._unexpected(entry, exc) from exc

        logger.info("Imported %s as %s", source, entry.path)
        return self.record(entry.field)

    def import_remote(self, url: str, name: NameOption = None, overwrite: bool = False) -> EntryView:
        """Download `url` into the upload directory."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidOptions(f"Only absolute http(s) URLs can be imported, got {url!r}")
        basename = unquote(PurePosixPath(parsed.path).name)
        if not basename:
            raise InvalidOptions(f"Cannot derive a file name from {url!r}")
        self.check_directory()

        entry = UploadEntry(
            field=basename,
            name=basename,
            source=SourceKind.REMOTE_IMPORT,
            source_location=url,
            ext=extension_of(basename),
            mime_type=self.registry.mime_type_of(basename, inspect_content=False),
        )
        self.entries[entry.field] = entry

        try:
            self.validator.validate(entry, is_import=True)
            dest = self._reserve(entry, name, overwrite)
            self._download(entry, url, dest)
            if entry.is_image:
                self._probe(entry, dest)
        except UploadError as exc:
            self._reject(entry, exc)
            raise
        except Exception as exc:
            raise self._unexpected(entry, exc) from exc

        logger.info("Imported %s as %s", url, entry.path)
        return self.record(entry.field)

    def _download(self, entry: UploadEntry, url: str, dest: Path) -> None:
        max_bytes = self.validator.max_bytes
        size = 0
        try:
            with self.session.get(url, stream=True, timeout=self.settings.remote_timeout) as response:
                response.raise_for_status()
                with dest.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        size += len(chunk)
                        if max_bytes is not None and size > max_bytes:
                            entry.size = size
                            self.validator.check_size(entry)
                        handle.write(chunk)
        except requests.RequestException as exc:
            raise IOFailure(f"Could not fetch {url}: {exc}", status=502) from exc
        except OSError as exc:
            raise IOFailure(f"Could not write {dest.name}: {exc}") from exc

        entry.size = size
        entry.uploaded_at = _now()
        entry.state = EntryState.MATERIALIZED
        if size <= 0:
            raise TransferIncomplete(f"Nothing was downloaded from {url}")

        sniffed = self.registry.mime_type_of(dest)
        if sniffed and self.registry.lookup(entry.ext, sniffed) is None:
            raise UnsupportedType(f"Downloaded content is {sniffed}, not .{entry.ext}")
        self.validator.check_scan(entry, dest)

    # Transforms

    def _transform(
        self,
        field: str,
        build: Callable[[UploadEntry], TransformDescriptor],
        quality: int,
        append: Optional[str],
        prepend: Optional[str],
        explicit: bool,
    ) -> Union[str, Dict[str, Any]]:
        entry = self.entry(field)
        if not entry.is_image or entry.state not in TRANSFORMABLE_STATES or entry.path is None:
            raise InvalidOptions(f"Upload {field!r} is not a stored image")
        if not 0 <= quality <= 100:
            raise InvalidOptions(f"Quality must be between 0 and 100, got {quality}")

        descriptor = build(entry).with_quality(quality)
        suffix = descriptor.append if append is None else append
        directory = entry.path.parent
        options = {
            "append": suffix,
            "prepend": prepend,
            "max_length": self.settings.max_name_length,
            "fallback_ext": entry.ext,
        }

        with self.locks.lock_for(directory):
            candidate = directory / format_name(entry.path.name, **options)
            if candidate.resolve() == entry.path.resolve():
                raise InvalidOptions("Transform output would replace the original file")
            target = resolve_destination(directory, entry.path.name, overwrite=True, **options)

        self.executor.apply_to_file(entry.path, entry.mime_type or entry.ext, descriptor.with_target(target))

        label = (suffix or descriptor.append).strip("_") or descriptor.label
        entry.derived[label] = target
        entry.state = EntryState.TRANSFORMED
        self.audit.log_event(
            "transform_applied",
            entry.field,
            label=label,
            width=descriptor.width,
            height=descriptor.height,
        )

        public = entry.public_view(self.base_dir).derived[label]
        if explicit:
            return {"path": public, "width": descriptor.width, "height": descriptor.height}
        return public

    def resize(
        self,
        field: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        quality: int = 100,
        append: Optional[str] = None,
        prepend: Optional[str] = None,
        expand: bool = False,
        aspect: bool = True,
        explicit: bool = False,
    ):
        return self._transform(
            field,
            lambda e: geometry.resize(e.width, e.height, width, height, expand=expand, aspect=aspect),
            quality,
            append,
            prepend,
            explicit,
        )

    def crop(
        self,
        field: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        anchor: Anchor = Anchor.CENTER,
        quality: int = 100,
        append: Optional[str] = None,
        prepend: Optional[str] = None,
        explicit: bool = False,
    ):
        return self._transform(
            field,
            lambda e: geometry.crop(e.width, e.height, width, height, anchor=anchor),
            quality,
            append,
            prepend,
            explicit,
        )

    def scale(
        self,
        field: str,
        percent: float = 0.5,
        quality: int = 100,
        append: Optional[str] = None,
        prepend: Optional[str] = None,
        explicit: bool = False,
    ):
        return self._transform(
            field,
            lambda e: geometry.scale(e.width, e.height, percent),
            quality,
            append,
            prepend,
            explicit,
        )

    def flip(
        self,
        field: str,
        axis: FlipAxis = FlipAxis.VERTICAL,
        quality: int = 100,
        append: Optional[str] = None,
        prepend: Optional[str] = None,
        explicit: bool = False,
    ):
        return self._transform(
            field,
            lambda e: geometry.flip(e.width, e.height, axis),
            quality,
            append,
            prepend,
            explicit,
        )

    def apply_transform(self, field: str, request: TransformRequest, explicit: bool = False):
        handler = getattr(self, request.kind)
        return handler(field, explicit=explicit, **request.options())

    # File operations

    def dimensions(self, path: Union[str, os.PathLike[str]]) -> Dimensions:
        return dimensions(self.format_path(path))

    def delete(self, path: Union[str, os.PathLike[str]]) -> bool:
        """Delete a file relative to the base directory."""
        target = self.format_path(path)
        if not target.is_file():
            return False
        target.unlink()
        return True

    def move(
        self,
        orig_path: Union[str, os.PathLike[str]],
        dest_path: Union[str, os.PathLike[str]],
        overwrite: bool = False,
    ) -> bool:
        """
        Move a file inside the base directory.

        An existing destination is deleted with `overwrite`, otherwise it is
        first moved aside under a `_moved` name.
        """
        orig = self.format_path(orig_path)
        dest = self.format_path(dest_path)
        if orig == dest or not orig.is_file() or not os.access(dest.parent, os.W_OK):
            return False

        with self.locks.lock_for(dest.parent):
            if dest.exists():
                if overwrite:
                    dest.unlink()
                else:
                    aside = resolve_destination(dest.parent, dest.name, append=MOVED_SUFFIX)
                    os.replace(dest, aside)
            os.replace(orig, dest)
        return True

    rename = move

    def transfer(
        self, field: str, storage: StorageBackend, bucket: str, delete_local: bool = True
    ) -> str:
        """
        Hand a stored file to the storage collaborator and return its URL.

        A transformed entry is recorded first; derived files stay local.
        """
        entry = self.entry(field)
        if entry.state is EntryState.TRANSFORMED:
            self.record(field)
        if entry.state is not EntryState.RECORDED or entry.path is None:
            raise InvalidOptions(f"Upload {field!r} must be recorded before transfer")

        url = storage.store(entry.path, bucket, entry.path.name)
        entry.url = url
        if delete_local:
            entry.path.unlink(missing_ok=True)
        self.audit.log_event("transferred", entry.field, bucket=bucket, url=url)
        return url

    def cleanup(self) -> None:
        """Remove staged temp files and close the HTTP session this pipeline opened."""
        for entry in self.entries.values():
            if entry.source in (SourceKind.FORM, SourceKind.STREAM):
                Path(entry.source_location).unlink(missing_ok=True)
        if self._owns_session:
            self.session.close()
