"""FastAPI application exposing the ingestion pipeline."""

import json
import logging
import secrets
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from fastapi import FastAPI, File, Form, Query, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pydantic import TypeAdapter, ValidationError
from starlette.datastructures import UploadFile as StarletteUploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from uploadkit.adapters.storage import StorageBackend, storage_from_settings
from uploadkit.config import Settings
from uploadkit.domain.errors import InvalidOptions, UploadError
from uploadkit.domain.models import BatchResult, FormFile, RemoteImportRequest, TransformRequest
from uploadkit.security.problem_details import problem_response, upload_problem
from uploadkit.services.audit import audit_log
from uploadkit.services.ingestion import IngestionPipeline
from uploadkit.services.mime_registry import MimeRegistry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="uploadkit", description="File ingestion and image transform API", version="1.0.0")

settings = Settings.from_env()
mime_registry = MimeRegistry.default()

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

CHUNK_SIZE = 1024 * 1024
TRUE_VALUES = {"1", "true", "yes", "on"}
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'self'",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

transform_list = TypeAdapter(List[TransformRequest])


def _ensure_correlation_id(request: Request) -> str:
    """Return existing correlation id or generate a new one."""
    correlation_id = getattr(request.state, "correlation_id", None)
    if not correlation_id:
        correlation_id = request.headers.get("X-Correlation-ID") or secrets.token_urlsafe(16)
        request.state.correlation_id = correlation_id
    return correlation_id


def _problem_response(
    request: Request,
    *,
    status_code: int,
    title: str,
    detail: str,
    code: str,
    extras: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
):
    """Produce a RFC 7807 response with a stable correlation id."""
    payload = {"code": code}
    if extras:
        payload.update(extras)
    return problem_response(
        status=status_code,
        title=title,
        detail=detail,
        headers=headers,
        extras=payload,
        correlation_id=_ensure_correlation_id(request),
        instance=str(request.url.path),
    )


def _upload_problem(request: Request, error: UploadError, extras: dict[str, Any] | None = None):
    return upload_problem(
        error,
        instance=str(request.url.path),
        extras=extras,
        correlation_id=_ensure_correlation_id(request),
    )


def _new_pipeline() -> IngestionPipeline:
    return IngestionPipeline(settings, registry=mime_registry)


def _flag(value: Any, default: bool) -> bool:
    if value is None or isinstance(value, StarletteUploadFile):
        return default
    return str(value).strip().lower() in TRUE_VALUES


async def _stage(upload: StarletteUploadFile) -> FormFile:
    """Copy a multipart file into the temp directory, reading at most max+1 bytes."""
    temp_dir = Path(settings.temp_dir)
    temp_dir.mkdir(parents=True, exist_ok=True)
    limit = settings.max_file_bytes + 1
    size = 0
    with tempfile.NamedTemporaryFile(dir=temp_dir, prefix="uploadkit-form-", delete=False) as staged:
        while size < limit:
            chunk = await upload.read(min(CHUNK_SIZE, limit - size))
            if not chunk:
                break
            staged.write(chunk)
            size += len(chunk)
    await upload.close()
    return FormFile(
        name=upload.filename or "",
        content_type=upload.content_type,
        path=Path(staged.name),
        size=size,
    )


def _parse_transforms(raw: str) -> List[TransformRequest]:
    try:
        return transform_list.validate_python(json.loads(raw or "[]"))
    except json.JSONDecodeError as exc:
        raise InvalidOptions(f"transforms must be a JSON list: {exc.msg}") from exc
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise InvalidOptions(f"Invalid transforms: {problems}") from exc


def _store_batch(
    pipeline: IngestionPipeline,
    overwrite: bool,
    rollback: bool,
    storage: Optional[StorageBackend],
) -> BatchResult:
    """Run a staged batch and hand every stored file to `storage` when one is given."""
    result = pipeline.upload_all(overwrite=overwrite, rollback=rollback)
    if result.ok and storage is not None:
        for field in list(result.entries):
            pipeline.transfer(field, storage, settings.storage_bucket)
            result.entries[field] = pipeline.entry(field).public_view(pipeline.base_dir)
    return result


def _store_image(
    pipeline: IngestionPipeline, field: str, overwrite: bool, requested: List[TransformRequest]
):
    """Store one staged image and apply `requested`, removing everything on failure."""
    pipeline.upload(field, overwrite=overwrite)
    try:
        results = [pipeline.apply_transform(field, item, explicit=True) for item in requested]
    except UploadError:
        entry = pipeline.entry(field)
        for path in [entry.path, *entry.derived.values()]:
            if path is not None:
                path.unlink(missing_ok=True)
        raise
    return pipeline.record(field), results


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    """Attach a correlation id and security headers to every response."""
    correlation_id = _ensure_correlation_id(request)
    response = await call_next(request)
    response.headers.setdefault("X-Correlation-ID", correlation_id)
    for header, value in SECURITY_HEADERS.items():
        response.headers[header] = value
    return response


# Exception handlers
@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    """Handle typed pipeline failures."""
    logger.warning("UploadError (%s): %s", exc.code, exc.message)
    return _upload_problem(request, exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Handle malformed request bodies and parameters."""
    errors = [
        {key: value for key, value in error.items() if key in ("loc", "msg", "type")}
        for error in exc.errors()
    ]
    logger.warning("Request validation failed: %s", errors)
    return _problem_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        title="Invalid request",
        detail="Request did not pass validation",
        code="validation_error",
        extras={"errors": json.loads(json.dumps(errors, default=str))},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTPException exceptions."""
    detail = exc.detail if isinstance(exc.detail, str) else "HTTP error"
    title = "HTTP error"
    code = "http_error"

    if exc.status_code == status.HTTP_404_NOT_FOUND:
        title = "Resource not found"
        code = "not_found"
        detail = "Requested resource was not found"
    elif exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
        title = "Method not allowed"
        code = "method_not_allowed"

    logger.warning("HTTPException (%s): %s", exc.status_code, detail)
    return _problem_response(
        request,
        status_code=exc.status_code,
        title=title,
        detail=detail,
        code=code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return _problem_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        title="Internal server error",
        detail="Internal server error",
        code="internal_error",
    )


# Upload endpoints
@app.post("/api/v1/uploads", status_code=status.HTTP_201_CREATED)
async def upload_files(request: Request):
    """Store every file field of a multipart form as one batch."""
    form = await request.form()
    overwrite = _flag(form.get("overwrite"), False)
    rollback = _flag(form.get("rollback"), True)
    storage = storage_from_settings(settings) if _flag(form.get("transfer"), False) else None

    pipeline = _new_pipeline()
    try:
        for key, value in form.multi_items():
            if not isinstance(value, StarletteUploadFile):
                continue
            field, number = key, 1
            while field in pipeline.entries:
                field = f"{key}.{number}"
                number += 1
            pipeline.add_form_file(field, await _stage(value))

        if not pipeline.entries:
            raise InvalidOptions("No files were uploaded")
        result = await run_in_threadpool(_store_batch, pipeline, overwrite, rollback, storage)
    finally:
        pipeline.cleanup()

    if not result.ok:
        field, error = next(iter(result.failures.items()))
        return _upload_problem(
            request,
            error,
            extras={
                "field": field,
                "failures": {name: failure.code for name, failure in result.failures.items()},
                "rolled_back": result.rolled_back,
            },
        )

    logger.info("Stored %d upload(s)", len(result.entries))
    return {"entries": {field: view.model_dump(mode="json") for field, view in result.entries.items()}}


@app.post("/api/v1/uploads/stream", status_code=status.HTTP_201_CREATED)
async def upload_stream(
    request: Request,
    filename: str = Query(..., min_length=1, max_length=255),
):
    """Store a raw request body (AJAX upload) under `filename`."""
    limit = settings.max_file_bytes + 1
    body = tempfile.SpooledTemporaryFile(max_size=CHUNK_SIZE)
    received = 0
    async for chunk in request.stream():
        if received >= limit:
            break
        body.write(chunk[: limit - received])
        received += len(chunk)

    pipeline = _new_pipeline()
    field = settings.ajax_field
    try:
        with body:
            await run_in_threadpool(pipeline.add_stream, field, filename, body)
        view = await run_in_threadpool(pipeline.upload, field)
    finally:
        pipeline.cleanup()

    return view.model_dump(mode="json")


@app.post("/api/v1/imports", status_code=status.HTTP_201_CREATED)
def import_remote(payload: RemoteImportRequest):
    """Fetch a remote file into the upload directory."""
    pipeline = _new_pipeline()
    try:
        view = pipeline.import_remote(payload.url, name=payload.name, overwrite=payload.overwrite)
    finally:
        pipeline.cleanup()
    return view.model_dump(mode="json")


@app.post("/api/v1/images", status_code=status.HTTP_201_CREATED)
async def upload_image(
    file: UploadFile = File(...),
    transforms: str = Form("[]"),
    overwrite: bool = Form(False),
):
    """Store one image and derive resized/cropped/scaled/flipped copies."""
    requested = _parse_transforms(transforms)
    pipeline = _new_pipeline()
    field = "file"
    try:
        pipeline.add_form_file(field, await _stage(file))
        view, results = await run_in_threadpool(_store_image, pipeline, field, overwrite, requested)
    finally:
        pipeline.cleanup()

    return {"entry": view.model_dump(mode="json"), "transforms": results}


# Health check
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/v1/audit-logs")
async def get_audit_logs(limit: int = Query(100, ge=1, le=1000)):
    """Get recent ingestion audit records."""
    return {"audit_logs": audit_log.get_logs(limit)}
