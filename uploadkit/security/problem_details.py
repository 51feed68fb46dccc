"""Helpers for generating RFC 7807 compliant error responses."""

from __future__ import annotations

from typing import Any, Mapping, MutableMapping
from uuid import uuid4

from fastapi.responses import JSONResponse

from uploadkit.domain.errors import UploadError

DEFAULT_TYPE = "about:blank"

TITLES: dict[str, str] = {
    "unsupported_media_type": "Unsupported file type",
    "transfer_incomplete": "Incomplete upload",
    "payload_too_large": "File too large",
    "rejected_by_scan": "File rejected by scanner",
    "invalid_options": "Invalid options",
    "invalid_geometry": "Invalid image geometry",
    "unsupported_format": "Unsupported image format",
    "io_failure": "Storage failure",
    "destination_conflict": "Destination conflict",
    "entry_not_found": "Upload not found",
    "path_traversal": "Invalid storage path",
}


def _ensure_headers(headers: Mapping[str, str] | None) -> MutableMapping[str, str]:
    """Return a mutable copy of headers or an empty dict."""
    return dict(headers or {})


def problem_response(
    *,
    status: int,
    title: str,
    detail: str,
    type_: str = DEFAULT_TYPE,
    instance: str | None = None,
    extras: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    correlation_id: str | None = None,
) -> JSONResponse:
    """
    Produce an RFC 7807 compliant JSON response.

    The correlation id is mirrored in the `X-Correlation-ID` header so that
    a rejected upload can be traced end-to-end.
    """
    cid = correlation_id or str(uuid4())
    payload: dict[str, Any] = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "correlation_id": cid,
    }
    if instance:
        payload["instance"] = instance
    if extras:
        payload.update(extras)

    response_headers = _ensure_headers(headers)
    response_headers.setdefault("X-Correlation-ID", cid)
    return JSONResponse(status_code=status, content=payload, headers=response_headers)


def upload_problem(
    error: UploadError,
    *,
    instance: str | None = None,
    extras: Mapping[str, Any] | None = None,
    correlation_id: str | None = None,
) -> JSONResponse:
    """Render an `UploadError` as problem details carrying its `code`."""
    payload: dict[str, Any] = {"code": error.code}
    if extras:
        payload.update(extras)
    return problem_response(
        status=error.status,
        title=TITLES.get(error.code, "Invalid upload"),
        detail=error.message,
        instance=instance,
        extras=payload,
        correlation_id=correlation_id,
    )
