"""Idempotency support for API endpoints.

Settlement endpoints move money, so a double-submitted request must not
charge or credit twice. ``check_idempotency`` looks at the
``Idempotency-Key`` header: if a cached response exists it is returned as a
JSONResponse; otherwise the key is reserved and an ``IdempotencyResult`` is
returned so the endpoint can call ``record_idempotency_response`` when done.
"""

from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from billing_ops.repositories.idempotency_repository import IdempotencyRepository


@dataclass
class IdempotencyResult:
    """Holds pending idempotency key info for later recording."""

    key: str
    method: str
    path: str


def check_idempotency(
    request: Request,
    db: Session,
) -> JSONResponse | IdempotencyResult | None:
    """Check the ``Idempotency-Key`` header for a cached response.

    Returns:
        - ``None`` if no ``Idempotency-Key`` header is present (no idempotency).
        - A ``JSONResponse`` with the cached response and ``Idempotency-Replayed: true``
          header if a completed record already exists.
        - A 409 ``JSONResponse`` if the key is reserved by a request still in flight.
        - An ``IdempotencyResult`` with the key details if this is a new request that
          should be recorded after processing.
    """
    key = request.headers.get("Idempotency-Key")
    if not key:
        return None

    repo = IdempotencyRepository(db)
    existing = repo.get_by_key(key)

    if existing is not None and existing.response_status is not None:
        response = JSONResponse(
            content=existing.response_body,
            status_code=int(existing.response_status),
        )
        response.headers["Idempotency-Replayed"] = "true"
        return response

    if existing is not None:
        return JSONResponse(
            content={"detail": "A request with this Idempotency-Key is still being processed"},
            status_code=409,
        )

    repo.create(
        idempotency_key=key,
        request_method=request.method,
        request_path=request.url.path,
    )
    return IdempotencyResult(
        key=key,
        method=request.method,
        path=request.url.path,
    )


def record_idempotency_response(
    db: Session,
    key: str,
    status: int,
    body: dict[str, Any],
) -> None:
    """Persist the endpoint response so subsequent calls return the cached result."""
    repo = IdempotencyRepository(db)
    record = repo.get_by_key(key)
    if record is not None:
        repo.update_response(record, status, body)


def release_idempotency_key(db: Session, key: str) -> None:
    """Drop a reserved key after a failed request so the client may retry."""
    db.rollback()
    repo = IdempotencyRepository(db)
    record = repo.get_by_key(key)
    if record is not None and record.response_status is None:
        repo.delete(record)
