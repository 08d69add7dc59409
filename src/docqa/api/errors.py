"""Translate core exceptions into HTTP responses."""
from __future__ import annotations

import math
from typing import Dict, Type

from fastapi import HTTPException

from ..errors import (
    DocQAError,
    DocumentNotFound,
    EmbeddingUnavailable,
    IdempotencyConflict,
    IllegalTransition,
    RequestInProgress,
    UnsupportedFormat,
    ValidationFailed,
    VectorStoreUnavailableError,
)

_STATUS_BY_ERROR: Dict[Type[DocQAError], int] = {
    ValidationFailed: 422,
    UnsupportedFormat: 422,
    IdempotencyConflict: 409,
    IllegalTransition: 409,
    RequestInProgress: 503,
    EmbeddingUnavailable: 502,
    DocumentNotFound: 404,
    VectorStoreUnavailableError: 503,
}


def to_http_exception(error: DocQAError) -> HTTPException:
    status_code = 500
    for error_type, candidate in _STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            status_code = candidate
            break
    headers = None
    if isinstance(error, RequestInProgress):
        headers = {"Retry-After": str(max(1, math.ceil(error.retry_after)))}
    return HTTPException(
        status_code=status_code,
        detail={"code": error.code, "message": error.message, "retryable": error.retryable},
        headers=headers,
    )


__all__ = ["to_http_exception"]
