"""Failure taxonomy for tokenized media delivery.

Core components never raise for expected failures; they hand back one of these
kinds and the endpoint decides what the client sees. Whatever the kind, the
response only carries a generic detail - the reason stays in the server log.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from fastapi import HTTPException, status

logger = logging.getLogger(__name__)


class StreamFailure(str, Enum):
    MALFORMED_TOKEN = "MalformedToken"
    INVALID_SIGNATURE = "InvalidSignature"
    EXPIRED_TOKEN = "ExpiredToken"
    SUBJECT_MISMATCH = "SubjectMismatch"
    RESOURCE_NOT_FOUND = "ResourceNotFound"
    RANGE_UNSATISFIABLE = "RangeUnsatisfiable"
    ORIGIN_REJECTED = "OriginRejected"
    UPSTREAM_FETCH_FAILURE = "UpstreamFetchFailure"


# Upstream failures surface as 404 so the backend topology stays hidden.
HTTP_STATUS = {
    StreamFailure.MALFORMED_TOKEN: status.HTTP_403_FORBIDDEN,
    StreamFailure.INVALID_SIGNATURE: status.HTTP_403_FORBIDDEN,
    StreamFailure.EXPIRED_TOKEN: status.HTTP_403_FORBIDDEN,
    StreamFailure.SUBJECT_MISMATCH: status.HTTP_403_FORBIDDEN,
    StreamFailure.ORIGIN_REJECTED: status.HTTP_403_FORBIDDEN,
    StreamFailure.RESOURCE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    StreamFailure.UPSTREAM_FETCH_FAILURE: status.HTTP_404_NOT_FOUND,
    StreamFailure.RANGE_UNSATISFIABLE: status.HTTP_416_RANGE_NOT_SATISFIABLE,
}

GENERIC_DETAIL = {
    status.HTTP_401_UNAUTHORIZED: "Unauthorized",
    status.HTTP_403_FORBIDDEN: "Forbidden",
    status.HTTP_404_NOT_FOUND: "Not Found",
    status.HTTP_416_RANGE_NOT_SATISFIABLE: "Range Not Satisfiable",
}


def reject(
    failure: StreamFailure,
    *,
    context: str = "",
    status_code: Optional[int] = None,
    detail: Optional[str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    """Log *failure* server-side and build the HTTPException the client gets.

    ``status_code`` overrides the default mapping (preload grants answer 401
    rather than 403). ``detail`` should only be set by the legacy filename
    endpoint, which is known to echo the reason.
    """
    code = status_code or HTTP_STATUS[failure]
    if failure is StreamFailure.UPSTREAM_FETCH_FAILURE:
        logger.error("Upstream fetch failed (%s): %s", failure.value, context)
    elif failure is StreamFailure.RESOURCE_NOT_FOUND:
        logger.info("Resource not found: %s", context)
    else:
        logger.warning("Request rejected (%s): %s", failure.value, context)
    return HTTPException(
        status_code=code,
        detail=detail or GENERIC_DETAIL.get(code, "Forbidden"),
        headers=headers,
    )
