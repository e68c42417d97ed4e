"""
api/errors.py -- Building and funnelling HTTP errors for route handlers.

api_error() turns an error kind from core.errors.ERROR_STATUS into an
HTTPException whose detail is the {code, message} dict that the
http_exception_handler in api/main.py wraps in the ErrorResponse envelope.

error_boundary() is the single converter every vortex, role and invitation
handler runs inside. HTTPExceptions raised in the block pass through
untouched; anything else is logged with its traceback and replaced by a 500
carrying the endpoint's fixed *_FAILED message.

Layer rule: imports only from fastapi, stdlib, and core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException

from core.errors import ERROR_STATUS

logger = logging.getLogger("cosmos.api")


def api_error(kind: str, message: str) -> HTTPException:
    """Return (not raise) an HTTPException for the given error kind."""
    return HTTPException(
        status_code=ERROR_STATUS[kind],
        detail={"code": kind.lower(), "message": message},
    )


@contextmanager
def error_boundary(message: str, **context: object) -> Iterator[None]:
    """Convert unexpected exceptions raised inside the block into a 500.

    Usage:
        with error_boundary(VORTEX_ERROR_CODES["VIOLATION_CREATE_FAILED"], endpoint="create-violation"):
            ...
    """
    try:
        yield
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception(
            "Unexpected error (%s)",
            ", ".join(f"{k}={v}" for k, v in context.items()) or "no context",
        )
        raise api_error("INTERNAL_SERVER_ERROR", message) from exc
