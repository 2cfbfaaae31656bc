from __future__ import annotations

from typing import Any, Callable, TypeVar

from catalogauth.logging import get_logger
from catalogauth.service.errors import ConflictError, TransientError
from catalogauth.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    operation: str,
    fn: Callable[..., T],
    *args: Any,
    retries: int = 1,
    **kwargs: Any,
) -> T:
    """Run a store call, retrying only ``StoreUnavailable``.

    After ``retries`` extra attempts the failure surfaces as ``TransientError``
    (503). Constraint violations become ``ConflictError``; every other
    exception propagates untouched and is never retried.
    """
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except StoreUnavailable as exc:
            if attempt >= retries:
                logger.error(
                    "store_call_failed",
                    operation=operation,
                    attempts=attempt + 1,
                    error=exc.message,
                )
                raise TransientError(
                    "session store temporarily unavailable",
                    detail={"operation": operation},
                ) from exc
            attempt += 1
            logger.warning(
                "store_call_retry",
                operation=operation,
                attempt=attempt,
                error=exc.message,
            )
