from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from gatekeep.logging import get_logger, sanitize_error_message
from gatekeep.service.errors import DependencyError, ServiceError
from gatekeep.storage.errors import ConstraintViolation, RecordNotFound

logger = get_logger(__name__)

T = TypeVar("T")

# Outcomes the callers branch on; everything else is a store fault
_PASSTHROUGH = (ServiceError, ConstraintViolation, RecordNotFound)


async def call_store(fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run a synchronous store method off the event loop with an upper bound."""
    operation = getattr(fn, "__name__", "store_call")
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise DependencyError(
            "credential store timed out",
            detail={"operation": operation, "reason": "timeout"},
        ) from exc
    except _PASSTHROUGH:
        raise
    except Exception as exc:
        logger.error(
            "store_call_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        raise DependencyError(
            "credential store unavailable",
            detail={
                "operation": operation,
                "reason": "unreachable",
                "error": sanitize_error_message(str(exc)),
            },
        ) from exc


async def call_notifier(fn: Callable[..., bool], *args: Any, timeout: float) -> bool:
    """Deliver through a blocking notifier; any failure or timeout reads as ``False``."""
    try:
        return bool(await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout))
    except asyncio.TimeoutError:
        logger.error("notifier_timeout", timeout=timeout)
        return False
    except Exception as exc:
        logger.error(
            "notifier_failed",
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return False
