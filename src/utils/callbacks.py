"""Invoke user-supplied callbacks that may be plain functions or coroutines."""
import asyncio
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger().bind(component="callbacks")


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any, **log_context: Any) -> None:
    """Call ``callback(*args)``, awaiting it if needed.

    Callback failures are logged and never propagate into the caller's state
    machine.
    """
    if callback is None:
        return
    try:
        result = callback(*args)
        if asyncio.iscoroutine(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error("Callback failed",
                     callback=getattr(callback, "__qualname__", repr(callback)),
                     error=str(e), error_type=type(e).__name__, **log_context)
