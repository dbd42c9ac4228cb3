"""Background task helpers that never let a failure escape unlogged."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Iterable, Optional

logger = logging.getLogger(__name__)


def setup_global_exception_handler() -> None:
    """Log exceptions from tasks nobody awaited instead of printing them."""

    def handle_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exception = context.get("exception")
        message = context.get("message", "Unhandled exception in async task")
        if exception:
            logger.error("Asyncio exception handler caught: %s", message, exc_info=exception)
        else:
            logger.error("Asyncio exception handler caught: %s (context: %s)", message, context)

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running loop to install exception handler yet")
        return
    loop.set_exception_handler(handle_exception)


def safe_background_task(
    task_name: str,
    task_coro: Coroutine[Any, Any, Any],
    *,
    daemon: bool = True,
) -> asyncio.Task:
    """
    Create a named task whose failures are logged.

    Args:
        task_name: Human-readable name for logs and `Task.get_name()`
        task_coro: The coroutine to run
        daemon: If True, cancellation is swallowed instead of re-raised
    """

    async def wrapped() -> Any:
        try:
            return await task_coro
        except asyncio.CancelledError:
            logger.debug("Background task '%s' cancelled", task_name)
            if not daemon:
                raise
        except Exception:
            logger.exception("Background task '%s' failed with unhandled exception", task_name)
            raise

    return asyncio.create_task(wrapped(), name=task_name)


async def cancel_tasks(tasks: Iterable[Optional[asyncio.Task]], *, timeout: float = 5.0) -> None:
    """Cancel tasks and wait (bounded) for them to unwind."""

    pending = [task for task in tasks if task is not None and not task.done()]
    for task in pending:
        task.cancel()
    if not pending:
        return
    try:
        await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Timeout waiting for %d background tasks to shut down after %.1fs",
            len(pending),
            timeout,
        )


__all__ = ["cancel_tasks", "safe_background_task", "setup_global_exception_handler"]
