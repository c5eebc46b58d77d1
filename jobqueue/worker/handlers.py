"""
Job handlers registry and built-in diagnostic handlers.

Handlers are looked up by job kind. They must be idempotent: a job whose
lease expires is claimed again, so a handler may run more than once for
the same job.
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Awaitable, Callable

from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]

# Handler registry
_handlers: dict[str, JobHandler] = {}


def register_handler(kind: str) -> Callable[[JobHandler], JobHandler]:
    """
    Decorator to register a job handler.

    Args:
        kind: The job kind this handler processes.

    Returns:
        Decorator function.

    Example:
        @register_handler("deploy")
        async def handle_deploy(context: JobContext) -> JobResult:
            ...
    """
    def decorator(handler: JobHandler) -> JobHandler:
        _handlers[kind] = handler
        logger.debug("Registered handler", extra={"kind": kind})
        return handler
    return decorator


def get_handler(kind: str, handlers: Mapping[str, JobHandler] | None = None) -> JobHandler | None:
    """
    Get the handler for a job kind.

    Args:
        kind: The job kind.
        handlers: Lookup table to use instead of the global registry.

    Returns:
        The handler function or None if not found.
    """
    table = _handlers if handlers is None else handlers
    return table.get(kind)


def list_handlers() -> list[str]:
    """List all registered job kinds."""
    return list(_handlers.keys())


# ============================================================================
# Built-in job handlers
# ============================================================================


@register_handler("echo")
async def handle_echo(context: JobContext) -> JobResult:
    """Return the payload unchanged."""
    return JobResult(
        success=True,
        output={"echo": context.payload},
    )


@register_handler("sleep")
async def handle_sleep(context: JobContext) -> JobResult:
    """
    Sleep handler for exercising leases.

    Payload may contain:
    - duration_seconds: How long to sleep (default 1)

    Stops early when the worker reports the lease as lost.
    """
    payload = context.payload if isinstance(context.payload, dict) else {}
    duration = float(payload.get("duration_seconds", 1))

    try:
        await asyncio.wait_for(context.lease_lost.wait(), timeout=duration)
    except asyncio.TimeoutError:
        return JobResult(success=True, output={"slept_for": duration})

    return JobResult(success=False, error="lease lost before sleep finished")


@register_handler("failing_job")
async def handle_failing_job(context: JobContext) -> JobResult:
    """Handler that always fails, for exercising retry and backoff."""
    return JobResult(
        success=False,
        error=f"Intentional failure on attempt {context.attempt}",
    )


async def execute_job(
    context: JobContext,
    handlers: Mapping[str, JobHandler] | None = None,
) -> JobResult:
    """
    Execute a job using the handler registered for its kind.

    Handler exceptions are converted to failed results.

    Args:
        context: The job context.
        handlers: Lookup table to use instead of the global registry.

    Returns:
        JobResult from the handler.
    """
    handler = get_handler(context.kind, handlers)

    if handler is None:
        logger.error(
            "No handler for job kind",
            extra={"job_id": context.job_id, "kind": context.kind},
        )
        return JobResult(
            success=False,
            error=f"No handler registered for job kind: {context.kind}",
        )

    try:
        return await handler(context)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": context.job_id, "kind": context.kind},
        )
        return JobResult(
            success=False,
            error=f"Handler exception: {e}",
        )
