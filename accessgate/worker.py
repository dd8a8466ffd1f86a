"""Standalone worker: audit flushing and view refreshing with graceful shutdown."""

from __future__ import annotations

import asyncio
import contextlib
import signal

from accessgate.core.config import get_settings
from accessgate.core.logging import get_logger
from accessgate.main import build_runtime, shutdown_runtime

logger = get_logger(__name__)

_shutdown: asyncio.Event | None = None


def _handle_signal() -> None:
    """Signal handler that triggers graceful shutdown."""
    logger.info("worker_shutdown_signal_received")
    if _shutdown is not None:
        _shutdown.set()


async def run_worker(*, max_cycles: int = 0) -> None:
    """Run the audit batcher and view refresher until a shutdown signal.

    Args:
        max_cycles: If >0, each loop exits after this many iterations (for testing).
                    If 0, run until shutdown signal.
    """
    global _shutdown  # noqa: PLW0603

    runtime = await build_runtime(get_settings())
    _shutdown = runtime.stop_event

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    logger.info(
        "worker_started",
        queue_key=runtime.audit.queue_key,
        refresh_interval_seconds=runtime.views.interval_seconds,
    )
    try:
        await asyncio.gather(
            runtime.audit.run(runtime.stop_event, max_cycles=max_cycles),
            runtime.views.run(runtime.stop_event, max_cycles=max_cycles),
        )
    finally:
        await shutdown_runtime(runtime)
        _shutdown = None
        logger.info("worker_stopped")
