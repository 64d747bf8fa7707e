"""SIGTERM / SIGINT handling for the sync service.

A signal only sets the shared shutdown event. The poll loop, the sync
engine and the HTTP server each watch that event and wind down on their
own; nothing is cancelled mid-message.
"""

from __future__ import annotations

import asyncio
import signal

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Register SIGTERM and SIGINT handlers that set *shutdown_event*.

    Call this once from the running event loop.  A sync pass in progress
    sees the event between connections, folders and fetch batches, so
    the message being stored always completes and its cursor is saved
    before the process exits.  A second signal is logged and ignored.
    """
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.info("shutdown_already_requested", signal=sig.name)
            return
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _handle, sig)


def remove_signal_handlers() -> None:
    """Restore default signal handling; called once the service has stopped."""
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
