"""
Process-level failure hooks.

- Unhandled asynchronous errors (the event loop's exception handler) are
  logged, the server is asked to shut down gracefully and the process exits
  with status 1.
- Uncaught exceptions (sys.excepthook) are logged and the process exits
  with status 1 immediately, without a graceful close.
"""
import asyncio
import os
import sys
from typing import Optional

from app.core.logging import process_logger


class ProcessGuard:
    def __init__(self, server=None):
        # uvicorn.Server when we own the server; None under an external runner
        self.server = server
        self.exit_code = 0
        self._previous_excepthook = None

    def install(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self.install_excepthook()
        self.install_loop_handler(loop)

    def install_excepthook(self) -> None:
        if self._previous_excepthook is None:
            self._previous_excepthook = sys.excepthook
            sys.excepthook = self.handle_uncaught_exception

    def install_loop_handler(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        loop.set_exception_handler(self.handle_async_error)

    def uninstall(self) -> None:
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def handle_async_error(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        error = context.get("exception")
        process_logger.critical(
            "Unhandled asynchronous error",
            error=error,
            exc_info=error is not None,
            detail=context.get("message"),
        )
        self.exit_code = 1
        if self.server is None:
            os._exit(1)
        self.server.should_exit = True

    def handle_uncaught_exception(self, exc_type, exc_value, exc_traceback) -> None:
        previous = self._previous_excepthook or sys.__excepthook__
        if issubclass(exc_type, KeyboardInterrupt):
            previous(exc_type, exc_value, exc_traceback)
            return
        process_logger.critical(
            "Uncaught exception",
            error=exc_value,
        )
        previous(exc_type, exc_value, exc_traceback)
        os._exit(1)
