"""SIGINT/SIGTERM handling for the stdio server.

Ctrl+C in the terminal hosting the server usually means "stop the program
that is running", not "stop the server". ESM_SIGINT_MODE decides:

    interrupt            interrupt running sessions; exit when none run
    exit                 exit right away
    interrupt_then_exit  interrupt running sessions; a second SIGINT within
                         ESM_SIGINT_DOUBLE_TAP_WINDOW exits

A SIGINT arriving inside the window after an exit was asked for forces the
exit (run_server then ends with status 130). SIGTERM interrupts whatever
runs and exits.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import TYPE_CHECKING, Callable, Optional

from .config import SigintMode, get_config

if TYPE_CHECKING:
    from .lifecycle import SessionController

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class SignalManager:
    """Routes process signals to the session controller and the shutdown event.

    Example:
        manager = SignalManager(controller, on_shutdown=close_stdin)
        await manager.start()
        try:
            await manager.wait_for_shutdown()
        finally:
            await manager.stop()
    """

    def __init__(
        self,
        controller: "SessionController",
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        config = get_config()
        self.controller = controller
        self.sigint_mode = sigint_mode or config.sigint_mode
        self.double_tap_window = (
            config.sigint_double_tap_window if double_tap_window is None else double_tap_window
        )
        self.on_shutdown = on_shutdown

        self.shutdown_requested = False
        self.force_exit = False
        # monotonic deadline for a second SIGINT to force the exit
        self._armed_until = 0.0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown: Optional[asyncio.Event] = None
        self._previous_sigint = None

    async def start(self) -> None:
        """Install the handlers on the running loop."""
        if self._loop is not None:
            logger.warning("SignalManager already started")
            return
        self._loop = asyncio.get_running_loop()
        self._shutdown = asyncio.Event()

        if IS_WINDOWS:
            # Windows loops have no add_signal_handler
            loop = self._loop
            self._previous_sigint = signal.signal(
                signal.SIGINT, lambda *_: loop.call_soon_threadsafe(self.on_sigint)
            )
        else:
            self._loop.add_signal_handler(signal.SIGINT, self.on_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self.on_sigterm)
        logger.debug(
            f"Signal handlers installed (mode={self.sigint_mode.value}, "
            f"window={self.double_tap_window}s)"
        )

    async def stop(self) -> None:
        loop, self._loop = self._loop, None
        if loop is None:
            return
        if IS_WINDOWS:
            if self._previous_sigint is not None:
                signal.signal(signal.SIGINT, self._previous_sigint)
        else:
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (RuntimeError, ValueError) as e:
                    logger.debug(f"Could not remove handler for {sig}: {e}")
        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        if self._shutdown is not None:
            await self._shutdown.wait()

    def on_sigint(self) -> None:
        now = time.monotonic()
        if now < self._armed_until:
            logger.warning("Second SIGINT inside the window, forcing exit")
            self.force_exit = True
            self.controller.interrupt_all()
            self._shut_down()
            return

        if self.sigint_mode is SigintMode.EXIT:
            logger.info("SIGINT, exiting")
            self._armed_until = now + self.double_tap_window
            self._shut_down()
            return

        interrupted = (
            self.controller.interrupt_all() if self.controller.has_running_sessions() else 0
        )
        if not interrupted:
            logger.info("SIGINT with nothing running, exiting")
            self._armed_until = now + self.double_tap_window
            self._shut_down()
        elif self.sigint_mode is SigintMode.INTERRUPT_THEN_EXIT:
            logger.info(
                f"SIGINT interrupted {interrupted} session(s); "
                f"Ctrl+C again within {self.double_tap_window}s exits"
            )
            self._armed_until = now + self.double_tap_window
        else:
            logger.info(f"SIGINT interrupted {interrupted} session(s)")

    def on_sigterm(self) -> None:
        interrupted = self.controller.interrupt_all()
        logger.info(f"SIGTERM, exiting ({interrupted} session(s) interrupted)")
        self._shut_down()

    def _shut_down(self) -> None:
        self.shutdown_requested = True
        if self.on_shutdown is not None:
            try:
                self.on_shutdown()
            except Exception as e:
                logger.warning(f"Shutdown callback failed: {e}")
        if self._loop is not None and self._shutdown is not None:
            self._loop.call_soon_threadsafe(self._shutdown.set)
