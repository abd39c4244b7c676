"""Exec Session MCP application entry.

Server lifecycle management and the console entry point.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys

from mcp.server.stdio import stdio_server

from .config import get_config
from .gui import ServerConfig, SurfaceServer
from .lifecycle import SessionController
from .server import create_server
from .signal_manager import SignalManager

__all__ = ["run_server", "main"]

logger = logging.getLogger(__name__)


def _start_surface_server(controller: SessionController) -> SurfaceServer | None:
    config = get_config()
    surface = SurfaceServer(
        controller,
        asyncio.get_running_loop(),
        ServerConfig(host=config.gui_host, port=config.gui_port),
    )
    try:
        surface.start()
    except OSError as e:
        logger.warning(f"Failed to start terminal surface server: {e}, continuing without it")
        return None
    logger.info(f"Terminal surface: {surface.url}")
    if config.log_debug and config.log_file:
        logger.info(f"Debug log: {config.log_file}")
    return surface


async def run_server() -> None:
    """Run the MCP server.

    Concurrent tasks:
    - server_task: the MCP server on stdio
    - shutdown_watcher: cancels server_task once a shutdown is requested
    """
    config = get_config()
    logger.info(f"Starting Exec Session MCP Server: {config}")

    controller = SessionController(config)
    surface_server: SurfaceServer | None = None
    server_task: asyncio.Task | None = None
    shutdown_watcher: asyncio.Task | None = None

    if config.gui_enabled:
        surface_server = _start_surface_server(controller)

    def on_shutdown():
        logger.info("Shutdown callback triggered")
        # closing stdin unblocks the stdio reader
        try:
            sys.stdin.close()
            logger.debug("stdin closed to unblock stdio_server")
        except OSError as e:
            logger.debug(f"Error closing stdin: {e}")

    signal_manager = SignalManager(controller, on_shutdown=on_shutdown)
    mcp = create_server(controller, surface_server)

    async def _run_server_impl():
        logger.debug("Starting MCP server with stdio transport")
        async with stdio_server() as (read_stream, write_stream):
            await mcp.run(read_stream, write_stream, mcp.create_initialization_options())
        logger.debug("MCP server completed normally")

    async def _watch_shutdown():
        await signal_manager.wait_for_shutdown()
        logger.info("Shutdown signal received, cancelling server task...")
        if server_task and not server_task.done():
            server_task.cancel()

    try:
        await signal_manager.start()
        logger.info(
            f"Signal manager started (mode={signal_manager.sigint_mode.value}, "
            f"double_tap_window={signal_manager.double_tap_window}s)"
        )

        server_task = asyncio.create_task(_run_server_impl(), name="mcp-server")
        shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")

        try:
            await server_task
        except asyncio.CancelledError:
            logger.info("Server task cancelled by shutdown signal")

    except asyncio.CancelledError:
        logger.info("run_server: asyncio.CancelledError caught")
        raise

    except BaseException as e:
        logger.error(f"run_server: BaseException caught: type={type(e).__name__}, msg={e}")
        raise

    finally:
        logger.info("run_server: entering finally block")

        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher

        await signal_manager.stop()
        await controller.shutdown()

        if surface_server:
            surface_server.stop()

        logger.info("run_server: cleanup completed")

        if signal_manager.force_exit:
            logger.warning("Force exit requested, terminating with exit code 130")
            sys.exit(130)  # 128 + SIGINT


def main() -> None:
    """Console entry point."""
    config = get_config()

    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # stdout carries the MCP protocol
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.DEBUG if config.debug else logging.INFO

    # third-party loggers stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("exec_session_mcp").setLevel(log_level)

    asyncio.run(run_server())


if __name__ == "__main__":
    main()
