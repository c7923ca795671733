# src/taskkeep/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, then runs on one asyncio loop:
- the console REPL,
- the periodic sync loop (when sync is enabled).
Pending writes are flushed on the way out.
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.errors import StorageFullError
from ..core.state import AppState
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def shutdown(state: AppState) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    engine = state.sync_engine
    if engine is not None:
        try:
            await engine.stop()
            engine.close()
        except Exception:
            logger.exception("Failed to stop sync engine.")

    try:
        await state.gateway.aclose()
    except StorageFullError as e:
        logger.error("Final write failed: %s", e)
    except Exception:
        logger.exception("Failed to flush pending writes.")

    remote = state.remote
    if remote is not None and hasattr(remote, "aclose"):
        try:
            await remote.aclose()
        except Exception:
            logger.debug("Remote client close failed.", exc_info=True)


async def _run(settings) -> None:
    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    if state.sync_engine is not None:
        state.sync_engine.start()

    try:
        await run_console_loop(state)
    finally:
        await shutdown(state)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/taskkeep")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "taskkeep"))

    try:
        asyncio.run(_run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted.")

    logger.info("Bye.")


if __name__ == "__main__":
    main()
