# campaign_engine/main.py
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from dotenv import find_dotenv, load_dotenv

from campaign_engine.common.tracing import setup_logging
from campaign_engine.config import Settings
from campaign_engine.runtime import EngineRuntime

log = logging.getLogger("outreach.runtime")

# Exit code used when graceful shutdown overruns its budget
FORCED_EXIT_CODE = 1


async def shutdown(runtime: EngineRuntime, timeout: float) -> bool:
    """Stop the runtime within `timeout` seconds. Returns False if it stalled."""
    try:
        await asyncio.wait_for(runtime.stop(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        log.error("Graceful shutdown exceeded %ss", timeout)
        return False


async def run(settings: Settings | None = None) -> None:
    """Entrypoint for the campaign execution worker process."""
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    settings = settings or Settings()
    setup_logging(settings.LOG_LEVEL)
    runtime = EngineRuntime(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    await runtime.start()
    try:
        await stop_event.wait()
        log.info("Stop signal received; shutting down")
    finally:
        if not await shutdown(runtime, settings.SHUTDOWN_TIMEOUT_SECONDS):
            logging.shutdown()
            os._exit(FORCED_EXIT_CODE)


def main() -> None:
    load_dotenv(find_dotenv(usecwd=True), override=False)
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt; exiting.")


if __name__ == "__main__":
    main()
