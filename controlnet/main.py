"""
controlnet - Main Entry Point

Builds one control network from the environment and drives it with the
cadence runtime until interrupted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from controlnet.config import Settings, get_settings
from controlnet.core.network import ControlNetwork
from controlnet.core.runtime import ControlRuntime

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    if settings.debug:
        level = logging.DEBUG
    else:
        level = logging.getLevelName(settings.log_level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def serve(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    network = ControlNetwork(settings)
    network.initialize()
    runtime = ControlRuntime(network)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform.
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    runtime.start()
    logger.info("%s running", settings.app_name)
    try:
        await stop.wait()
    finally:
        await runtime.stop()
        network.shutdown()
        logger.info("%s stopped", settings.app_name)


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
