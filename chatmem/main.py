"""chatmem entry point: run the memory engine until interrupted."""

import asyncio
import logging
import signal

from chatmem.config import settings
from chatmem.engine import MemoryEngine
from chatmem.llm.client import complete_text

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


async def run() -> None:
    """Start the engine, wait for SIGINT/SIGTERM, then shut it down cleanly."""
    engine = MemoryEngine(chat=complete_text if settings.anthropic_api_key else None)
    await engine.init()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("chatmem running with database %s", settings.database_path)
    try:
        await stop.wait()
    finally:
        await engine.shutdown()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
