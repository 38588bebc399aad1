import asyncio
import signal

import logging

from bomcache.log_handler import LogHandler
from bomcache.runtime import RuntimeContext

CONFIG_FILE = "config/config.yaml"

logger = logging.getLogger(__name__)


async def monitor(runtime: RuntimeContext):
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.scheduler.stop)
    try:
        await runtime.scheduler.run()
    finally:
        runtime.close()


if __name__ == '__main__':
    # Configure logging
    LogHandler.from_file(CONFIG_FILE).start_logger()

    runtime = RuntimeContext.from_config_file(CONFIG_FILE)
    asyncio.run(monitor(runtime))
