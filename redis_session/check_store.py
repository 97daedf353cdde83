# redis_session/check_store.py
"""Health checks for the Redis server backing the session store."""

import asyncio
import sys
from typing import Any, Dict, Optional

from redis_session import config
from redis_session.store_client import StoreClient
from utils.logging_utils import get_tagged_logger, setup_logging

logger = get_tagged_logger(__name__, tag="check_store")


async def get_store_status(settings: Optional[config.Settings] = None, client: Any = None) -> Dict[str, Any]:
    """
    Non-fatal probe of Redis.

    Returns a dict like:
    {
      "ok": bool,
      "reachable": bool,
      "url": "redis://:***@host:6379/0",
      "redis_version": "7.2.4",
      "error": "...",   # None unless something went wrong
    }

    This NEVER sys.exit(). Suitable for health checks.
    """
    settings = settings or config.settings
    status: Dict[str, Any] = {
        "ok": False,
        "reachable": False,
        "url": settings.masked_url(),
        "redis_version": None,
        "error": None,
    }

    store = StoreClient(settings, client=client)
    try:
        await store.connect()
        server = await store.server_info()
    except Exception as e:
        status["error"] = str(e)
        return status
    finally:
        await store.disconnect()

    logger.debug(f"Redis server info: {server}")
    status["reachable"] = True
    status["redis_version"] = server.get("redis_version")
    status["ok"] = True
    return status


def check_store(settings: Optional[config.Settings] = None) -> None:
    """
    "Hard" check for startup.

    Fails with sys.exit(1) if Redis isn't reachable with the configured settings.
    """
    status = asyncio.run(get_store_status(settings))

    if not status["reachable"]:
        logger.error(f"\nERROR: Redis does not appear to be running or is unreachable.\n"
                     f"   Tried: {status['url']}")
        if status["error"]:
            logger.error(f"   Details: {status['error']}")
        logger.error("\n   Make sure Redis is running and REDIS_URL / REDIS_HOST are set.\n"
                     "   Example:\n"
                     "     • Start:  redis-server (or docker run -p 6379:6379 redis:7)")
        sys.exit(1)

    logger.info(f"Redis {status['redis_version']} reachable at {status['url']}")


if __name__ == "__main__":
    setup_logging(level=config.settings.log_level, job_name="check_store")
    check_store()
