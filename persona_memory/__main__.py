"""
Maintenance entry point.

  python -m persona_memory init-db           create tables
  python -m persona_memory cleanup-expired   delete expired project memories
"""

import argparse
import asyncio
import logging

from .core.config import get_settings
from .core.database import init_db, close_db, session_scope
from .services.medium_term import MediumTermMemoryStore

logger = logging.getLogger("persona_memory")


async def _init_db():
    await init_db()


async def _cleanup_expired():
    store = MediumTermMemoryStore(get_settings().memory_config())
    async with session_scope() as db:
        removed = await store.cleanup_expired(db)
    logger.info("Expired project memories removed: %d", removed)


COMMANDS = {
    "init-db": _init_db,
    "cleanup-expired": _cleanup_expired,
}


async def _run(command: str):
    try:
        await COMMANDS[command]()
    finally:
        await close_db()


def main(argv=None):
    parser = argparse.ArgumentParser(prog="persona_memory", description=__doc__.splitlines()[1])
    parser.add_argument("command", choices=sorted(COMMANDS))
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    asyncio.run(_run(args.command))


if __name__ == "__main__":
    main()
