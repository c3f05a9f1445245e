# scripts/create_indexes.py
"""
Create/ensure MongoDB indexes for Flint outside the app lifespan.

Run from project root:
  - python scripts/create_indexes.py
  - OR: python -m scripts.create_indexes
"""

import asyncio
import logging
import os
import sys

# --- Make sure 'flint' package is importable when running this file directly ---
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from flint.db import close_mongo_connection, connect_to_mongo, ensure_indexes

logger = logging.getLogger("create_indexes")


async def run() -> None:
    db = await connect_to_mongo()
    try:
        await ensure_indexes(db)
    finally:
        await close_mongo_connection()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run())
        logger.info("Indexes ensured.")
    except Exception:
        logger.exception("Failed to create indexes")
        raise


if __name__ == "__main__":
    main()
