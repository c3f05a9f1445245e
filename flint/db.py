# flint/db.py
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING

from flint.mongo_collections import (
    ACTIVITY_LOG,
    CONNECTED_ACCOUNTS,
    HOLDINGS,
    PAYMENTS,
    TRADES,
    USERS,
    WATCHLIST,
)
from flint.settings import settings

logger = logging.getLogger(__name__)

mongo_client: AsyncIOMotorClient | None = None


async def connect_to_mongo():
    """
    Create and return a DB handle (not just the client).
    """
    global mongo_client
    mongo_client = AsyncIOMotorClient(settings.mongodb_uri)
    return mongo_client[settings.mongodb_db]


async def close_mongo_connection():
    global mongo_client
    if mongo_client:
        mongo_client.close()
        mongo_client = None


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    # USERS (one per email)
    await db[USERS].create_index("email", unique=True)

    # CONNECTED_ACCOUNTS (one per provider account per user)
    await db[CONNECTED_ACCOUNTS].create_index(
        [("userId", ASCENDING), ("provider", ASCENDING), ("externalAccountId", ASCENDING)],
        unique=True,
    )
    await db[CONNECTED_ACCOUNTS].create_index([("provider", ASCENDING), ("isActive", ASCENDING)])

    # HOLDINGS (last-known cache per account + symbol)
    await db[HOLDINGS].create_index([("accountId", ASCENDING), ("symbol", ASCENDING)], unique=True)

    # TRADES (history)
    await db[TRADES].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    await db[TRADES].create_index([("status", ASCENDING)])

    # WATCHLIST (unique pair)
    await db[WATCHLIST].create_index([("userId", ASCENDING), ("symbol", ASCENDING)], unique=True)

    # PAYMENTS (Teller paymentId is the natural key)
    await db[PAYMENTS].create_index("paymentId", unique=True)
    await db[PAYMENTS].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])

    # ACTIVITY_LOG
    await db[ACTIVITY_LOG].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])

    logger.info("Mongo indexes ensured on %s", db.name)
