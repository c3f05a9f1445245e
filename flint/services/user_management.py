"""
User records, SnapTrade credentials, account lookups and the activity log.
Users are keyed by lower-cased email.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from bson import ObjectId
from bson.errors import InvalidId
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from flint.crypto import decrypt_secret, encrypt_secret
from flint.errors import NotFound, ValidationFailed
from flint.mongo_collections import ACTIVITY_LOG, CONNECTED_ACCOUNTS, USERS

SUBSCRIPTION_TIERS = ("free", "basic", "pro", "premium")


def parse_object_id(value: str, what: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid {what}: {value!r}")


async def get_or_create_user(db: AsyncIOMotorDatabase, email: str) -> Dict[str, Any]:
    """
    Get existing user by email or create new one, bumping lastLogin either way.

    Args:
        db: MongoDB database instance
        email: login email; compared case-insensitively

    Returns:
        User document
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationFailed("A valid email is required")

    now = datetime.now(timezone.utc)
    return await db[USERS].find_one_and_update(
        {"email": email},
        {
            "$set": {"lastLogin": now, "updatedAt": now},
            "$setOnInsert": {
                "email": email,
                "subscriptionTier": "free",
                "isAdmin": False,
                "isBanned": False,
                "snaptradeUserId": None,
                "snaptradeUserSecret": None,
                "createdAt": now,
            },
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


async def get_user_by_id(db: AsyncIOMotorDatabase, user_id: ObjectId) -> Optional[Dict[str, Any]]:
    return await db[USERS].find_one({"_id": user_id})


async def get_user_by_email(db: AsyncIOMotorDatabase, email: str) -> Optional[Dict[str, Any]]:
    return await db[USERS].find_one({"email": (email or "").strip().lower()})


async def list_users(db: AsyncIOMotorDatabase, limit: int = 100, skip: int = 0) -> List[Dict[str, Any]]:
    cursor = db[USERS].find({}).sort("createdAt", -1).skip(skip).limit(limit)
    return await cursor.to_list(None)


async def update_user_fields(db: AsyncIOMotorDatabase, user_id: ObjectId, fields: Dict[str, Any]) -> Dict[str, Any]:
    fields = {**fields, "updatedAt": datetime.now(timezone.utc)}
    user = await db[USERS].find_one_and_update(
        {"_id": user_id},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise NotFound("User not found")
    return user


async def set_subscription_tier(db: AsyncIOMotorDatabase, user_id: ObjectId, tier: str) -> Dict[str, Any]:
    if tier not in SUBSCRIPTION_TIERS:
        raise ValidationFailed(f"Unknown subscription tier: {tier}", context={"allowed": list(SUBSCRIPTION_TIERS)})
    return await update_user_fields(db, user_id, {"subscriptionTier": tier})


# ---------------- SnapTrade credentials ----------------

async def save_snaptrade_credentials(
    db: AsyncIOMotorDatabase, user_id: ObjectId, snaptrade_user_id: str, user_secret: str
) -> None:
    await update_user_fields(db, user_id, {
        "snaptradeUserId": snaptrade_user_id,
        "snaptradeUserSecret": encrypt_secret(user_secret),
    })


async def clear_snaptrade_credentials(db: AsyncIOMotorDatabase, user_id: ObjectId) -> None:
    await update_user_fields(db, user_id, {"snaptradeUserId": None, "snaptradeUserSecret": None})


def snaptrade_credentials(user: Dict[str, Any]) -> Optional[Dict[str, str]]:
    if user.get("snaptradeUserId") and user.get("snaptradeUserSecret"):
        return {"userId": user["snaptradeUserId"], "userSecret": decrypt_secret(user["snaptradeUserSecret"])}
    return None


# ---------------- connected accounts ----------------

async def get_connected_accounts(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    *,
    provider: str | None = None,
    include_inactive: bool = False,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"userId": user_id}
    if provider:
        query["provider"] = provider
    if not include_inactive:
        query["isActive"] = True
    return await db[CONNECTED_ACCOUNTS].find(query).sort("createdAt", 1).to_list(None)


async def get_connected_account(db: AsyncIOMotorDatabase, user_id: ObjectId, account_id: str) -> Dict[str, Any]:
    """Ownership-checked lookup by our id or the provider's external id."""
    query: Dict[str, Any] = {"userId": user_id}
    if ObjectId.is_valid(account_id):
        query["$or"] = [{"_id": ObjectId(account_id)}, {"externalAccountId": account_id}]
    else:
        query["externalAccountId"] = account_id
    account = await db[CONNECTED_ACCOUNTS].find_one(query)
    if not account:
        raise NotFound("Account not found")
    return account


# ---------------- activity log ----------------

async def log_activity(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    action: str,
    description: str,
    metadata: Dict[str, Any] | None = None,
) -> None:
    await db[ACTIVITY_LOG].insert_one({
        "userId": user_id,
        "action": action,
        "description": description,
        "metadata": metadata or {},
        "createdAt": datetime.now(timezone.utc),
    })


async def get_activity(db: AsyncIOMotorDatabase, user_id: ObjectId | None = None, limit: int = 50) -> List[Dict[str, Any]]:
    query = {"userId": user_id} if user_id else {}
    return await db[ACTIVITY_LOG].find(query).sort("createdAt", -1).limit(limit).to_list(None)
