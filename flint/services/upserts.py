# flint/services/upserts.py
from __future__ import annotations
from typing import List, Dict, Any
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from bson import ObjectId
import datetime as dt
from decimal import Decimal
import logging

from flint.crypto import encrypt_secret
from flint.mongo_collections import CONNECTED_ACCOUNTS, HOLDINGS

logger = logging.getLogger(__name__)


def _to_mongo_safe(value: Any) -> Any:
    """
    Recursively convert values so MongoDB can encode them.
    - date -> datetime (UTC midnight)
    - tz-aware datetime -> naive UTC datetime
    - Decimal -> float
    - dict/list -> recurse
    """
    if isinstance(value, dt.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return value

    if isinstance(value, dt.date):
        return dt.datetime.combine(value, dt.time.min)

    if isinstance(value, Decimal):
        return float(value)

    if isinstance(value, dict):
        return {k: _to_mongo_safe(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_to_mongo_safe(v) for v in value]

    return value


def _normalize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow copy then recursively sanitize for Mongo."""
    return _to_mongo_safe(dict(doc))


# ---------- UPSERT HELPERS ----------

async def upsert_connected_accounts(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    docs: List[Dict[str, Any]],
    *,
    access_token: str | None = None,
    revive: bool = False,
) -> List[Dict[str, Any]]:
    """
    One row per (userId, provider, externalAccountId).

    A row the user disconnected stays disconnected through background
    syncs. It comes back only on an explicit connect (``revive``) or when
    the provider reports it under a new brokerage authorization.
    """
    col = db[CONNECTED_ACCOUNTS]
    saved = []
    now = dt.datetime.now(dt.timezone.utc)
    stored_token = encrypt_secret(access_token) if access_token else None
    for d in docs:
        d2 = _normalize_doc(d)
        d2["userId"] = user_id
        d2["updatedAt"] = _to_mongo_safe(now)
        if stored_token:
            d2["accessToken"] = stored_token
        key = {
            "userId": user_id,
            "provider": d2.get("provider"),
            "externalAccountId": d2.get("externalAccountId"),
        }
        update: Dict[str, Any] = {"$set": d2, "$setOnInsert": {"createdAt": _to_mongo_safe(now)}}

        existing = await col.find_one(key, {"disconnectedAt": 1, "connectionId": 1})
        if existing and existing.get("disconnectedAt"):
            if not revive and existing.get("connectionId") == d2.get("connectionId"):
                logger.info("Skipping disconnected %s account %s", key["provider"], key["externalAccountId"])
                continue
            update["$unset"] = {"disconnectedAt": ""}

        row = await col.find_one_and_update(
            key,
            update,
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        saved.append(row)
    return saved


async def update_account_balances(
    db: AsyncIOMotorDatabase,
    account_id: ObjectId,
    balances: Dict[str, Any],
) -> None:
    """Only the balance fields of a provider refresh; last write wins."""
    fields = {
        k: balances[k]
        for k in ("balance", "availableBalance", "ledgerBalance", "currentBalance", "creditLimit")
        if k in balances
    }
    if fields.get("creditLimit") is None:
        # balance endpoints rarely report the limit; keep the one from connect time
        fields.pop("creditLimit", None)
    fields["lastSynced"] = dt.datetime.now(dt.timezone.utc)
    await db[CONNECTED_ACCOUNTS].update_one({"_id": account_id}, {"$set": _normalize_doc(fields)})


async def upsert_holdings(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    account_id: ObjectId,
    docs: List[Dict[str, Any]],
):
    """
    Holdings are derived on every fetch; this collection is only the
    last-known copy served when the brokerage is unreachable.
    """
    col = db[HOLDINGS]
    for d in docs:
        d2 = _normalize_doc(d)
        d2["userId"] = user_id
        d2["accountId"] = account_id
        key = {"accountId": account_id, "symbol": d2.get("symbol")}
        await col.update_one(key, {"$set": d2}, upsert=True)


async def soft_delete_account(db: AsyncIOMotorDatabase, user_id: ObjectId, account_id: ObjectId) -> bool:
    now = dt.datetime.now(dt.timezone.utc)
    result = await db[CONNECTED_ACCOUNTS].update_one(
        {"_id": account_id, "userId": user_id},
        {"$set": {
            "isActive": False,
            "status": "disconnected",
            "accessToken": None,
            "disconnectedAt": now,
            "lastCheckedAt": now,
        }},
    )
    return result.matched_count > 0
