# flint/services/sync.py
from __future__ import annotations
import asyncio
import datetime as dt
from datetime import timezone
import logging

from typing import Dict, Any, List
import httpx
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from flint.mongo_collections import CONNECTED_ACCOUNTS
from flint.services.mappers import map_position, map_snaptrade_account, map_teller_account
from flint.services.snaptrade_client import ISnapTradeClient
from flint.services.teller_client import build_teller_client
from flint.services.upserts import update_account_balances, upsert_connected_accounts, upsert_holdings
from flint.services.user_management import get_connected_accounts, get_user_by_id, snaptrade_credentials

logger = logging.getLogger(__name__)


async def sync_snaptrade_accounts(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    snaptrade: ISnapTradeClient,
    *,
    with_holdings: bool = True,
) -> List[Dict[str, Any]]:
    """Upsert every SnapTrade account; optionally refresh the holdings cache too."""
    creds = snaptrade_credentials(user)
    if not creds:
        return []

    raw_accounts = await asyncio.to_thread(snaptrade.list_accounts, creds["userId"], creds["userSecret"])
    saved = await upsert_connected_accounts(db, user["_id"], [map_snaptrade_account(a) for a in raw_accounts])

    if with_holdings:
        for account in saved:
            try:
                positions = await asyncio.to_thread(
                    snaptrade.get_positions, creds["userId"], creds["userSecret"], account["externalAccountId"]
                )
                await upsert_holdings(db, user["_id"], account["_id"], [map_position(p) for p in positions])
            except Exception as e:
                logger.warning("SnapTrade positions failed for account %s: %s", account["_id"], e)
    return saved


async def sync_teller_accounts(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    http: httpx.AsyncClient,
) -> Dict[str, Any]:
    """
    Refresh balances one account at a time. A failing account keeps its
    previous balance and is reported, the rest still update.
    """
    accounts = await get_connected_accounts(db, user_id, provider="teller")
    updated, errors = 0, []
    for account in accounts:
        try:
            teller = build_teller_client(account, http)
            balances = await teller.get_balances(account["externalAccountId"])
            mapped = map_teller_account(
                {"type": "credit" if account.get("accountType") == "credit" else "depository",
                 "subtype": account.get("subtype")},
                balances,
            )
            await update_account_balances(db, account["_id"], mapped)
            updated += 1
        except Exception as e:
            errors.append({"accountId": str(account["_id"]), "error": str(e)})
            await db[CONNECTED_ACCOUNTS].update_one(
                {"_id": account["_id"]},
                {"$set": {"lastCheckedAt": dt.datetime.now(timezone.utc), "lastError": str(e)}},
            )
    return {"updated": updated, "errors": errors}


async def run_account_sync(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    *,
    http: httpx.AsyncClient,
    snaptrade: ISnapTradeClient,
) -> Dict[str, Any]:
    """
    Refresh every provider for one user. Each step records its own outcome;
    one provider failing never stops the other.
    """
    changed: List[Dict[str, Any]] = []

    user = await get_user_by_id(db, user_id)
    if not user:
        return {"userId": str(user_id), "syncedAt": dt.datetime.now(timezone.utc).isoformat(), "updated": changed, "note": "no-user"}

    try:
        result = await sync_teller_accounts(db, user_id, http)
        entry: Dict[str, Any] = {"doc": "teller", "count": result["updated"]}
        if result["errors"]:
            entry["errors"] = result["errors"]
        changed.append(entry)
    except Exception as e:
        changed.append({"doc": "teller", "error": str(e)})

    if snaptrade_credentials(user):
        try:
            saved = await sync_snaptrade_accounts(db, user, snaptrade)
            changed.append({"doc": "snaptrade", "count": len(saved)})
        except Exception as e:
            changed.append({"doc": "snaptrade", "error": str(e)})

    return {
        "userId": str(user_id),
        "syncedAt": dt.datetime.now(timezone.utc).isoformat(),
        "updated": changed,
    }


async def list_active_users(db: AsyncIOMotorDatabase) -> List[ObjectId]:
    """Users with at least one active connected account."""
    return await db[CONNECTED_ACCOUNTS].distinct("userId", {"isActive": True})
