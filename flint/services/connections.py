# flint/services/connections.py
"""
Connecting and disconnecting provider accounts.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List

import httpx
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from flint.errors import NotConnected, ProviderError
from flint.mongo_collections import CONNECTED_ACCOUNTS
from flint.services.mappers import map_teller_account
from flint.services.snaptrade_client import ISnapTradeClient, is_user_exists_error
from flint.services.teller_client import TellerClient
from flint.services.upserts import soft_delete_account, upsert_connected_accounts
from flint.services.user_management import (
    clear_snaptrade_credentials,
    get_connected_account,
    get_user_by_id,
    log_activity,
    save_snaptrade_credentials,
    snaptrade_credentials,
)

logger = logging.getLogger(__name__)


# ---------------- Teller ----------------

async def connect_teller(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    access_token: str,
    http: httpx.AsyncClient,
) -> Dict[str, Any]:
    """
    Exchange a Teller Connect token: pull every account on the enrollment,
    attach balances where Teller serves them, store the token per account.
    """
    teller = TellerClient(access_token, http)
    raw_accounts = await teller.list_accounts()

    docs = []
    for raw in raw_accounts:
        try:
            balances = await teller.get_balances(raw["id"])
        except ProviderError as e:
            logger.warning("Teller balances unavailable for account %s: %s", raw.get("id"), e.message)
            balances = None
        docs.append(map_teller_account(raw, balances))

    saved = await upsert_connected_accounts(db, user_id, docs, access_token=access_token, revive=True)
    await log_activity(db, user_id, "connect_bank", f"Connected {len(saved)} Teller account(s)", {"count": len(saved)})
    logger.info("Teller accounts connected for %s: %d", user_id, len(saved))
    return {"success": True, "accounts": len(saved), "message": "Bank accounts connected successfully"}


# ---------------- SnapTrade ----------------

async def _register(db, user_id: ObjectId, snaptrade: ISnapTradeClient) -> Dict[str, str]:
    creds = await asyncio.to_thread(snaptrade.register_user, str(user_id))
    await save_snaptrade_credentials(db, user_id, creds["userId"], creds["userSecret"])
    return creds


async def ensure_snaptrade_user(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    snaptrade: ISnapTradeClient,
) -> Dict[str, str]:
    """
    Reuse stored credentials, else register. A stale registration on
    SnapTrade's side (USER_EXISTS) is deleted and registered again once.
    """
    creds = snaptrade_credentials(user)
    if creds:
        return creds

    user_id = user["_id"]
    try:
        return await _register(db, user_id, snaptrade)
    except Exception as e:
        if not is_user_exists_error(e):
            raise ProviderError(f"SnapTrade registration failed: {e}", provider="snaptrade")
        logger.info("SnapTrade user %s already exists; re-registering", user_id)

    try:
        await asyncio.to_thread(snaptrade.delete_user, str(user_id))
        return await _register(db, user_id, snaptrade)
    except Exception as e:
        raise ProviderError(f"SnapTrade re-registration failed: {e}", provider="snaptrade", code="USER_EXISTS")


async def snaptrade_connect_url(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    snaptrade: ISnapTradeClient,
) -> str:
    creds = await ensure_snaptrade_user(db, user, snaptrade)
    try:
        url = await asyncio.to_thread(snaptrade.login_link, creds["userId"], creds["userSecret"])
    except Exception as e:
        raise ProviderError(f"SnapTrade login link failed: {e}", provider="snaptrade")
    if not url:
        raise ProviderError("No connect URL from SnapTrade", provider="snaptrade")
    return url


async def create_fresh_snaptrade_user(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    snaptrade: ISnapTradeClient,
) -> str:
    """Drop whatever SnapTrade has for this user and start over."""
    user_id = user["_id"]
    try:
        await asyncio.to_thread(snaptrade.delete_user, str(user_id))
    except Exception as e:
        logger.info("SnapTrade delete before fresh registration ignored: %s", e)
    await clear_snaptrade_credentials(db, user_id)
    user = {**user, "snaptradeUserId": None, "snaptradeUserSecret": None}
    return await snaptrade_connect_url(db, user, snaptrade)


def require_snaptrade_credentials(user: Dict[str, Any]) -> Dict[str, str]:
    creds = snaptrade_credentials(user)
    if not creds:
        raise NotConnected("Please connect your brokerage first")
    return creds


# ---------------- disconnect ----------------

async def _snaptrade_authorization_rows(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    account: Dict[str, Any],
    snaptrade: ISnapTradeClient | None,
) -> List[Dict[str, Any]]:
    """
    Remove the brokerage authorization at SnapTrade. Every account under it
    goes with it, so all of them are returned for the local soft delete.
    """
    connection_id = account.get("connectionId")
    if not connection_id:
        return [account]

    creds = snaptrade_credentials(await get_user_by_id(db, user_id) or {})
    if snaptrade is not None and creds:
        try:
            await asyncio.to_thread(snaptrade.remove_connection, creds["userId"], creds["userSecret"], connection_id)
        except Exception as e:
            logger.warning("SnapTrade authorization %s removal failed; disconnecting locally: %s", connection_id, e)

    rows = await db[CONNECTED_ACCOUNTS].find(
        {"userId": user_id, "provider": "snaptrade", "connectionId": connection_id, "isActive": True}
    ).to_list(None)
    return rows or [account]


async def disconnect_account(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    account_id: str,
    snaptrade: ISnapTradeClient | None = None,
) -> Dict[str, Any]:
    account = await get_connected_account(db, user_id, account_id)
    rows = [account]
    if account.get("provider") == "snaptrade":
        rows = await _snaptrade_authorization_rows(db, user_id, account, snaptrade)
    for row in rows:
        await soft_delete_account(db, user_id, row["_id"])
    await log_activity(
        db, user_id, "disconnect_account",
        f"Disconnected {account.get('accountName')}",
        {"provider": account.get("provider"), "accountId": str(account["_id"]), "count": len(rows)},
    )
    return {"success": True, "accountId": str(account["_id"]), "disconnected": [str(r["_id"]) for r in rows]}
