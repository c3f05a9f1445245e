# flint/routes/snaptrade.py
import asyncio
import logging

from fastapi import APIRouter, Depends

from flint.errors import Unauthorized
from flint.mongo_collections import HOLDINGS
from flint.routes.deps import current_user, get_db, get_snaptrade, serialize
from flint.services.balances import normalize_accounts
from flint.services.connections import create_fresh_snaptrade_user, snaptrade_connect_url
from flint.services.mappers import map_activities, map_position
from flint.services.sync import sync_snaptrade_accounts
from flint.services.upserts import upsert_holdings
from flint.services.user_management import (
    get_connected_account,
    get_connected_accounts,
    log_activity,
    snaptrade_credentials,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/snaptrade", tags=["snaptrade"])


def _creds_or_401(user):
    creds = snaptrade_credentials(user)
    if not creds:
        raise Unauthorized("SnapTrade user not registered", code="SNAPTRADE_NOT_REGISTERED")
    return creds


@router.post("/register")
async def register(user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    """Connect URL for the SnapTrade portal; registers the user first when needed."""
    url = await snaptrade_connect_url(db, user, snaptrade)
    return {"url": url}


@router.post("/create-fresh-account")
async def create_fresh_account(user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    url = await create_fresh_snaptrade_user(db, user, snaptrade)
    return {"url": url}


@router.post("/sync")
async def sync(user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    _creds_or_401(user)
    saved = await sync_snaptrade_accounts(db, user, snaptrade)
    await log_activity(db, user["_id"], "connect_brokerage", f"Synced {len(saved)} brokerage account(s)", {"count": len(saved)})
    return {"success": True, "accounts": len(saved)}


@router.get("/accounts")
async def accounts(user=Depends(current_user), db=Depends(get_db)):
    rows = await get_connected_accounts(db, user["_id"], provider="snaptrade")
    return {"accounts": serialize(normalize_accounts(rows))}


@router.get("/accounts/{account_id}/holdings")
async def holdings(account_id: str, user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    """Live positions; the last stored copy (``cached: true``) when SnapTrade fails."""
    creds = _creds_or_401(user)
    account = await get_connected_account(db, user["_id"], account_id)
    try:
        raw = await asyncio.to_thread(
            snaptrade.get_positions, creds["userId"], creds["userSecret"], account["externalAccountId"]
        )
    except Exception as e:
        logger.warning("SnapTrade positions failed for %s: %s", account["_id"], e)
        cached = await db[HOLDINGS].find({"accountId": account["_id"]}).to_list(None)
        return {"holdings": serialize(cached), "cached": True}

    rows = [map_position(p) for p in raw]
    await upsert_holdings(db, user["_id"], account["_id"], rows)
    return {"holdings": rows}


@router.get("/accounts/{account_id}/transactions")
async def transactions(account_id: str, user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    creds = _creds_or_401(user)
    account = await get_connected_account(db, user["_id"], account_id)
    try:
        raw = await asyncio.to_thread(
            snaptrade.get_activities, creds["userId"], creds["userSecret"], account["externalAccountId"]
        )
    except Exception as e:
        logger.warning("SnapTrade activities failed for %s: %s", account["_id"], e)
        raw = []
    return {"transactions": map_activities(raw)}
