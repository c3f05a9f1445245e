# flint/routes/admin.py
import asyncio
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from flint.errors import NotFound
from flint.mongo_collections import CONNECTED_ACCOUNTS, PAYMENTS, TRADES, USERS
from flint.routes.deps import admin_user, get_db, get_snaptrade, public_user, serialize
from flint.services.connections import disconnect_account
from flint.services.user_management import (
    clear_snaptrade_credentials,
    get_activity,
    get_connected_accounts,
    get_user_by_id,
    list_users,
    log_activity,
    parse_object_id,
    set_subscription_tier,
    update_user_fields,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


class SubscriptionReq(BaseModel):
    tier: str


class BanReq(BaseModel):
    banned: bool


class AdminFlagReq(BaseModel):
    isAdmin: bool


async def _user_or_404(db, user_id: str):
    user = await get_user_by_id(db, parse_object_id(user_id, "user id"))
    if not user:
        raise NotFound("User not found")
    return user


@router.get("/stats")
async def stats(admin=Depends(admin_user), db=Depends(get_db)):
    tiers = await db[USERS].aggregate([
        {"$group": {"_id": "$subscriptionTier", "count": {"$sum": 1}}},
    ]).to_list(None)
    return {
        "totalUsers": await db[USERS].count_documents({}),
        "bannedUsers": await db[USERS].count_documents({"isBanned": True}),
        "activeAccounts": await db[CONNECTED_ACCOUNTS].count_documents({"isActive": True}),
        "trades": await db[TRADES].count_documents({}),
        "payments": await db[PAYMENTS].count_documents({}),
        "subscriptions": {(t["_id"] or "free"): t["count"] for t in tiers},
    }


@router.get("/users")
async def users(
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
    admin=Depends(admin_user),
    db=Depends(get_db),
):
    return {"users": [public_user(u) for u in await list_users(db, limit, skip)]}


@router.get("/users/{user_id}")
async def user_detail(user_id: str, admin=Depends(admin_user), db=Depends(get_db)):
    user = await _user_or_404(db, user_id)
    accounts = await get_connected_accounts(db, user["_id"], include_inactive=True)
    activity = await get_activity(db, user["_id"], limit=20)
    return {"user": public_user(user), "accounts": serialize(accounts), "activity": serialize(activity)}


@router.patch("/users/{user_id}/subscription")
async def update_subscription(user_id: str, req: SubscriptionReq, admin=Depends(admin_user), db=Depends(get_db)):
    user = await set_subscription_tier(db, parse_object_id(user_id, "user id"), req.tier)
    await log_activity(db, user["_id"], "admin_subscription", f"Tier set to {req.tier}", {"by": str(admin["_id"])})
    return public_user(user)


@router.patch("/users/{user_id}/ban")
async def ban(user_id: str, req: BanReq, admin=Depends(admin_user), db=Depends(get_db)):
    user = await update_user_fields(db, parse_object_id(user_id, "user id"), {"isBanned": req.banned})
    logger.info("User %s banned=%s by %s", user["_id"], req.banned, admin["_id"])
    await log_activity(db, user["_id"], "admin_ban", "Banned" if req.banned else "Unbanned", {"by": str(admin["_id"])})
    return public_user(user)


@router.patch("/users/{user_id}/admin")
async def set_admin(user_id: str, req: AdminFlagReq, admin=Depends(admin_user), db=Depends(get_db)):
    user = await update_user_fields(db, parse_object_id(user_id, "user id"), {"isAdmin": req.isAdmin})
    return public_user(user)


@router.delete("/users/{user_id}/accounts/{account_id}")
async def remove_account(
    user_id: str, account_id: str, admin=Depends(admin_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)
):
    user = await _user_or_404(db, user_id)
    return await disconnect_account(db, user["_id"], account_id, snaptrade)


@router.post("/users/{user_id}/reset-snaptrade")
async def reset_snaptrade(user_id: str, admin=Depends(admin_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    """Forget the user's SnapTrade registration; the next connect registers afresh."""
    user = await _user_or_404(db, user_id)
    try:
        await asyncio.to_thread(snaptrade.delete_user, str(user["_id"]))
    except Exception as e:
        logger.info("SnapTrade delete during reset ignored for %s: %s", user["_id"], e)
    await clear_snaptrade_credentials(db, user["_id"])
    await db[CONNECTED_ACCOUNTS].update_many(
        {"userId": user["_id"], "provider": "snaptrade"},
        {"$set": {"isActive": False, "status": "disconnected"}},
    )
    await log_activity(db, user["_id"], "admin_reset_snaptrade", "SnapTrade registration reset", {"by": str(admin["_id"])})
    return {"success": True}


@router.get("/activity")
async def activity(
    userId: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    admin=Depends(admin_user),
    db=Depends(get_db),
):
    uid = parse_object_id(userId, "user id") if userId else None
    return {"activity": serialize(await get_activity(db, uid, limit))}
