# flint/routes/accounts.py
from fastapi import APIRouter, Depends

from flint.routes.deps import current_user, get_db, get_market_data, get_snaptrade, serialize
from flint.services.balances import normalize_accounts, portfolio_totals
from flint.services.connections import disconnect_account
from flint.services.user_management import get_activity, get_connected_accounts, snaptrade_credentials
from flint.services.watchlist import list_with_quotes

router = APIRouter(prefix="/api", tags=["accounts"])

BANK_TYPES = ("bank", "credit")
BROKERAGE_TYPES = ("investment", "crypto")


@router.get("/accounts")
async def list_accounts(user=Depends(current_user), db=Depends(get_db)):
    """Every account card: active ones normalised for display, disconnected ones listed apart."""
    rows = await get_connected_accounts(db, user["_id"], include_inactive=True)
    active = [r for r in rows if r.get("isActive")]
    disconnected = [r for r in rows if not r.get("isActive")]
    return {
        "accounts": serialize(normalize_accounts(active)),
        "disconnected": serialize(disconnected),
        "totals": portfolio_totals(active),
    }


@router.get("/accounts/banks")
async def list_bank_accounts(user=Depends(current_user), db=Depends(get_db)):
    rows = await get_connected_accounts(db, user["_id"], provider="teller")
    return {"accounts": serialize(normalize_accounts([r for r in rows if r.get("accountType") in BANK_TYPES]))}


@router.get("/accounts/brokerages")
async def list_brokerage_accounts(user=Depends(current_user), db=Depends(get_db)):
    rows = await get_connected_accounts(db, user["_id"], provider="snaptrade")
    return {"accounts": serialize(normalize_accounts([r for r in rows if r.get("accountType") in BROKERAGE_TYPES]))}


@router.post("/accounts/{account_id}/disconnect")
async def disconnect(account_id: str, user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    return await disconnect_account(db, user["_id"], account_id, snaptrade)


@router.get("/dashboard")
async def dashboard(user=Depends(current_user), db=Depends(get_db), market_data=Depends(get_market_data)):
    accounts = await get_connected_accounts(db, user["_id"])
    watchlist = await list_with_quotes(db, user["_id"], market_data, snaptrade_credentials(user))
    activity = await get_activity(db, user["_id"], limit=10)
    return {
        "accounts": serialize(normalize_accounts(accounts)),
        "totals": portfolio_totals(accounts),
        "watchlist": watchlist,
        "recentActivity": serialize(activity),
    }
