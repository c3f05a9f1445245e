# flint/routes/trading.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from flint.routes.deps import current_user, get_db, get_scheduler, get_snaptrade
from flint.services.trading import cancel_trade, get_trade, list_trades, place_trade, serialize_trade

router = APIRouter(prefix="/api/trade", tags=["trading"])


class PlaceOrderReq(BaseModel):
    accountId: str
    symbol: str
    side: str
    quantity: float
    orderType: str = "market"
    limitPrice: Optional[float] = None
    timeInForce: Optional[str] = None


@router.post("/place")
async def place(
    req: PlaceOrderReq,
    user=Depends(current_user),
    db=Depends(get_db),
    snaptrade=Depends(get_snaptrade),
    scheduler=Depends(get_scheduler),
):
    trade = await place_trade(db, user, req.model_dump(), snaptrade)
    if trade["status"] == "pending":
        scheduler.enqueue_trade_poll(trade["_id"])
    return {"success": True, "trade": serialize_trade(trade)}


@router.get("/orders")
async def orders(limit: int = Query(50, ge=1, le=200), user=Depends(current_user), db=Depends(get_db)):
    return {"orders": [serialize_trade(t) for t in await list_trades(db, user["_id"], limit)]}


@router.get("/orders/{trade_id}")
async def order(trade_id: str, user=Depends(current_user), db=Depends(get_db)):
    return serialize_trade(await get_trade(db, user["_id"], trade_id))


@router.post("/orders/{trade_id}/cancel")
async def cancel(trade_id: str, user=Depends(current_user), db=Depends(get_db), snaptrade=Depends(get_snaptrade)):
    return {"success": True, "trade": serialize_trade(await cancel_trade(db, user, trade_id, snaptrade))}
