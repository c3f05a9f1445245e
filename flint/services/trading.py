# flint/services/trading.py
"""
Order placement through SnapTrade. A trade is stored as ``pending`` as soon
as the brokerage accepts it and a background poll moves it to ``filled``,
``failed`` or ``cancelled``.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument

from flint.errors import Conflict, NotFound, ProviderError, ValidationFailed
from flint.mongo_collections import TRADES, USERS
from flint.services.connections import require_snaptrade_credentials
from flint.services.mappers import map_order_status, to_float
from flint.services.polling import RetryPolicy, poll
from flint.services.snaptrade_client import ISnapTradeClient
from flint.services.user_management import get_connected_account, log_activity, parse_object_id

logger = logging.getLogger(__name__)

SIDES = ("buy", "sell")
ORDER_TYPES = ("market", "limit")
FINAL_STATUSES = ("filled", "failed", "cancelled")


def validate_order(order: Dict[str, Any]) -> Dict[str, Any]:
    """Normalized copy of an order request, or ValidationFailed."""
    symbol = (order.get("symbol") or "").strip().upper()
    side = (order.get("side") or "").lower()
    order_type = (order.get("orderType") or "market").lower()
    quantity = to_float(order.get("quantity"))
    limit_price = to_float(order.get("limitPrice"))

    if not order.get("accountId"):
        raise ValidationFailed("accountId is required")
    if not symbol:
        raise ValidationFailed("symbol is required")
    if side not in SIDES:
        raise ValidationFailed("side must be buy or sell")
    if order_type not in ORDER_TYPES:
        raise ValidationFailed("orderType must be market or limit")
    if quantity is None or quantity <= 0:
        raise ValidationFailed("quantity must be greater than zero")
    if order_type == "limit" and (limit_price is None or limit_price <= 0):
        raise ValidationFailed("limitPrice is required for limit orders")

    return {
        "accountId": str(order["accountId"]),
        "symbol": symbol,
        "side": side,
        "quantity": quantity,
        "orderType": order_type,
        "limitPrice": limit_price if order_type == "limit" else None,
        "timeInForce": order.get("timeInForce") or "Day",
    }


async def place_trade(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    order: Dict[str, Any],
    snaptrade: ISnapTradeClient,
) -> Dict[str, Any]:
    order = validate_order(order)
    creds = require_snaptrade_credentials(user)
    account = await get_connected_account(db, user["_id"], order["accountId"])
    if account.get("provider") != "snaptrade" or not account.get("isActive", True):
        raise ValidationFailed("Trades can only be placed on a connected brokerage account")

    try:
        placed = await asyncio.to_thread(
            snaptrade.place_order, creds["userId"], creds["userSecret"], account["externalAccountId"], order
        )
    except Exception as e:
        logger.warning("SnapTrade order rejected for %s %s: %s", order["side"], order["symbol"], e)
        raise ProviderError(f"Order placement failed: {e}", provider="snaptrade")

    now = dt.datetime.now(dt.timezone.utc)
    trade = {
        "userId": user["_id"],
        "accountId": account["_id"],
        "externalAccountId": account["externalAccountId"],
        "symbol": order["symbol"],
        "side": order["side"],
        "quantity": order["quantity"],
        "orderType": order["orderType"],
        "limitPrice": order["limitPrice"],
        "price": to_float(placed.get("execution_price")) or order["limitPrice"],
        "status": map_order_status(placed),
        "brokerageOrderId": placed.get("brokerage_order_id"),
        "createdAt": now,
        "updatedAt": now,
    }
    if trade["status"] == "filled":
        trade["executedAt"] = now
    res = await db[TRADES].insert_one(trade)
    trade["_id"] = res.inserted_id

    await log_activity(
        db, user["_id"], "trade_placed",
        f"{order['side'].upper()} {order['quantity']:g} {order['symbol']}",
        {"tradeId": str(res.inserted_id)},
    )
    logger.info("Trade %s placed: %s %s x%s", res.inserted_id, order["side"], order["symbol"], order["quantity"])
    return trade


async def list_trades(db: AsyncIOMotorDatabase, user_id: ObjectId, limit: int = 50) -> List[Dict[str, Any]]:
    return await db[TRADES].find({"userId": user_id}).sort("createdAt", DESCENDING).limit(limit).to_list(None)


async def get_trade(db: AsyncIOMotorDatabase, user_id: ObjectId, trade_id: str) -> Dict[str, Any]:
    trade = await db[TRADES].find_one({"_id": parse_object_id(trade_id, "trade id"), "userId": user_id})
    if not trade:
        raise NotFound("Trade not found")
    return trade


def _find_order(orders: List[Dict[str, Any]], brokerage_order_id: Optional[str]) -> Optional[Dict[str, Any]]:
    for o in orders:
        if o.get("brokerage_order_id") == brokerage_order_id:
            return o
    return None


async def refresh_trade_status(
    db: AsyncIOMotorDatabase,
    trade: Dict[str, Any],
    snaptrade: ISnapTradeClient,
) -> Dict[str, Any]:
    """Look the order up at the brokerage and store what it says."""
    user = await db[USERS].find_one({"_id": trade["userId"]}) or {}
    creds = require_snaptrade_credentials(user)
    orders = await asyncio.to_thread(
        snaptrade.get_orders, creds["userId"], creds["userSecret"], trade["externalAccountId"]
    )
    order = _find_order(orders, trade.get("brokerageOrderId"))
    if order is None:
        return trade

    fields: Dict[str, Any] = {"status": map_order_status(order), "updatedAt": dt.datetime.now(dt.timezone.utc)}
    price = to_float(order.get("execution_price"))
    if price is not None:
        fields["price"] = price
    if fields["status"] == "filled" and not trade.get("executedAt"):
        fields["executedAt"] = fields["updatedAt"]
    return await db[TRADES].find_one_and_update(
        {"_id": trade["_id"]}, {"$set": fields}, return_document=ReturnDocument.AFTER
    )


async def poll_trade(
    db: AsyncIOMotorDatabase,
    trade_id: ObjectId,
    snaptrade: ISnapTradeClient,
    policy: RetryPolicy,
    **poll_kwargs,
) -> Dict[str, Any]:
    """Follow a pending trade until it settles; giving up marks it failed."""
    trade = await db[TRADES].find_one({"_id": trade_id})
    if not trade:
        raise NotFound("Trade not found")
    if trade["status"] in FINAL_STATUSES:
        return trade

    state = {"trade": trade}

    async def fetch():
        state["trade"] = await refresh_trade_status(db, state["trade"], snaptrade)
        return state["trade"]

    result = await poll(fetch, lambda t: t["status"] in FINAL_STATUSES, policy, **poll_kwargs)
    if result.done:
        return state["trade"]

    reason = "timed out" if result.timed_out else f"still pending after {result.attempts} attempts"
    logger.warning("Trade %s polling gave up: %s", trade_id, reason)
    return await db[TRADES].find_one_and_update(
        {"_id": trade_id, "status": "pending"},
        {"$set": {"status": "failed", "lastError": result.last_error or reason,
                  "updatedAt": dt.datetime.now(dt.timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    ) or state["trade"]


async def cancel_trade(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    trade_id: str,
    snaptrade: ISnapTradeClient,
) -> Dict[str, Any]:
    trade = await get_trade(db, user["_id"], trade_id)
    if trade["status"] != "pending":
        raise Conflict(f"Trade is already {trade['status']}")
    if not trade.get("brokerageOrderId"):
        raise Conflict("Trade has no brokerage order to cancel")
    creds = require_snaptrade_credentials(user)
    try:
        await asyncio.to_thread(
            snaptrade.cancel_order, creds["userId"], creds["userSecret"],
            trade["externalAccountId"], trade["brokerageOrderId"],
        )
    except Exception as e:
        raise ProviderError(f"Order cancel failed: {e}", provider="snaptrade")

    trade = await db[TRADES].find_one_and_update(
        {"_id": trade["_id"]},
        {"$set": {"status": "cancelled", "updatedAt": dt.datetime.now(dt.timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    await log_activity(db, user["_id"], "trade_cancelled", f"Cancelled {trade['symbol']} order", {"tradeId": trade_id})
    return trade


def serialize_trade(trade: Dict[str, Any]) -> Dict[str, Any]:
    out = {k: v for k, v in trade.items() if k not in ("_id", "userId", "accountId")}
    out["id"] = str(trade["_id"])
    out["accountId"] = str(trade["accountId"])
    return out
