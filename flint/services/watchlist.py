# flint/services/watchlist.py
from __future__ import annotations

import datetime as dt
from typing import Any, Dict, List, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from flint.errors import Conflict, NotFound, ValidationFailed
from flint.mongo_collections import WATCHLIST
from flint.services.market_data import MarketDataService, normalize_symbol


async def add_symbol(db: AsyncIOMotorDatabase, user_id: ObjectId, symbol: str, name: Optional[str] = None) -> Dict[str, Any]:
    sym = normalize_symbol(symbol)
    if not sym:
        raise ValidationFailed("symbol is required")
    doc = {"userId": user_id, "symbol": sym, "name": name, "createdAt": dt.datetime.now(dt.timezone.utc)}
    try:
        res = await db[WATCHLIST].insert_one(doc)
    except DuplicateKeyError:
        raise Conflict(f"{sym} is already on your watchlist")
    doc["_id"] = res.inserted_id
    return doc


async def remove_symbol(db: AsyncIOMotorDatabase, user_id: ObjectId, symbol: str) -> None:
    res = await db[WATCHLIST].delete_one({"userId": user_id, "symbol": normalize_symbol(symbol)})
    if res.deleted_count == 0:
        raise NotFound("Symbol not on watchlist")


async def list_with_quotes(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    market_data: MarketDataService,
    credentials: Optional[Dict[str, str]] = None,
) -> List[Dict[str, Any]]:
    """Entries oldest first; ``quote`` is None when no provider had one."""
    entries = await db[WATCHLIST].find({"userId": user_id}).sort("createdAt", 1).to_list(None)
    quotes = await market_data.get_bulk_market_data([e["symbol"] for e in entries], credentials)
    out = []
    for e in entries:
        quote = quotes.get(e["symbol"])
        out.append({
            "id": str(e["_id"]),
            "symbol": e["symbol"],
            "name": e.get("name") or (quote.companyName if quote else None),
            "createdAt": e["createdAt"],
            "quote": quote.model_dump() if quote else None,
        })
    return out
