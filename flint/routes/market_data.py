# flint/routes/market_data.py
from typing import List

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from flint.errors import ValidationFailed
from flint.routes.deps import admin_user, current_user, get_candles, get_market_data
from flint.services.market_data import normalize_symbol
from flint.services.user_management import snaptrade_credentials

router = APIRouter(prefix="/api/market-data", tags=["market-data"])

MAX_BULK_SYMBOLS = 50


class BulkReq(BaseModel):
    symbols: List[str]


@router.get("")
async def quote(symbol: str, user=Depends(current_user), market_data=Depends(get_market_data)):
    sym = normalize_symbol(symbol)
    if not sym:
        raise ValidationFailed("symbol is required")
    result = await market_data.get_market_data(sym, snaptrade_credentials(user))
    if result is None:
        return JSONResponse({"message": f"Market data unavailable for {sym}"}, status_code=404)
    return result


@router.get("/candles")
async def candles(
    symbol: str = "",
    tf: str = "1D",
    limit: int = Query(500, ge=1),
    user=Depends(current_user),
    candle_service=Depends(get_candles),
):
    sym = normalize_symbol(symbol)
    if not sym:
        raise ValidationFailed("symbol is required")
    result = await candle_service.get_candles(sym, tf, limit)
    if result is None:
        return JSONResponse({"message": f"No historical data for {sym}"}, status_code=404)
    return result


@router.post("/bulk")
async def bulk(req: BulkReq, user=Depends(current_user), market_data=Depends(get_market_data)):
    if not req.symbols:
        raise ValidationFailed("symbols must be a non-empty list")
    if len(req.symbols) > MAX_BULK_SYMBOLS:
        raise ValidationFailed(f"At most {MAX_BULK_SYMBOLS} symbols per request")
    quotes = await market_data.get_bulk_market_data(req.symbols, snaptrade_credentials(user))
    return {sym: (q.model_dump() if q else None) for sym, q in quotes.items()}


@router.get("/cache/stats")
async def cache_stats(admin=Depends(admin_user), market_data=Depends(get_market_data)):
    return market_data.cache_stats()


@router.post("/cache/clear")
async def cache_clear(admin=Depends(admin_user), market_data=Depends(get_market_data)):
    market_data.clear_cache()
    return {"success": True}
