# flint/routes/watchlist.py
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from flint.routes.deps import current_user, get_db, get_market_data, serialize
from flint.services import watchlist
from flint.services.user_management import snaptrade_credentials

router = APIRouter(prefix="/api/watchlist", tags=["watchlist"])


class AddSymbolReq(BaseModel):
    symbol: str
    name: Optional[str] = None


@router.get("")
async def list_watchlist(user=Depends(current_user), db=Depends(get_db), market_data=Depends(get_market_data)):
    return {"watchlist": await watchlist.list_with_quotes(db, user["_id"], market_data, snaptrade_credentials(user))}


@router.post("", status_code=201)
async def add(req: AddSymbolReq, user=Depends(current_user), db=Depends(get_db)):
    entry = await watchlist.add_symbol(db, user["_id"], req.symbol, req.name)
    return serialize(entry)


@router.delete("/{symbol}")
async def remove(symbol: str, user=Depends(current_user), db=Depends(get_db)):
    await watchlist.remove_symbol(db, user["_id"], symbol)
    return {"success": True}
