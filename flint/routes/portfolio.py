# flint/routes/portfolio.py
import logging

from fastapi import APIRouter, Depends

from flint.routes.deps import current_user, get_db, get_market_data, get_snaptrade
from flint.services.portfolio import portfolio_history, portfolio_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/portfolio", tags=["portfolio"])


@router.get("/summary")
async def summary(
    user=Depends(current_user),
    db=Depends(get_db),
    snaptrade=Depends(get_snaptrade),
    market_data=Depends(get_market_data),
):
    result = await portfolio_summary(db, user, snaptrade, market_data)
    logger.info("Portfolio summary for %s: netWorth=%s", user["_id"], result["totals"]["netWorth"])
    return result


@router.get("/history")
async def history(period: str = "1D", user=Depends(current_user), db=Depends(get_db)):
    return await portfolio_history(db, user["_id"], period)
