# flint/services/portfolio.py
"""
Net worth across every connected account.

Brokerage positions are read live from SnapTrade; when that fails the last
stored holdings for the account stand in and the summary is flagged
``dataDelayed``.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from flint.errors import ValidationFailed
from flint.mongo_collections import HOLDINGS
from flint.services.balances import portfolio_totals
from flint.services.mappers import CRYPTO_SYMBOLS, map_position, to_float
from flint.services.market_data import MarketDataService
from flint.services.snaptrade_client import ISnapTradeClient
from flint.services.user_management import get_connected_accounts, snaptrade_credentials

logger = logging.getLogger(__name__)

# period -> (number of steps, step)
HISTORY_PERIODS = {
    "1D": (24, dt.timedelta(hours=1)),
    "1W": (7 * 24, dt.timedelta(hours=1)),
    "1M": (30, dt.timedelta(days=1)),
    "3M": (90, dt.timedelta(days=1)),
    "1Y": (365, dt.timedelta(days=1)),
}


async def _live_positions(snaptrade: ISnapTradeClient, creds: Dict[str, str], account: Dict[str, Any]):
    raw = await asyncio.to_thread(
        snaptrade.get_positions, creds["userId"], creds["userSecret"], account["externalAccountId"]
    )
    balances = await asyncio.to_thread(
        snaptrade.get_balances, creds["userId"], creds["userSecret"], account["externalAccountId"]
    )
    cash = sum(to_float(b.get("cash")) or 0.0 for b in balances or [])
    return [map_position(p) for p in raw], cash


async def _cached_positions(db: AsyncIOMotorDatabase, account: Dict[str, Any]) -> List[Dict[str, Any]]:
    return await db[HOLDINGS].find({"accountId": account["_id"]}).to_list(None)


async def portfolio_summary(
    db: AsyncIOMotorDatabase,
    user: Dict[str, Any],
    snaptrade: ISnapTradeClient,
    market_data: MarketDataService,
) -> Dict[str, Any]:
    accounts = await get_connected_accounts(db, user["_id"])
    creds = snaptrade_credentials(user)

    stocks = crypto = cash = debt = day_change = 0.0
    delayed = False

    for account in accounts:
        balance = to_float(account.get("balance")) or 0.0
        kind = account.get("accountType")

        if kind == "credit":
            debt += abs(balance)
            continue
        if kind == "bank":
            cash += balance
            continue

        if account.get("provider") != "snaptrade" or not creds:
            if kind == "crypto":
                crypto += balance
            else:
                stocks += balance
            continue

        try:
            positions, account_cash = await _live_positions(snaptrade, creds, account)
            cash += account_cash
        except Exception as e:
            logger.warning("Live positions failed for account %s, using stored holdings: %s", account["_id"], e)
            positions = await _cached_positions(db, account)
            delayed = True

        for p in positions:
            value = to_float(p.get("marketValue")) or 0.0
            if p.get("symbol") in CRYPTO_SYMBOLS or kind == "crypto":
                crypto += value
            else:
                stocks += value

        quotes = await market_data.get_bulk_market_data([p["symbol"] for p in positions], creds)
        for p in positions:
            quote = quotes.get(p["symbol"])
            if quote is not None and quote.change is not None:
                day_change += (to_float(p.get("quantity")) or 0.0) * quote.change

    investable = stocks + crypto
    net_worth = investable + cash - debt
    day_pct = day_change / investable * 100 if investable > 0 else 0.0

    breakdown = [
        {"bucket": "Stocks", "value": round(stocks, 2)},
        {"bucket": "Crypto", "value": round(crypto, 2)},
        {"bucket": "Cash", "value": round(cash, 2)},
        {"bucket": "Credit Cards", "value": round(-debt, 2)},
    ]
    return {
        "totals": {
            "netWorth": round(net_worth, 2),
            "investable": round(investable, 2),
            "cash": round(cash, 2),
            "debt": round(debt, 2),
        },
        "breakdown": [b for b in breakdown if b["value"] != 0],
        "performance": {"dayPct": round(day_pct, 2), "dayValue": round(day_change, 2)},
        "metadata": {
            "accountCount": len(accounts),
            "lastUpdated": dt.datetime.now(dt.timezone.utc).isoformat(),
            "currency": "USD",
            "dataDelayed": delayed,
        },
    }


async def portfolio_history(
    db: AsyncIOMotorDatabase,
    user_id,
    period: str = "1D",
    *,
    now: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Evenly spaced points ending at ``now``. No value history is stored, so every point is today's total."""
    if period not in HISTORY_PERIODS:
        raise ValidationFailed(f"Unknown period: {period}", context={"allowed": list(HISTORY_PERIODS)})
    steps, step = HISTORY_PERIODS[period]
    now = now or dt.datetime.now(dt.timezone.utc)

    accounts = await get_connected_accounts(db, user_id)
    total = portfolio_totals(accounts)["totalBalance"]

    points = [
        {"timestamp": (now - i * step).isoformat(), "value": total}
        for i in range(steps, -1, -1)
    ]
    return {"period": period, "dataPoints": points, "currency": "USD"}
