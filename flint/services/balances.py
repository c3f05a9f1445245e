# flint/services/balances.py
"""
One display number per account card.

Credit accounts show what has been spent (red); everything else shows the
available balance (green). ``percent_of_total`` is each asset account's
share of the summed available balances. Accounts whose available balance is
unknown are left out of the numerator and the denominator alike.
"""
from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from flint.services.mappers import to_float

CREDIT_LABEL = "Amount spent"
ASSET_LABEL = "Available balance"


def is_credit(account: Dict[str, Any]) -> bool:
    return account.get("accountType") == "credit" or (account.get("subtype") or "").lower() == "credit_card"


def amount_spent(account: Dict[str, Any]) -> Optional[float]:
    current = to_float(account.get("currentBalance"))
    if current is not None:
        # issuers disagree on the sign of an owed balance
        return abs(current)
    limit = to_float(account.get("creditLimit"))
    available = to_float(account.get("availableBalance"))
    if limit is not None and available is not None:
        return max(limit - available, 0.0)
    return None


def asset_display_value(account: Dict[str, Any]) -> Optional[float]:
    for key in ("availableBalance", "ledgerBalance", "currentBalance"):
        value = to_float(account.get(key))
        if value is not None:
            return value
    return None


def normalize_account(account: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(account)
    if is_credit(account):
        out["display_value"] = amount_spent(account)
        out["display_label"] = CREDIT_LABEL
        out["display_color"] = "red"
        out["available_credit"] = to_float(account.get("availableBalance"))
    else:
        out["display_value"] = asset_display_value(account)
        out["display_label"] = ASSET_LABEL
        out["display_color"] = "green"
        out["available_credit"] = None
    out["percent_of_total"] = None
    return out


def _floor_1dp(value: float) -> float:
    # floor keeps the column from ever adding up past 100
    return math.floor(value * 10 + 1e-9) / 10


def normalize_accounts(accounts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    normalized = [normalize_account(a) for a in accounts]

    basis = [
        (n, to_float(a.get("availableBalance")))
        for n, a in zip(normalized, accounts)
        if not is_credit(a) and to_float(a.get("availableBalance")) is not None
    ]
    total = sum(v for _, v in basis)
    if total <= 0:
        return normalized

    for n, value in basis:
        n["percent_of_total"] = _floor_1dp(value / total * 100)
    return normalized


def portfolio_totals(accounts: List[Dict[str, Any]]) -> Dict[str, Any]:
    totals = {"totalBalance": 0.0, "bankBalance": 0.0, "investmentValue": 0.0, "cryptoValue": 0.0}
    for account in accounts:
        balance = to_float(account.get("balance")) or 0.0
        totals["totalBalance"] += balance
        kind = account.get("accountType")
        if kind in ("bank", "credit"):
            totals["bankBalance"] += balance
        elif kind == "investment":
            totals["investmentValue"] += balance
        elif kind == "crypto":
            totals["cryptoValue"] += balance
    totals = {k: round(v, 2) for k, v in totals.items()}
    totals["accountCount"] = len(accounts)
    return totals
