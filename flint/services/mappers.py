# flint/services/mappers.py
from __future__ import annotations
from typing import Any, Dict, List, Optional
import datetime as dt

CRYPTO_SYMBOLS = {"BTC", "ETH", "DOGE", "ADA", "SOL"}
CRYPTO_INSTITUTIONS = ("coinbase", "kraken", "binance", "gemini", "crypto.com")


def to_float(value: Any) -> Optional[float]:
    """Teller sends amounts as strings; SnapTrade as numbers or null."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ---------------- Teller ----------------

def map_teller_account(raw: Dict[str, Any], balances: Dict[str, Any] | None = None) -> Dict[str, Any]:
    balances = balances or raw.get("balances") or raw.get("balance") or {}
    teller_type = (raw.get("type") or "").lower()
    subtype = (raw.get("subtype") or teller_type).lower()
    is_credit = teller_type == "credit" or subtype == "credit_card"

    available = to_float(balances.get("available"))
    ledger = to_float(balances.get("ledger"))
    current = to_float(balances.get("current"))
    if current is None:
        current = ledger

    institution = raw.get("institution") or {}
    return {
        "provider": "teller",
        "externalAccountId": raw.get("id"),
        "accountType": "credit" if is_credit else "bank",
        "subtype": subtype,
        "accountName": raw.get("name") or "Bank Account",
        "accountNumber": raw.get("last_four") or "",
        "institutionName": institution.get("name") or "Unknown Bank",
        "institutionId": institution.get("id"),
        "connectionId": raw.get("enrollment_id"),
        "currency": raw.get("currency") or "USD",
        "availableBalance": available,
        "ledgerBalance": ledger,
        "currentBalance": current,
        "creditLimit": to_float(balances.get("limit") or (raw.get("details") or {}).get("credit_limit")),
        "balance": (current if is_credit else available if available is not None else ledger) or 0.0,
        "status": "connected",
        "isActive": True,
        "lastSynced": _now(),
    }


def map_teller_transactions(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for tx in raw:
        details = tx.get("details") or {}
        out.append({
            "id": tx.get("id"),
            "description": tx.get("description"),
            "category": details.get("category") or "Other",
            "counterparty": (details.get("counterparty") or {}).get("name"),
            "amount": to_float(tx.get("amount")) or 0.0,
            "status": tx.get("status"),
            "date": tx.get("date"),
        })
    return out


# ---------------- SnapTrade ----------------

def _snaptrade_account_type(raw: Dict[str, Any]) -> str:
    institution = (raw.get("institution_name") or "").lower()
    meta_type = str((raw.get("meta") or {}).get("type") or raw.get("raw_type") or "").lower()
    if "crypto" in meta_type or any(name in institution for name in CRYPTO_INSTITUTIONS):
        return "crypto"
    return "investment"


def map_snaptrade_account(raw: Dict[str, Any]) -> Dict[str, Any]:
    total = ((raw.get("balance") or {}).get("total") or {})
    amount = to_float(total.get("amount"))
    return {
        "provider": "snaptrade",
        "externalAccountId": raw.get("id"),
        "accountType": _snaptrade_account_type(raw),
        "subtype": (raw.get("meta") or {}).get("type"),
        "accountName": raw.get("name") or raw.get("institution_name") or "Investment Account",
        "accountNumber": (raw.get("number") or "")[-4:],
        "institutionName": raw.get("institution_name") or "SnapTrade Brokerage",
        "connectionId": raw.get("brokerage_authorization"),
        "currency": total.get("currency") or "USD",
        "availableBalance": amount,
        "ledgerBalance": None,
        "currentBalance": amount,
        "creditLimit": None,
        "balance": amount or 0.0,
        "status": "connected",
        "isActive": True,
        "lastSynced": _now(),
    }


def position_symbol(raw: Dict[str, Any]) -> str:
    # positions nest the ticker as symbol.symbol.symbol on newer API versions
    sym = raw.get("symbol")
    while isinstance(sym, dict):
        sym = sym.get("symbol")
    return (sym or "UNKNOWN").upper()


def map_position(raw: Dict[str, Any]) -> Dict[str, Any]:
    qty = to_float(raw.get("units")) or to_float(raw.get("fractional_units")) or 0.0
    price = to_float(raw.get("price")) or 0.0
    avg = to_float(raw.get("average_purchase_price")) or 0.0
    market_value = qty * price
    cost_basis = qty * avg
    pnl = market_value - cost_basis
    symbol_info = raw.get("symbol") or {}
    inner = symbol_info.get("symbol") if isinstance(symbol_info, dict) else None
    return {
        "symbol": position_symbol(raw),
        "name": inner.get("description") if isinstance(inner, dict) else None,
        "quantity": qty,
        "averagePrice": avg,
        "currentPrice": price,
        "marketValue": round(market_value, 2),
        "costBasis": round(cost_basis, 2),
        "unrealizedPnl": round(pnl, 2),
        "unrealizedPnlPct": round(pnl / cost_basis * 100, 2) if cost_basis > 0 else 0.0,
        "updatedAt": _now(),
    }


def map_activities(raw: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for a in raw:
        out.append({
            "id": a.get("id"),
            "type": (a.get("type") or "trade").lower(),
            "symbol": position_symbol(a) if a.get("symbol") else None,
            "quantity": to_float(a.get("units")),
            "price": to_float(a.get("price")),
            "amount": to_float(a.get("amount")),
            "description": a.get("description"),
            "date": a.get("trade_date") or a.get("settlement_date"),
        })
    return out


def map_order_status(raw: Dict[str, Any]) -> str:
    """Collapse brokerage order states into pending | filled | failed | cancelled."""
    status = str(raw.get("status") or "").upper()
    if status in ("EXECUTED", "FILLED", "COMPLETE"):
        return "filled"
    if status in ("CANCELED", "CANCELLED", "EXPIRED"):
        return "cancelled"
    if status in ("REJECTED", "FAILED"):
        return "failed"
    return "pending"
