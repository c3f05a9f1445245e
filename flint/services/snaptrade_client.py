# flint/services/snaptrade_client.py
from __future__ import annotations
from typing import Any, Dict, List
import datetime as dt
import logging
import uuid

from snaptrade_client import SnapTrade

from flint.settings import settings

logger = logging.getLogger(__name__)


class ISnapTradeClient:
    def register_user(self, user_id: str) -> Dict[str, str]: ...
    def delete_user(self, user_id: str) -> None: ...
    def login_link(self, user_id: str, user_secret: str) -> str: ...
    def list_accounts(self, user_id: str, user_secret: str) -> List[Dict[str, Any]]: ...
    def get_positions(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]: ...
    def get_balances(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]: ...
    def get_activities(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]: ...
    def get_quotes(self, user_id: str, user_secret: str, account_id: str, symbols: List[str]) -> List[Dict[str, Any]]: ...
    def place_order(self, user_id: str, user_secret: str, account_id: str, order: Dict[str, Any]) -> Dict[str, Any]: ...
    def get_orders(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]: ...
    def cancel_order(self, user_id: str, user_secret: str, account_id: str, brokerage_order_id: str) -> Dict[str, Any]: ...
    def remove_connection(self, user_id: str, user_secret: str, authorization_id: str) -> None: ...


def _body(resp) -> Any:
    # SDK responses wrap the decoded JSON in .body
    return getattr(resp, "body", resp)


class RealSnapTradeClient(ISnapTradeClient):
    def __init__(self, client_id: str, consumer_key: str, redirect_uri: str | None = None):
        self.sdk = SnapTrade(client_id=client_id, consumer_key=consumer_key)
        self.redirect_uri = redirect_uri

    def register_user(self, user_id: str) -> Dict[str, str]:
        body = _body(self.sdk.authentication.register_snap_trade_user(user_id=user_id))
        return {"userId": body["userId"], "userSecret": body["userSecret"]}

    def delete_user(self, user_id: str) -> None:
        self.sdk.authentication.delete_snap_trade_user(user_id=user_id)

    def login_link(self, user_id: str, user_secret: str) -> str:
        kwargs = {"user_id": user_id, "user_secret": user_secret}
        if self.redirect_uri:
            kwargs["custom_redirect"] = self.redirect_uri
        body = _body(self.sdk.authentication.login_snap_trade_user(**kwargs))
        return body.get("redirectURI") or body.get("redirect_uri")

    def list_accounts(self, user_id: str, user_secret: str) -> List[Dict[str, Any]]:
        return list(_body(self.sdk.account_information.list_user_accounts(user_id=user_id, user_secret=user_secret)))

    def get_positions(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return list(_body(self.sdk.account_information.get_user_account_positions(
            user_id=user_id, user_secret=user_secret, account_id=account_id)))

    def get_balances(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return list(_body(self.sdk.account_information.get_user_account_balance(
            user_id=user_id, user_secret=user_secret, account_id=account_id)))

    def get_activities(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return list(_body(self.sdk.transactions_and_reporting.get_activities(
            user_id=user_id, user_secret=user_secret, accounts=account_id)))

    def get_quotes(self, user_id: str, user_secret: str, account_id: str, symbols: List[str]) -> List[Dict[str, Any]]:
        return list(_body(self.sdk.trading.get_user_account_quotes(
            user_id=user_id, user_secret=user_secret, account_id=account_id,
            symbols=",".join(symbols), use_ticker=True)))

    def place_order(self, user_id: str, user_secret: str, account_id: str, order: Dict[str, Any]) -> Dict[str, Any]:
        kwargs = {
            "user_id": user_id,
            "user_secret": user_secret,
            "account_id": account_id,
            "action": order["side"].upper(),
            "order_type": "Limit" if order["orderType"] == "limit" else "Market",
            "time_in_force": order.get("timeInForce", "Day"),
            "symbol": order["symbol"],
            "units": order["quantity"],
        }
        if order.get("limitPrice") is not None:
            kwargs["price"] = order["limitPrice"]
        return dict(_body(self.sdk.trading.place_force_order(**kwargs)))

    def get_orders(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return list(_body(self.sdk.account_information.get_user_account_orders(
            user_id=user_id, user_secret=user_secret, account_id=account_id, state="all")))

    def cancel_order(self, user_id: str, user_secret: str, account_id: str, brokerage_order_id: str) -> Dict[str, Any]:
        return dict(_body(self.sdk.trading.cancel_user_account_order(
            user_id=user_id, user_secret=user_secret, account_id=account_id,
            brokerage_order_id=brokerage_order_id)))

    def remove_connection(self, user_id: str, user_secret: str, authorization_id: str) -> None:
        self.sdk.connections.remove_brokerage_authorization(
            authorization_id=authorization_id, user_id=user_id, user_secret=user_secret)


class StubSnapTradeClient(ISnapTradeClient):
    """Dev fallback so the app runs without SnapTrade keys."""

    def __init__(self):
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.removed_authorizations: set = set()

    def register_user(self, user_id: str) -> Dict[str, str]:
        return {"userId": user_id, "userSecret": f"stub-secret-{user_id}"}

    def delete_user(self, user_id: str) -> None:
        return None

    def login_link(self, user_id: str, user_secret: str) -> str:
        return f"https://app.snaptrade.com/snapTrade/redeemToken?stub=1&user={user_id}"

    def list_accounts(self, user_id: str, user_secret: str) -> List[Dict[str, Any]]:
        accounts = [{
            "id": "stub-acct-1",
            "name": "Stub Brokerage Individual",
            "number": "STUB0001",
            "institution_name": "Stub Brokerage",
            "balance": {"total": {"amount": 12500.0, "currency": "USD"}},
            "meta": {"type": "Margin"},
            "brokerage_authorization": "stub-auth-1",
        }]
        return [a for a in accounts if a["brokerage_authorization"] not in self.removed_authorizations]

    def get_positions(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return [{
            "symbol": {"symbol": {"symbol": "AAPL", "description": "Apple Inc."}},
            "units": 10,
            "price": 224.5,
            "average_purchase_price": 180.0,
        }]

    def get_balances(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return [{"currency": {"code": "USD"}, "cash": 10255.0, "buying_power": 20510.0}]

    def get_activities(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return []

    def get_quotes(self, user_id: str, user_secret: str, account_id: str, symbols: List[str]) -> List[Dict[str, Any]]:
        return []

    def place_order(self, user_id: str, user_secret: str, account_id: str, order: Dict[str, Any]) -> Dict[str, Any]:
        order_id = f"stub-{uuid.uuid4().hex[:12]}"
        self.orders[order_id] = {
            "brokerage_order_id": order_id,
            "status": "EXECUTED",
            "execution_price": order.get("limitPrice"),
            "time_executed": dt.datetime.now(dt.timezone.utc).isoformat(),
        }
        return {"brokerage_order_id": order_id, "status": "PENDING"}

    def get_orders(self, user_id: str, user_secret: str, account_id: str) -> List[Dict[str, Any]]:
        return list(self.orders.values())

    def cancel_order(self, user_id: str, user_secret: str, account_id: str, brokerage_order_id: str) -> Dict[str, Any]:
        order = self.orders.setdefault(brokerage_order_id, {"brokerage_order_id": brokerage_order_id})
        order["status"] = "CANCELED"
        return order

    def remove_connection(self, user_id: str, user_secret: str, authorization_id: str) -> None:
        self.removed_authorizations.add(authorization_id)


def build_snaptrade_client(cfg=settings) -> ISnapTradeClient:
    """
    Keys configured -> RealSnapTradeClient.
    Otherwise -> StubSnapTradeClient (keeps the app running).
    """
    if cfg.snaptrade_configured:
        return RealSnapTradeClient(
            cfg.snaptrade_client_id,
            cfg.snaptrade_consumer_key,
            cfg.snaptrade_redirect_uri,
        )
    logger.warning("SnapTrade keys missing; using stub client")
    return StubSnapTradeClient()


def is_user_exists_error(exc: Exception) -> bool:
    """SnapTrade reports a duplicate registration as code 1010 / USER_EXISTS."""
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        code = str(body.get("code") or "")
        detail = str(body.get("detail") or body.get("message") or "")
        if code in ("1010", "USER_EXISTS") or "already exist" in detail.lower():
            return True
    return "already exist" in str(exc).lower()
