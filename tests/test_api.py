"""End-to-end route tests over the ASGI app with in-memory backends."""

from bson import ObjectId

from flint.mongo_collections import CONNECTED_ACCOUNTS, USERS
from flint.services.upserts import upsert_connected_accounts
from flint.settings import settings


async def _make_admin(db, email):
    await db[USERS].update_one({"email": email}, {"$set": {"isAdmin": True}})


class TestAuth:
    async def test_requires_session(self, api):
        resp = await api.get("/api/accounts")
        assert resp.status_code == 401
        assert resp.json()["code"] == "UNAUTHORIZED"

    async def test_login_then_user_then_logout(self, api, login):
        user = await login("Me@Example.com")
        assert user["email"] == "me@example.com"

        resp = await api.get("/api/auth/user")
        assert resp.status_code == 200
        assert resp.json()["id"] == user["id"]

        await api.post("/api/auth/logout")
        assert (await api.get("/api/auth/user")).status_code == 401

    async def test_banned_user_is_forbidden(self, api, login, db):
        await login("bad@example.com")
        await db[USERS].update_one({"email": "bad@example.com"}, {"$set": {"isBanned": True}})

        resp = await api.get("/api/auth/user")
        assert resp.status_code == 403

    async def test_invalid_email(self, api):
        resp = await api.post("/api/auth/login", json={"email": "nope"})
        assert resp.status_code == 400

    async def test_missing_body_field_is_400(self, api):
        resp = await api.post("/api/auth/login", json={})
        assert resp.status_code == 400
        assert resp.json()["code"] == "VALIDATION_FAILED"


class TestAccounts:
    async def test_normalised_accounts_and_totals(self, api, login, db):
        user = await login()
        uid = ObjectId(user["id"])
        await upsert_connected_accounts(db, uid, [
            {"provider": "teller", "externalAccountId": "chk", "accountType": "bank",
             "availableBalance": 800.0, "balance": 800.0, "isActive": True},
            {"provider": "teller", "externalAccountId": "card", "accountType": "credit",
             "currentBalance": -450.32, "balance": -450.32, "isActive": True},
            {"provider": "teller", "externalAccountId": "old", "accountType": "bank", "isActive": False},
        ], access_token="secret-token")

        body = (await api.get("/api/accounts")).json()

        by_ext = {a["externalAccountId"]: a for a in body["accounts"]}
        assert by_ext["card"]["display_value"] == 450.32
        assert by_ext["card"]["display_label"] == "Amount spent"
        assert by_ext["chk"]["percent_of_total"] == 100.0
        assert "accessToken" not in by_ext["chk"]
        assert [a["externalAccountId"] for a in body["disconnected"]] == ["old"]
        assert body["totals"]["accountCount"] == 2

    async def test_disconnect(self, api, login, db):
        user = await login()
        rows = await upsert_connected_accounts(db, ObjectId(user["id"]), [
            {"provider": "teller", "externalAccountId": "chk", "accountType": "bank", "isActive": True},
        ])
        resp = await api.post(f"/api/accounts/{rows[0]['_id']}/disconnect")

        assert resp.status_code == 200
        assert (await db[CONNECTED_ACCOUNTS].find_one({"_id": rows[0]["_id"]}))["isActive"] is False

    async def test_disconnect_unknown_account(self, api, login):
        await login()
        resp = await api.post("/api/accounts/doesnotexist/disconnect")
        assert resp.status_code == 404

    async def test_dashboard(self, api, login):
        await login()
        await api.post("/api/watchlist", json={"symbol": "TSLA"})

        body = (await api.get("/api/dashboard")).json()

        assert body["accounts"] == []
        assert body["watchlist"][0]["quote"]["price"] == 322.0
        assert body["recentActivity"][0]["action"] == "login"


class TestTeller:
    async def test_connect_init_unconfigured(self, api, login, monkeypatch):
        await login()
        monkeypatch.setattr(settings, "teller_application_id", None)
        resp = await api.post("/api/teller/connect-init")
        assert resp.status_code == 503

    async def test_connect_init(self, api, login, monkeypatch):
        await login()
        monkeypatch.setattr(settings, "teller_application_id", "app_123")
        body = (await api.post("/api/teller/connect-init")).json()
        assert body["applicationId"] == "app_123"
        assert body["redirectUri"] == "http://testserver/teller/callback"

    async def test_exchange_token_and_pay(self, api, login, teller, scheduler, teller_account_payloads):
        checking, card = teller_account_payloads
        teller.on("GET", "/accounts", [checking, card])
        teller.on("GET", "/accounts/acc_chk/balances", {"available": "900.00", "ledger": "900.00"})
        teller.on("GET", "/accounts/acc_card/balances", {"available": "4000.00", "ledger": "-120.00"})
        teller.on("POST", "/accounts/acc_chk/payments", {"id": "pmt_9", "status": "pending"})
        await login()

        resp = await api.post("/api/teller/exchange-token", json={"token": "tok_abc"})
        assert resp.json()["accounts"] == 2

        resp = await api.post("/api/teller/payments/create",
                              json={"fromAccountId": "acc_chk", "toAccountId": "acc_card", "amount": 120})
        assert resp.status_code == 200
        assert resp.json()["paymentId"] == "pmt_9"
        assert scheduler.payment_polls == ["pmt_9"]

    async def test_payment_mfa_is_403(self, api, login, db, teller):
        user = await login()
        await upsert_connected_accounts(db, ObjectId(user["id"]), [
            {"provider": "teller", "externalAccountId": "acc_chk", "isActive": True},
            {"provider": "teller", "externalAccountId": "acc_card", "isActive": True},
        ], access_token="tok")
        teller.on("POST", "/accounts/acc_chk/payments", "mfa required", status=403)

        resp = await api.post("/api/teller/payments/create",
                              json={"fromAccountId": "acc_chk", "toAccountId": "acc_card", "amount": 10})

        assert resp.status_code == 403
        assert resp.json()["requiresMFA"] is True

    async def test_unknown_payment(self, api, login):
        await login()
        assert (await api.get("/api/teller/payments/pmt_missing")).status_code == 404


class TestSnapTradeAndTrading:
    async def test_sync_before_register_is_401(self, api, login):
        await login()
        assert (await api.post("/api/snaptrade/sync")).status_code == 401

    async def test_register_sync_trade(self, api, login, scheduler):
        await login()
        assert (await api.post("/api/snaptrade/register")).json()["url"].startswith("https://")
        assert (await api.post("/api/snaptrade/sync")).json()["accounts"] == 1

        accounts = (await api.get("/api/snaptrade/accounts")).json()["accounts"]
        account_id = accounts[0]["id"]

        holdings = (await api.get(f"/api/snaptrade/accounts/{account_id}/holdings")).json()
        assert holdings["holdings"][0]["symbol"] == "AAPL"

        resp = await api.post("/api/trade/place", json={
            "accountId": account_id, "symbol": "msft", "side": "buy", "quantity": 1, "orderType": "market",
        })
        assert resp.status_code == 200
        trade = resp.json()["trade"]
        assert trade["status"] == "pending"
        assert len(scheduler.trade_polls) == 1

        orders = (await api.get("/api/trade/orders")).json()["orders"]
        assert [o["id"] for o in orders] == [trade["id"]]

        resp = await api.post(f"/api/trade/orders/{trade['id']}/cancel")
        assert resp.json()["trade"]["status"] == "cancelled"

    async def test_limit_order_without_price_is_400(self, api, login):
        await login()
        resp = await api.post("/api/trade/place", json={
            "accountId": "x", "symbol": "AAPL", "side": "buy", "quantity": 1, "orderType": "limit",
        })
        assert resp.status_code == 400


class TestMarketData:
    async def test_quote_and_miss(self, api, login):
        await login()
        resp = await api.get("/api/market-data", params={"symbol": "tsla"})
        assert resp.json()["price"] == 322.0

        resp = await api.get("/api/market-data", params={"symbol": "NOPE"})
        assert resp.status_code == 404
        assert "message" in resp.json()

    async def test_bulk_limits(self, api, login):
        await login()
        assert (await api.post("/api/market-data/bulk", json={"symbols": []})).status_code == 400
        too_many = [f"S{i}" for i in range(51)]
        assert (await api.post("/api/market-data/bulk", json={"symbols": too_many})).status_code == 400

        body = (await api.post("/api/market-data/bulk", json={"symbols": ["AAPL", "NOPE"]})).json()
        assert body["AAPL"]["price"] == 224.5
        assert body["NOPE"] is None

    async def test_candles(self, api, login, teller):
        await login()
        teller.on("GET", "/v2/aggs/ticker/AAPL/range/1/day/.*", {"results": [
            {"t": 1704067200000, "o": 1.0, "h": 2.0, "l": 0.5, "c": 1.5, "v": 10},
        ]})

        body = (await api.get("/api/market-data/candles", params={"symbol": "aapl", "tf": "1y"})).json()
        assert body["timeframe"] == "1Y"
        assert body["source"] == "polygon"
        assert body["candles"][0]["time"] == 1704067200

        assert (await api.get("/api/market-data/candles")).status_code == 400
        resp = await api.get("/api/market-data/candles", params={"symbol": "NOPE"})
        assert resp.status_code == 404
        assert "message" in resp.json()

    async def test_cache_endpoints_are_admin_only(self, api, login, db):
        await login("plain@example.com")
        assert (await api.get("/api/market-data/cache/stats")).status_code == 403

        await _make_admin(db, "plain@example.com")
        await api.get("/api/market-data", params={"symbol": "AAPL"})
        assert (await api.get("/api/market-data/cache/stats")).json()["keys"] == ["AAPL"]
        await api.post("/api/market-data/cache/clear")
        assert (await api.get("/api/market-data/cache/stats")).json()["size"] == 0


class TestWatchlistRoutes:
    async def test_duplicate_is_409_and_delete(self, api, login):
        await login()
        assert (await api.post("/api/watchlist", json={"symbol": "aapl"})).status_code == 201
        assert (await api.post("/api/watchlist", json={"symbol": "AAPL"})).status_code == 409

        assert (await api.delete("/api/watchlist/AAPL")).status_code == 200
        assert (await api.get("/api/watchlist")).json()["watchlist"] == []


class TestPortfolioRoutes:
    async def test_summary_and_history(self, api, login):
        await login()
        summary = (await api.get("/api/portfolio/summary")).json()
        assert summary["totals"]["netWorth"] == 0.0

        history = (await api.get("/api/portfolio/history", params={"period": "1M"})).json()
        assert len(history["dataPoints"]) == 31

        assert (await api.get("/api/portfolio/history", params={"period": "10Y"})).status_code == 400


class TestAdmin:
    async def test_non_admin_rejected(self, api, login):
        await login()
        assert (await api.get("/api/admin/stats")).status_code == 403

    async def test_admin_manages_users(self, api, login, db):
        target = await login("target@example.com")
        await login("boss@example.com")
        await _make_admin(db, "boss@example.com")

        stats = (await api.get("/api/admin/stats")).json()
        assert stats["totalUsers"] == 2

        resp = await api.patch(f"/api/admin/users/{target['id']}/subscription", json={"tier": "pro"})
        assert resp.json()["subscriptionTier"] == "pro"
        assert (await api.patch(f"/api/admin/users/{target['id']}/subscription", json={"tier": "gold"})).status_code == 400

        resp = await api.patch(f"/api/admin/users/{target['id']}/ban", json={"banned": True})
        assert resp.json()["isBanned"] is True

        detail = (await api.get(f"/api/admin/users/{target['id']}")).json()
        assert detail["user"]["email"] == "target@example.com"

        activity = (await api.get("/api/admin/activity", params={"userId": target["id"]})).json()["activity"]
        assert {a["action"] for a in activity} >= {"login", "admin_subscription", "admin_ban"}

    async def test_admin_by_configured_email(self, api, login, monkeypatch):
        monkeypatch.setattr(settings, "admin_emails", "ops@example.com")
        await login("ops@example.com")
        assert (await api.get("/api/admin/users")).status_code == 200

    async def test_unknown_user(self, api, login, db):
        await login("boss@example.com")
        await _make_admin(db, "boss@example.com")
        assert (await api.get("/api/admin/users/not-an-id")).status_code == 400
        assert (await api.get("/api/admin/users/0123456789abcdef01234567")).status_code == 404


async def test_healthz(api):
    resp = await api.get("/healthz")
    body = resp.json()
    assert resp.status_code == 200
    assert body["status"] == "ok"
    assert isinstance(body["db_connected"], bool)
