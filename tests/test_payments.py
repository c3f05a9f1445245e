"""Tests for Teller card payments."""

import httpx
import pytest
from bson import ObjectId

from flint.errors import MFARequired, ValidationFailed
from flint.mongo_collections import ACTIVITY_LOG, PAYMENTS
from flint.services import payments
from flint.services.polling import RetryPolicy
from flint.services.upserts import upsert_connected_accounts


async def _noop_sleep(_):
    return None


@pytest.fixture
async def linked(db, teller, teller_account_payloads):
    """A user with a checking account and a card on one Teller enrollment."""
    checking, card = teller_account_payloads
    uid = ObjectId()
    rows = await upsert_connected_accounts(db, uid, [
        {"provider": "teller", "externalAccountId": "acc_chk", "accountType": "bank", "subtype": "checking", "isActive": True},
        {"provider": "teller", "externalAccountId": "acc_card", "accountType": "credit", "subtype": "credit_card", "isActive": True},
    ], access_token="tok")
    teller.on("GET", "/accounts/acc_chk", checking)
    teller.on("GET", "/accounts/acc_card", {**card, "minimum_payment_due": "35.00", "payment_due_date": "2024-06-15"})
    return uid, str(rows[0]["_id"]), str(rows[1]["_id"])


class TestCapability:
    async def test_checking_to_card_allowed(self, db, http, linked):
        uid, chk, card = linked
        assert await payments.check_capability(db, uid, chk, card, http) == {"canPay": True}

    async def test_card_cannot_fund(self, db, http, linked):
        uid, chk, card = linked
        result = await payments.check_capability(db, uid, card, chk, http)
        assert result["canPay"] is False
        assert "checking or savings" in result["reason"]

    async def test_teller_timeout_is_a_reason_not_a_crash(self, db, http, teller, linked):
        uid, chk, card = linked

        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        teller.on("GET", "/accounts/acc_card", timeout)

        result = await payments.check_capability(db, uid, chk, card, http)

        assert result["canPay"] is False
        assert "unreachable" in result["reason"]

    async def test_missing_ids(self, db, http):
        result = await payments.check_capability(db, ObjectId(), None, "x", http)
        assert result["canPay"] is False

    async def test_unknown_account_reports_reason(self, db, http, linked):
        uid, chk, _ = linked
        result = await payments.check_capability(db, uid, chk, str(ObjectId()), http)
        assert result == {"canPay": False, "reason": "Account not found"}


class TestPrepare:
    async def test_statement_metadata(self, db, http, teller, linked):
        uid, chk, card = linked
        teller.on("GET", "/accounts/acc_card/balances", {"available": "3500.00", "ledger": "1234.56"})

        result = await payments.prepare_payment(db, uid, chk, card, http)

        assert result == {
            "minimumDue": 35.0,
            "statementBalance": 1234.56,
            "dueDate": "2024-06-15",
            "accountName": "Sapphire",
            "institution": "Chase",
        }

    async def test_balances_unavailable_is_not_an_error(self, db, http, teller, linked):
        uid, chk, card = linked
        teller.on("GET", "/accounts/acc_card/balances", {"error": "nope"}, status=502)

        result = await payments.prepare_payment(db, uid, chk, card, http)
        assert result["statementBalance"] is None
        assert result["minimumDue"] == 35.0


class TestCreate:
    async def test_persists_processing_record(self, db, http, teller, linked):
        uid, chk, card = linked
        teller.on("POST", "/accounts/acc_chk/payments", {"id": "pmt_1", "status": "pending"})

        result = await payments.create_payment(db, uid, chk, card, 125.5, None, http)

        assert result["paymentId"] == "pmt_1"
        assert result["flowState"] == "processing"
        record = await db[PAYMENTS].find_one({"paymentId": "pmt_1"})
        assert record["amount"] == 125.5
        assert record["status"] == "pending"
        assert str(record["toAccountId"]) == card
        assert await db[ACTIVITY_LOG].count_documents({"action": "payment_created"}) == 1

    @pytest.mark.parametrize("amount", [0, -5])
    async def test_rejects_non_positive_amount(self, db, http, linked, amount):
        uid, chk, card = linked
        with pytest.raises(ValidationFailed):
            await payments.create_payment(db, uid, chk, card, amount, None, http)

    async def test_mfa_surfaces_and_nothing_is_stored(self, db, http, teller, linked):
        uid, chk, card = linked
        teller.on("POST", "/accounts/acc_chk/payments", "MFA required for this payment", status=403)

        with pytest.raises(MFARequired) as exc:
            await payments.create_payment(db, uid, chk, card, 10, None, http)

        assert exc.value.to_dict()["requiresMFA"] is True
        assert await db[PAYMENTS].count_documents({}) == 0


class TestStatus:
    async def _create(self, db, http, teller, linked):
        uid, chk, card = linked
        teller.on("POST", "/accounts/acc_chk/payments", {"id": "pmt_1", "status": "pending"})
        await payments.create_payment(db, uid, chk, card, 50, None, http)
        return uid

    async def test_live_status_updates_record(self, db, http, teller, linked):
        uid = await self._create(db, http, teller, linked)
        teller.on("GET", "/accounts/acc_chk/payments/pmt_1", {"id": "pmt_1", "status": "completed"})

        result = await payments.get_payment_status(db, uid, "pmt_1", http)

        assert result["status"] == "completed"
        assert result["flowState"] == "completed"
        assert "cached" not in result

    async def test_teller_down_serves_cached_record(self, db, http, teller, linked):
        uid = await self._create(db, http, teller, linked)
        teller.on("GET", "/accounts/acc_chk/payments/pmt_1", {"error": "down"}, status=503)

        result = await payments.get_payment_status(db, uid, "pmt_1", http)

        assert result["cached"] is True
        assert result["status"] == "pending"

    async def test_teller_unreachable_serves_cached_record(self, db, http, teller, linked):
        uid = await self._create(db, http, teller, linked)

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        teller.on("GET", "/accounts/acc_chk/payments/pmt_1", refuse)

        result = await payments.get_payment_status(db, uid, "pmt_1", http)

        assert result["cached"] is True
        assert result["status"] == "pending"

    async def test_poll_settles_payment(self, db, http, teller, linked):
        await self._create(db, http, teller, linked)
        statuses = iter(["pending", "processing", "posted"])
        teller.on("GET", "/accounts/acc_chk/payments/pmt_1", lambda req: {"id": "pmt_1", "status": next(statuses)})

        record = await payments.poll_payment(db, "pmt_1", http, RetryPolicy(max_attempts=5, interval=0), sleep=_noop_sleep)

        assert record["flowState"] == "completed"
        assert (await db[PAYMENTS].find_one({"paymentId": "pmt_1"}))["status"] == "posted"

    async def test_poll_gives_up_and_marks_failed(self, db, http, teller, linked):
        await self._create(db, http, teller, linked)
        teller.on("GET", "/accounts/acc_chk/payments/pmt_1", {"id": "pmt_1", "status": "pending"})

        record = await payments.poll_payment(db, "pmt_1", http, RetryPolicy(max_attempts=3, interval=0), sleep=_noop_sleep)

        assert record["flowState"] == "failed"
        stored = await db[PAYMENTS].find_one({"paymentId": "pmt_1"})
        assert stored["flowState"] == "failed"
        assert "3 attempts" in stored["lastError"]
