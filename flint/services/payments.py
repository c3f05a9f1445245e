# flint/services/payments.py
"""
Credit-card payments from a checking/savings account through Teller.

A payment walks idle -> preparing -> creating -> processing and is then
settled by a background poll into completed or failed. The flow state is
stored on the payment record so the status endpoint can report it.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

import httpx
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from flint.errors import FlintError, MFARequired, NotFound, ProviderError, ValidationFailed
from flint.mongo_collections import CONNECTED_ACCOUNTS, PAYMENTS
from flint.services.mappers import to_float
from flint.services.polling import FlowState, OperationFlow, RetryPolicy, poll
from flint.services.teller_client import build_teller_client
from flint.services.user_management import get_connected_account, log_activity

logger = logging.getLogger(__name__)

FUNDING_SUBTYPES = ("checking", "savings")
PAYMENT_SUCCESS = {"completed", "posted", "settled", "succeeded"}
PAYMENT_FAILURE = {"failed", "cancelled", "canceled", "returned", "rejected"}


def _is_credit_card(raw: Dict[str, Any]) -> bool:
    return (raw.get("subtype") or "").lower() == "credit_card" or (raw.get("type") or "").lower() == "credit"


async def check_capability(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    from_account_id: Optional[str],
    to_account_id: Optional[str],
    http: httpx.AsyncClient,
) -> Dict[str, Any]:
    """Never raises; answers {canPay, reason}."""
    if not from_account_id or not to_account_id:
        return {"canPay": False, "reason": "Both fromAccountId and toAccountId are required"}
    try:
        src = await get_connected_account(db, user_id, from_account_id)
        dst = await get_connected_account(db, user_id, to_account_id)
        src_raw = await build_teller_client(src, http).get_account(src["externalAccountId"])
        dst_raw = await build_teller_client(dst, http).get_account(dst["externalAccountId"])
    except FlintError as e:
        return {"canPay": False, "reason": e.message}

    if (src_raw.get("subtype") or "").lower() not in FUNDING_SUBTYPES:
        return {"canPay": False, "reason": "Funding account must be checking or savings"}
    if not _is_credit_card(dst_raw):
        return {"canPay": False, "reason": "Destination must be a credit card account"}
    return {"canPay": True}


async def prepare_payment(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    from_account_id: str,
    to_account_id: str,
    http: httpx.AsyncClient,
) -> Dict[str, Any]:
    """Statement metadata for the card being paid. Missing balances are not an error."""
    if not from_account_id or not to_account_id:
        raise ValidationFailed("Both fromAccountId and toAccountId are required")
    await get_connected_account(db, user_id, from_account_id)
    card_row = await get_connected_account(db, user_id, to_account_id)

    teller = build_teller_client(card_row, http)
    card = await teller.get_account(card_row["externalAccountId"])
    try:
        balances = await teller.get_balances(card_row["externalAccountId"])
    except ProviderError as e:
        logger.info("Card balances unavailable during prepare: %s", e.message)
        balances = {}

    statement = balances.get("statement")
    if statement is None:
        statement = balances.get("current", balances.get("ledger"))
    return {
        "minimumDue": to_float(card.get("minimum_payment_due") or balances.get("minimum_payment_due")),
        "statementBalance": to_float(statement),
        "dueDate": card.get("payment_due_date"),
        "accountName": card.get("name") or "Credit Card",
        "institution": (card.get("institution") or {}).get("name") or "Bank",
    }


async def create_payment(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    from_account_id: str,
    to_account_id: str,
    amount: float,
    memo: Optional[str],
    http: httpx.AsyncClient,
) -> Dict[str, Any]:
    flow = OperationFlow()
    flow.advance(FlowState.PREPARING)
    if not from_account_id or not to_account_id:
        raise ValidationFailed("fromAccountId, toAccountId, and amount are required")
    if amount is None or amount <= 0:
        raise ValidationFailed("Payment amount must be greater than zero")
    amount = round(float(amount), 2)

    src = await get_connected_account(db, user_id, from_account_id)
    dst = await get_connected_account(db, user_id, to_account_id)

    flow.advance(FlowState.CREATING)
    payload = {
        "amount": f"{amount:.2f}",
        "currency": "USD",
        "recipient_account_id": dst["externalAccountId"],
        "memo": memo or f"Credit card payment - {dt.date.today().isoformat()}",
        "payment_scheme": "zelle",
    }
    try:
        payment = await build_teller_client(src, http).create_payment(src["externalAccountId"], payload)
    except MFARequired:
        logger.info("Teller requires MFA for payment by %s", user_id)
        raise

    flow.advance(FlowState.PROCESSING)
    now = dt.datetime.now(dt.timezone.utc)
    status = (payment.get("status") or "pending").lower()
    record = {
        "paymentId": payment["id"],
        "userId": user_id,
        "fromAccountId": src["_id"],
        "toAccountId": dst["_id"],
        "fromExternalAccountId": src["externalAccountId"],
        "amount": amount,
        "memo": payload["memo"],
        "status": status,
        "flowState": flow.state.value,
        "createdAt": now,
        "updatedAt": now,
    }
    await db[PAYMENTS].insert_one(record)
    await log_activity(db, user_id, "payment_created", f"Card payment of ${amount:,.2f}", {"paymentId": payment["id"]})

    estimated = payment.get("estimated_completion") or (now + dt.timedelta(days=3)).isoformat()
    return {
        "paymentId": payment["id"],
        "status": status,
        "amount": amount,
        "flowState": flow.state.value,
        "estimatedCompletion": estimated,
    }


def _flow_state_for(status: str, current: str) -> str:
    if status in PAYMENT_SUCCESS:
        return FlowState.COMPLETED.value
    if status in PAYMENT_FAILURE:
        return FlowState.FAILED.value
    return current


def _payment_view(record: Dict[str, Any], **extra) -> Dict[str, Any]:
    return {
        "paymentId": record["paymentId"],
        "status": record["status"],
        "flowState": record.get("flowState"),
        "amount": record["amount"],
        "fromAccount": str(record["fromAccountId"]),
        "toAccount": str(record["toAccountId"]),
        "createdAt": record["createdAt"],
        "updatedAt": record.get("updatedAt"),
        **extra,
    }


async def _fetch_and_store_status(db: AsyncIOMotorDatabase, record: Dict[str, Any], http: httpx.AsyncClient) -> Dict[str, Any]:
    src = await db[CONNECTED_ACCOUNTS].find_one({"_id": record["fromAccountId"]}) or {}
    live = await build_teller_client(src, http).get_payment(record["fromExternalAccountId"], record["paymentId"])
    status = (live.get("status") or record["status"]).lower()
    fields = {
        "status": status,
        "flowState": _flow_state_for(status, record.get("flowState") or FlowState.PROCESSING.value),
        "updatedAt": dt.datetime.now(dt.timezone.utc),
    }
    await db[PAYMENTS].update_one({"_id": record["_id"]}, {"$set": fields})
    return {**record, **fields}


async def get_payment_status(
    db: AsyncIOMotorDatabase,
    user_id: ObjectId,
    payment_id: str,
    http: httpx.AsyncClient,
) -> Dict[str, Any]:
    """Live status from Teller; the stored record with cached=True when Teller is unreachable."""
    record = await db[PAYMENTS].find_one({"paymentId": payment_id, "userId": user_id})
    if not record:
        raise NotFound("Payment not found")
    try:
        fresh = await _fetch_and_store_status(db, record, http)
    except FlintError as e:
        logger.warning("Teller payment status failed for %s: %s", payment_id, e.message)
        return _payment_view(record, cached=True)
    return _payment_view(fresh)


async def poll_payment(
    db: AsyncIOMotorDatabase,
    payment_id: str,
    http: httpx.AsyncClient,
    policy: RetryPolicy,
    **poll_kwargs,
) -> Dict[str, Any]:
    """Settle a processing payment; running out of attempts marks it failed."""
    record = await db[PAYMENTS].find_one({"paymentId": payment_id})
    if not record:
        raise NotFound("Payment not found")

    state = {"record": record}

    async def fetch():
        state["record"] = await _fetch_and_store_status(db, state["record"], http)
        return state["record"]

    result = await poll(
        fetch,
        lambda r: r["flowState"] in (FlowState.COMPLETED.value, FlowState.FAILED.value),
        policy,
        **poll_kwargs,
    )
    if not result.done:
        reason = "timed out" if result.timed_out else f"no final status after {result.attempts} attempts"
        await db[PAYMENTS].update_one(
            {"paymentId": payment_id},
            {"$set": {"flowState": FlowState.FAILED.value, "lastError": result.last_error or reason,
                      "updatedAt": dt.datetime.now(dt.timezone.utc)}},
        )
        logger.warning("Payment %s polling gave up: %s", payment_id, reason)
        return {**state["record"], "flowState": FlowState.FAILED.value}
    return state["record"]
