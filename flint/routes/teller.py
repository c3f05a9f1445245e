# flint/routes/teller.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from flint.errors import ServiceNotConfigured, ValidationFailed
from flint.routes.deps import current_user, get_db, get_http, get_scheduler, serialize
from flint.services import payments
from flint.services.balances import normalize_accounts
from flint.services.connections import connect_teller
from flint.services.mappers import map_teller_transactions
from flint.services.teller_client import build_teller_client
from flint.services.user_management import get_connected_account, get_connected_accounts
from flint.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teller", tags=["teller"])


class ExchangeTokenReq(BaseModel):
    token: Optional[str] = None
    enrollmentId: Optional[str] = None
    tellerToken: Optional[str] = None


class PaymentAccountsReq(BaseModel):
    fromAccountId: str
    toAccountId: str


class CreatePaymentReq(PaymentAccountsReq):
    amount: float
    memo: Optional[str] = None


@router.post("/connect-init")
async def connect_init(request: Request, user=Depends(current_user)):
    if not settings.teller_configured:
        raise ServiceNotConfigured("Banking service not configured")
    logger.info("Initializing Teller Connect for %s", user["_id"])
    return {
        "applicationId": settings.teller_application_id,
        "environment": settings.teller_environment,
        "redirectUri": str(request.base_url).rstrip("/") + "/teller/callback",
    }


@router.post("/exchange-token")
async def exchange_token(req: ExchangeTokenReq, user=Depends(current_user), db=Depends(get_db), http=Depends(get_http)):
    access_token = req.token or req.tellerToken or req.enrollmentId
    if not access_token:
        raise ValidationFailed("Teller access token is required")
    return await connect_teller(db, user["_id"], access_token, http)


@router.get("/accounts")
async def accounts(user=Depends(current_user), db=Depends(get_db)):
    rows = await get_connected_accounts(db, user["_id"], provider="teller")
    return {"accounts": serialize(normalize_accounts(rows))}


@router.get("/transactions/{account_id}")
async def transactions(
    account_id: str,
    count: int = Query(50, ge=1, le=500),
    user=Depends(current_user),
    db=Depends(get_db),
    http=Depends(get_http),
):
    account = await get_connected_account(db, user["_id"], account_id)
    raw = await build_teller_client(account, http).list_transactions(account["externalAccountId"], count)
    return {"transactions": map_teller_transactions(raw or [])}


# ---------------- payments ----------------

@router.get("/payments/capability")
async def payment_capability(
    fromAccountId: Optional[str] = None,
    toAccountId: Optional[str] = None,
    user=Depends(current_user),
    db=Depends(get_db),
    http=Depends(get_http),
):
    return await payments.check_capability(db, user["_id"], fromAccountId, toAccountId, http)


@router.post("/payments/prepare")
async def payment_prepare(req: PaymentAccountsReq, user=Depends(current_user), db=Depends(get_db), http=Depends(get_http)):
    return await payments.prepare_payment(db, user["_id"], req.fromAccountId, req.toAccountId, http)


@router.post("/payments/create")
async def payment_create(
    req: CreatePaymentReq,
    user=Depends(current_user),
    db=Depends(get_db),
    http=Depends(get_http),
    scheduler=Depends(get_scheduler),
):
    result = await payments.create_payment(
        db, user["_id"], req.fromAccountId, req.toAccountId, req.amount, req.memo, http
    )
    scheduler.enqueue_payment_poll(result["paymentId"])
    return {"success": True, **result}


@router.get("/payments/{payment_id}")
async def payment_status(payment_id: str, user=Depends(current_user), db=Depends(get_db), http=Depends(get_http)):
    return await payments.get_payment_status(db, user["_id"], payment_id, http)
