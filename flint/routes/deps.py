# flint/routes/deps.py
"""Request-scoped dependencies shared by every router."""
from typing import Any, Dict

from bson import ObjectId
from fastapi import Depends, Request

from flint.errors import Forbidden, Unauthorized
from flint.settings import settings
from flint.services.user_management import get_user_by_id

# never sent to the browser
SECRET_FIELDS = {"accessToken", "snaptradeUserSecret"}


def get_db(request: Request):
    return request.app.state.mongodb


def get_http(request: Request):
    return request.app.state.http


def get_snaptrade(request: Request):
    return request.app.state.snaptrade


def get_market_data(request: Request):
    return request.app.state.market_data


def get_candles(request: Request):
    return request.app.state.candles


def get_scheduler(request: Request):
    return request.app.state.scheduler


async def current_user(request: Request, db=Depends(get_db)) -> Dict[str, Any]:
    user_id = request.session.get("userId")
    if not user_id or not ObjectId.is_valid(user_id):
        raise Unauthorized("Not logged in")
    user = await get_user_by_id(db, ObjectId(user_id))
    if not user:
        request.session.clear()
        raise Unauthorized("Not logged in")
    if user.get("isBanned"):
        raise Forbidden("Account suspended", code="BANNED")
    return user


def is_admin(user: Dict[str, Any]) -> bool:
    return bool(user.get("isAdmin")) or user.get("email") in settings.admin_email_list


async def admin_user(user=Depends(current_user)) -> Dict[str, Any]:
    if not is_admin(user):
        raise Forbidden("Admin access required")
    return user


def serialize(value: Any) -> Any:
    """Mongo docs -> JSON-ready: ObjectIds become strings, ``_id`` becomes ``id``, secrets are dropped."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k in SECRET_FIELDS:
                continue
            out["id" if k == "_id" else k] = serialize(v)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "subscriptionTier": user.get("subscriptionTier", "free"),
        "isAdmin": is_admin(user),
        "isBanned": bool(user.get("isBanned")),
        "hasSnapTrade": bool(user.get("snaptradeUserId")),
        "createdAt": user.get("createdAt"),
        "lastLogin": user.get("lastLogin"),
    }
