# flint/routes/auth.py
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from flint.errors import Forbidden
from flint.routes.deps import current_user, get_db, public_user
from flint.services.user_management import get_or_create_user, log_activity

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginReq(BaseModel):
    email: str


@router.post("/login")
async def login(req: LoginReq, request: Request, db=Depends(get_db)):
    """Get-or-create by email and start a session."""
    user = await get_or_create_user(db, req.email)
    if user.get("isBanned"):
        raise Forbidden("Account suspended", code="BANNED")
    request.session["userId"] = str(user["_id"])
    await log_activity(db, user["_id"], "login", "Signed in")
    return {"user": public_user(user)}


@router.post("/logout")
async def logout(request: Request):
    request.session.clear()
    return {"success": True}


@router.get("/user")
async def get_user(user=Depends(current_user)):
    return public_user(user)
