# flint/main.py
import logging
import ssl
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware

from flint.settings import settings
from flint.db import connect_to_mongo, close_mongo_connection, ensure_indexes
from flint.errors import FlintError
from flint.scheduler import Scheduler
from flint.services.market_data import build_candle_service, build_market_data_service
from flint.services.polling import RetryPolicy
from flint.services.snaptrade_client import build_snaptrade_client

from flint.routes import accounts, admin, auth, market_data, portfolio, snaptrade, teller, trading, watchlist

VERSION = "0.3.0"

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    env: str
    version: str
    db_connected: bool


def build_http_client() -> httpx.AsyncClient:
    """Shared upstream client; carries the Teller mTLS certificate when one is configured."""
    kwargs = {"timeout": settings.http_timeout_seconds}
    if settings.teller_cert_path and settings.teller_key_path:
        ctx = ssl.create_default_context()
        ctx.load_cert_chain(settings.teller_cert_path, settings.teller_key_path)
        kwargs["verify"] = ctx
    return httpx.AsyncClient(**kwargs)


# ---------------- lifespan ----------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.mongodb = await connect_to_mongo()
    await ensure_indexes(app.state.mongodb)
    app.state.http = build_http_client()
    app.state.snaptrade = build_snaptrade_client(settings)
    app.state.market_data = build_market_data_service(settings, app.state.http, app.state.snaptrade)
    app.state.candles = build_candle_service(settings, app.state.http)

    # import here to avoid early import cycles
    from flint.services.sync import run_account_sync

    app.state.scheduler = Scheduler(
        app.state.mongodb,
        app.state.http,
        app.state.snaptrade,
        RetryPolicy.from_settings(settings),
        settings.sync_interval_minutes,
    )
    app.state.scheduler.set_hooks(run_account_sync=run_account_sync)
    app.state.scheduler.start()
    logger.info("Flint %s started (env=%s)", VERSION, settings.app_env)

    try:
        yield
    finally:
        app.state.scheduler.shutdown()
        await app.state.http.aclose()
        await close_mongo_connection()


app = FastAPI(
    title="Flint",
    version=VERSION,
    lifespan=lifespan,
)
app.add_middleware(SessionMiddleware, secret_key=settings.session_secret, same_site="lax")


# ---------------- errors ----------------

@app.exception_handler(FlintError)
async def flint_error_handler(request: Request, exc: FlintError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        {"message": message, "code": "VALIDATION_FAILED", "errors": jsonable_encoder(exc.errors())},
        status_code=400,
    )


# ---------------- health & root ----------------

@app.get("/healthz", response_model=HealthResponse)
async def healthz(request: Request):
    try:
        await request.app.state.mongodb.command("ping")
        db_ok = True
    except Exception as e:
        logger.warning("Mongo health ping failed: %r", e)
        db_ok = False
    return HealthResponse(
        status="ok",
        env=settings.app_env,
        version=VERSION,
        db_connected=db_ok,
    )


@app.get("/")
async def root():
    return {"message": "Flint API is up. Try GET /healthz"}


for module in (auth, accounts, teller, snaptrade, trading, market_data, watchlist, portfolio, admin):
    app.include_router(module.router)
