# flint/scheduler.py
import datetime as dt
import logging
from datetime import timezone

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from flint.services.polling import RetryPolicy

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        http: httpx.AsyncClient,
        snaptrade,
        policy: RetryPolicy,
        sync_interval_minutes: int = 15,
    ):
        self.db = db
        self.http = http
        self.snaptrade = snaptrade
        self.policy = policy
        self.sync_interval_minutes = sync_interval_minutes
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.run_account_sync = None

    def set_hooks(self, run_account_sync):
        """Store the sync function to avoid circular imports."""
        self.run_account_sync = run_account_sync

    def start(self):
        # keep only one instance if the previous sweep is still running
        self.scheduler.add_job(
            self.refresh_all_users_job,
            IntervalTrigger(minutes=self.sync_interval_minutes),
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()

    def shutdown(self):
        if getattr(self.scheduler, "running", False):
            self.scheduler.shutdown(wait=False)

    async def refresh_all_users_job(self):
        # Lazy import to avoid circular references at import time
        from flint.services.sync import list_active_users

        try:
            user_ids = await list_active_users(self.db)
        except Exception:
            logger.exception("Listing active users for sync failed")
            return

        for uid in user_ids:
            try:
                oid = ObjectId(uid) if isinstance(uid, str) else uid
                result = await self.refresh_one_user(oid)
                logger.info("Synced user %s: %s", oid, result["updated"])
            except Exception:
                logger.exception("Scheduled sync failed for user %s", uid)

    async def refresh_one_user(self, user_id: ObjectId):
        return await self.run_account_sync(self.db, user_id, http=self.http, snaptrade=self.snaptrade)

    def _stamp(self) -> int:
        return int(dt.datetime.now(timezone.utc).timestamp() * 1000)

    def enqueue_payment_poll(self, payment_id: str):
        self.scheduler.add_job(
            self.run_payment_poll_job,
            trigger="date",                       # run once ASAP
            kwargs={"payment_id": payment_id},
            id=f"payment-{payment_id}-{self._stamp()}",
            max_instances=1,
            replace_existing=False,
        )

    def enqueue_trade_poll(self, trade_id: ObjectId):
        self.scheduler.add_job(
            self.run_trade_poll_job,
            trigger="date",
            kwargs={"trade_id": str(trade_id)},
            id=f"trade-{trade_id}-{self._stamp()}",
            max_instances=1,
            replace_existing=False,
        )

    async def run_payment_poll_job(self, payment_id: str):
        from flint.services.payments import poll_payment

        try:
            record = await poll_payment(self.db, payment_id, self.http, self.policy)
            logger.info("Payment %s settled as %s", payment_id, record.get("flowState"))
        except Exception:
            logger.exception("Payment poll job failed for %s", payment_id)

    async def run_trade_poll_job(self, trade_id: str):
        from flint.services.trading import poll_trade

        try:
            trade = await poll_trade(self.db, ObjectId(trade_id), self.snaptrade, self.policy)
            logger.info("Trade %s settled as %s", trade_id, trade.get("status"))
        except Exception:
            logger.exception("Trade poll job failed for %s", trade_id)
