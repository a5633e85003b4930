import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

logger = logging.getLogger(__name__)

USAGE_KINDS = ("mcq", "paper", "voice")
PAID_PLANS = {"monthly", "lifetime"}


class UsageLedgerUnavailable(Exception):
    pass


class UsageLedger(Protocol):
    async def try_consume(self, account_id: str, kind: str) -> bool:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MongoUsageLedger:
    """Daily per-kind generation counters with an atomic increment-if-allowed.

    Free accounts are capped at ``free_daily_limit`` generations per kind per
    UTC day. Paid plans are counted but never capped.
    """

    def __init__(self, db, free_daily_limit: int = 10, now: Callable[[], datetime] = _utc_now):
        self.db = db
        self.free_daily_limit = free_daily_limit
        self._now = now

    def current_period(self) -> str:
        return self._now().date().isoformat()

    async def resolve_plan(self, account_id: str) -> str:
        profile = await self.db.profiles.find_one({"user_id": account_id}, {"_id": 0, "plan": 1})
        plan = str((profile or {}).get("plan") or "free").lower()
        if plan == "lifetime":
            return plan
        if plan == "monthly":
            now_iso = self._now().isoformat()
            active = await self.db.subscriptions.find_one(
                {
                    "user_id": account_id,
                    "plan": "monthly",
                    "status": "active",
                    "expires_at": {"$gt": now_iso},
                },
                {"_id": 0, "razorpay_payment_id": 1},
            )
            if active:
                return plan
            logger.info("usage_plan_expired account_id=%s plan=monthly", account_id)
        return "free"

    async def try_consume(self, account_id: str, kind: str) -> bool:
        if kind not in USAGE_KINDS:
            raise ValueError(f"Unknown usage kind: {kind}")
        try:
            plan = await self.resolve_plan(account_id)
            if plan in PAID_PLANS:
                await self._increment(account_id, kind)
                return True
            # A concurrent first insert for the same period can lose the
            # upsert race; the second attempt sees the winner's document.
            for _ in range(2):
                try:
                    return await self._increment_if_below(account_id, kind, self.free_daily_limit)
                except DuplicateKeyError:
                    continue
            return False
        except PyMongoError as exc:
            raise UsageLedgerUnavailable(str(exc)) from exc

    async def _increment(self, account_id: str, kind: str) -> None:
        now_iso = self._now().isoformat()
        await self.db.usage_counters.update_one(
            {"user_id": account_id, "period": self.current_period()},
            {
                "$setOnInsert": {"created_at": now_iso},
                "$set": {"updated_at": now_iso},
                "$inc": {f"{kind}_count": 1},
            },
            upsert=True,
        )

    async def _increment_if_below(self, account_id: str, kind: str, limit: int) -> bool:
        field = f"{kind}_count"
        now_iso = self._now().isoformat()
        doc = await self.db.usage_counters.find_one_and_update(
            {
                "user_id": account_id,
                "period": self.current_period(),
                "$or": [{field: {"$lt": limit}}, {field: {"$exists": False}}],
            },
            {
                "$setOnInsert": {"created_at": now_iso},
                "$set": {"updated_at": now_iso},
                "$inc": {field: 1},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None

    async def get_usage_snapshot(self, account_id: str) -> Dict[str, Any]:
        plan = await self.resolve_plan(account_id)
        period = self.current_period()
        counters = await self.db.usage_counters.find_one(
            {"user_id": account_id, "period": period},
            {"_id": 0},
        )
        limit: Optional[int] = None if plan in PAID_PLANS else self.free_daily_limit
        usage: Dict[str, Any] = {}
        for kind in USAGE_KINDS:
            used = int((counters or {}).get(f"{kind}_count", 0))
            usage[kind] = {
                "used": used,
                "limit": limit,
                "remaining": None if limit is None else max(0, limit - used),
            }
        return {"plan": plan, "period": period, "usage": usage}
