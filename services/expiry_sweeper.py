"""
Periodic expiry of trials and paid periods.

The sweep issues the same conditional updates as the lazy expiry on the read
path, so it converges with concurrent requests and running it twice is a no-op.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from crud.subscription import SubscriptionStore
from utils.clock import Clock, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    trials_expired: int = 0
    subscriptions_expired: int = 0

    def to_dict(self) -> dict:
        return {
            "trialsExpired": self.trials_expired,
            "subscriptionsExpired": self.subscriptions_expired,
        }


class ExpirySweeper:

    def __init__(self, session_factory: async_sessionmaker, clock: Clock, trial_days: Optional[int] = None):
        self.session_factory = session_factory
        self.clock = clock
        self.trial_days = settings.trial_days if trial_days is None else trial_days

    async def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = as_utc(now) or self.clock.now()

        async with self.session_factory() as session:
            async with session.begin():
                store = SubscriptionStore(session)
                trials = await store.expire_trials(now, self.trial_days)
                subscriptions = await store.expire_subscriptions(now)
                rows = await store.expire_subscription_rows(now)
                counts = await store.status_counts()

        result = SweepResult(trials_expired=trials, subscriptions_expired=subscriptions)
        if trials or subscriptions or rows:
            logger.info(
                f"Expiry sweep at {now.isoformat()}: {trials} trial(s), "
                f"{subscriptions} subscription(s) expired, {rows} subscription row(s) closed"
            )
        logger.info(f"User status counts: {counts}")
        return result
