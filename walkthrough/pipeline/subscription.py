"""
Subscription plans and the monthly video quota gate.

Plan lookups are cached per user in an injected TTLCache. Any lookup
failure falls back to the free plan.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .cache import TTLCache
from .errors import PipelineError, QuotaExceededError
from .models import PlanFeatures, SubscriptionStatus

logger = logging.getLogger(__name__)

FREE_PLAN = SubscriptionStatus(
    plan="free",
    is_subscribed=False,
    features=PlanFeatures(premium_templates=False, max_projects=5, max_videos_per_month=10),
)
PREMIUM_PLAN = SubscriptionStatus(
    plan="premium",
    is_subscribed=True,
    features=PlanFeatures(premium_templates=True, max_projects=50, max_videos_per_month=100),
)
PLANS = {"free": FREE_PLAN, "premium": PREMIUM_PLAN}


def month_start(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class SubscriptionService:
    """
    Usage:
        service = SubscriptionService(repository, TTLCache(300))
        await service.ensure_can_generate(user_id)
    """

    def __init__(self, repository, cache: TTLCache):
        self.repository = repository
        self.cache = cache

    async def get_status(self, user_id: str) -> SubscriptionStatus:
        cached = self.cache.get(user_id)
        if cached is not None:
            return cached

        try:
            plan = await self.repository.get_user_plan(user_id)
        except PipelineError as e:
            logger.error(f"Plan lookup failed for user {user_id}, using free tier: {e.message}")
            return FREE_PLAN.model_copy(deep=True)

        status = PLANS.get(plan, FREE_PLAN).model_copy(deep=True)
        self.cache.set(user_id, status)
        return status

    async def can_access_premium_templates(self, user_id: str) -> bool:
        status = await self.get_status(user_id)
        return status.features.premium_templates

    def clear(self, user_id: str) -> None:
        self.cache.invalidate(user_id)

    async def ensure_can_generate(self, user_id: str, now: Optional[datetime] = None) -> int:
        """
        Raise QuotaExceededError when the user has used up this month's
        final videos. Returns the number remaining otherwise.
        """
        status = await self.get_status(user_id)
        used = await self.repository.count_final_videos_since(user_id, month_start(now))
        limit = status.features.max_videos_per_month

        if used >= limit:
            raise QuotaExceededError(
                f"Monthly video limit reached ({used}/{limit}) on the {status.plan} plan"
            )
        return limit - used
