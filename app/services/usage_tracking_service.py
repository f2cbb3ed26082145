"""
Usage tracking service for story generation limits
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.database_models import User, SubscriptionTier
from app.models.story import QuotaStatus
from app.services.profile_store import ProfileStore, SessionProfileStore, prune_guest_stories_before

logger = logging.getLogger(__name__)


class UsageTrackingService:
    """Service for checking and recording story quotas"""

    @staticmethod
    def get_tier_limit(tier: Optional[SubscriptionTier]) -> Optional[int]:
        """Monthly story limit for a tier, None for unlimited"""
        if tier == SubscriptionTier.PREMIUM_UNLIMITED:
            return None
        if tier == SubscriptionTier.PREMIUM_15:
            return settings.PREMIUM_15_STORIES_PER_MONTH
        return settings.FREE_STORIES_PER_MONTH

    @staticmethod
    def check_quota(db: Session, user_id: str, now: Optional[datetime] = None) -> QuotaStatus:
        """
        Check whether an account may generate another story this month.
        Rolls the monthly counter over first if the month has changed.
        """
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            return QuotaStatus(allowed=False, used=0, limit=None, reason="account_not_found")

        UsageTrackingService._reset_monthly_count_if_needed(user, db, now)

        used = user.stories_this_month or 0
        limit = UsageTrackingService.get_tier_limit(user.subscription_tier)

        if limit is not None and used >= limit:
            return QuotaStatus(
                allowed=False,
                used=used,
                limit=limit,
                reason=f"Monthly limit of {limit} stories reached"
            )
        return QuotaStatus(allowed=True, used=used, limit=limit)

    @staticmethod
    def check_guest_quota(store: SessionProfileStore, now: Optional[datetime] = None) -> QuotaStatus:
        """Check the guest cap over the rolling window, pruning expired guest stories"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=settings.GUEST_STORY_WINDOW_DAYS)
        pruned = prune_guest_stories_before(store.db, cutoff)
        if pruned:
            logger.info(f"Pruned {pruned} expired guest stories")

        used = len(store.list_stories())
        limit = settings.GUEST_STORY_LIMIT
        if used >= limit:
            return QuotaStatus(
                allowed=False,
                used=used,
                limit=limit,
                reason=f"Guest limit of {limit} stories reached. Sign up to create more."
            )
        return QuotaStatus(allowed=True, used=used, limit=limit)

    @staticmethod
    def check_store_quota(store: ProfileStore, db: Optional[Session] = None,
                          now: Optional[datetime] = None) -> QuotaStatus:
        """Pick the guest or account policy for a profile store"""
        if store.is_guest:
            return UsageTrackingService.check_guest_quota(store, now)
        return UsageTrackingService.check_quota(db, store.owner_id, now)

    @staticmethod
    def record_story_generation(db: Session, user_id: str, now: Optional[datetime] = None) -> bool:
        """Count a successfully produced story against the account"""
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            logger.warning(f"Cannot record usage, account {user_id} not found")
            return False

        UsageTrackingService._reset_monthly_count_if_needed(user, db, now)
        user.stories_this_month = (user.stories_this_month or 0) + 1
        db.commit()
        return True

    @staticmethod
    def _reset_monthly_count_if_needed(user: User, db: Session, now: Optional[datetime] = None):
        """Reset the monthly story count if we're in a new calendar month"""
        now = now or datetime.now(timezone.utc)
        reset_date = user.monthly_reset_date

        if reset_date is None or (reset_date.year, reset_date.month) != (now.year, now.month):
            if user.stories_this_month:
                logger.info(f"New month for account {user.id}, resetting story count")
            user.stories_this_month = 0
            user.monthly_reset_date = now
            db.commit()


# Global instance
usage_tracking_service = UsageTrackingService()
