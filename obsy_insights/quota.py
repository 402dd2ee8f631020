"""
quota.py - Per-user daily insight quotas keyed by subscription tier

Tier comes from the user's Firestore document; today's count lives in Redis
under a key that includes the UTC date, so each day starts from zero and
stale counters expire on their own.

Admission is split in two:
- `check` runs before any work and only reads.
- `commit` runs once, after a validated generation, and increments with an
  optimistic Redis transaction (WATCH / MULTI / EXEC). The increment only
  happens if the count is still under the limit when EXEC runs, so two
  concurrent requests cannot both take the last slot.
"""

import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Optional, Tuple

import redis

from .models import PipelineError, QuotaRecord, Stage

_logger = logging.getLogger(__name__)

FIRESTORE_USERS_COLLECTION = "users"
COUNTER_KEY_PREFIX = "insight_quota:"
COUNTER_TTL_SECONDS = 48 * 60 * 60

DEFAULT_TIER = "free"

# Daily generation limits. None means unlimited.
RATE_LIMITS = MappingProxyType({
    "guest": 1,
    "free": 3,
    "premium": 50,
    "founder": 100,
    "subscriber": 100,
    "vanguard": None,
})


def limit_for_tier(tier: str) -> Optional[int]:
    return RATE_LIMITS.get(tier, RATE_LIMITS[DEFAULT_TIER])


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotaLedger:
    """Reads tiers from Firestore and counts generations in Redis."""

    def __init__(self, redis_client, firestore_client=None, clock: Callable[[], datetime] = _utc_now):
        self.redis = redis_client
        self.firestore = firestore_client
        self.clock = clock

    def counter_key(self, user_id: str) -> str:
        return f"{COUNTER_KEY_PREFIX}{user_id}:{self.clock().strftime('%Y-%m-%d')}"

    def lookup_tier(self, user_id: str) -> str:
        """Subscription tier from the user document; unknown or unreadable means free."""
        if self.firestore is None:
            return DEFAULT_TIER
        try:
            doc = self.firestore.collection(FIRESTORE_USERS_COLLECTION).document(user_id).get()
        except Exception as e:
            _logger.warning("Tier lookup failed for user %s, assuming %s: %s", user_id, DEFAULT_TIER, e)
            return DEFAULT_TIER
        if not doc.exists:
            return DEFAULT_TIER
        tier = (doc.to_dict() or {}).get("subscription_tier") or DEFAULT_TIER
        if tier not in RATE_LIMITS:
            _logger.warning("Unknown tier '%s' for user %s, applying %s limits", tier, user_id, DEFAULT_TIER)
            return DEFAULT_TIER
        return tier

    def _rate_limited(self, record: QuotaRecord) -> PipelineError:
        return PipelineError.at(
            Stage.RATE_LIMIT,
            "Rate limit exceeded",
            remaining=0,
            limit=record.limit,
            tier=record.tier,
        )

    def check(self, user_id: str) -> Tuple[Optional[QuotaRecord], Optional[PipelineError]]:
        """Admit or deny a request without changing the count."""
        if self.redis is None:
            return None, PipelineError.at(Stage.UNKNOWN, "Quota store unavailable")
        tier = self.lookup_tier(user_id)
        try:
            count = int(self.redis.get(self.counter_key(user_id)) or 0)
        except (redis.exceptions.RedisError, ValueError) as e:
            _logger.error("Quota read failed for user %s: %s", user_id, e)
            return None, PipelineError.at(Stage.UNKNOWN, "Quota store unavailable")

        record = QuotaRecord(user_id=user_id, tier=tier, count_today=count, limit=limit_for_tier(tier))
        if record.limit is not None and count >= record.limit:
            return None, self._rate_limited(record)
        return record, None

    def commit(self, record: QuotaRecord) -> Tuple[Optional[QuotaRecord], Optional[PipelineError]]:
        """
        Count one successful generation.

        Returns the updated record, or a rate_limit failure when a concurrent
        request used the last slot between `check` and now.
        """
        key = self.counter_key(record.user_id)
        try:
            with self.redis.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        current = int(pipe.get(key) or 0)
                        if record.limit is not None and current >= record.limit:
                            pipe.unwatch()
                            denied = record.model_copy(update={"count_today": current})
                            return None, self._rate_limited(denied)
                        pipe.multi()
                        pipe.incr(key)
                        pipe.expire(key, COUNTER_TTL_SECONDS)
                        new_count = int(pipe.execute()[0])
                        return record.model_copy(update={"count_today": new_count}), None
                    except redis.exceptions.WatchError:
                        _logger.debug("Quota counter %s changed during commit, retrying", key)
                        continue
        except (redis.exceptions.RedisError, ValueError) as e:
            _logger.error("Quota commit failed for user %s: %s", record.user_id, e)
            return None, PipelineError.at(Stage.UNKNOWN, "Quota store unavailable")
