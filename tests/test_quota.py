from obsy_insights.models import QuotaRecord, Stage
from obsy_insights.quota import COUNTER_TTL_SECONDS, RATE_LIMITS, QuotaLedger, limit_for_tier

from .utils import FIXED_NOW, QUOTA_KEY, fake_firestore


def ledger_for(fake_redis, tier="free"):
    users = {"user-1": {"subscription_tier": tier}}
    return QuotaLedger(fake_redis, fake_firestore(users), clock=lambda: FIXED_NOW)


def test_tier_limits():
    assert limit_for_tier("guest") == 1
    assert limit_for_tier("free") == 3
    assert limit_for_tier("premium") == 50
    assert limit_for_tier("vanguard") is None
    assert limit_for_tier("platinum") == RATE_LIMITS["free"]


def test_counter_key_is_per_user_and_utc_day(fake_redis):
    assert ledger_for(fake_redis).counter_key("user-1") == QUOTA_KEY


def test_check_admits_below_limit_without_counting(fake_redis):
    fake_redis.set(QUOTA_KEY, 2)
    record, error = ledger_for(fake_redis).check("user-1")
    assert error is None
    assert record.count_today == 2
    assert record.remaining == 1
    assert fake_redis.get(QUOTA_KEY) == "2"


def test_commit_at_limit_minus_one_reaches_limit(fake_redis):
    fake_redis.set(QUOTA_KEY, 2)
    ledger = ledger_for(fake_redis)
    record, _ = ledger.check("user-1")
    updated, error = ledger.commit(record)
    assert error is None
    assert updated.count_today == 3
    assert fake_redis.get(QUOTA_KEY) == "3"
    assert fake_redis.ttls[QUOTA_KEY] == COUNTER_TTL_SECONDS


def test_check_at_limit_is_denied_and_count_unchanged(fake_redis):
    fake_redis.set(QUOTA_KEY, 3)
    record, error = ledger_for(fake_redis).check("user-1")
    assert record is None
    assert error.stage is Stage.RATE_LIMIT
    assert error.status == 429
    assert error.extra == {"remaining": 0, "limit": 3, "tier": "free"}
    assert fake_redis.get(QUOTA_KEY) == "3"


def test_concurrent_request_takes_the_last_slot(fake_redis):
    fake_redis.set(QUOTA_KEY, 2)
    ledger = ledger_for(fake_redis)
    record, _ = ledger.check("user-1")

    # Another request commits between WATCH and EXEC.
    fake_redis.before_execute = lambda store: store.incr(QUOTA_KEY)

    updated, error = ledger.commit(record)
    assert updated is None
    assert error.stage is Stage.RATE_LIMIT
    assert fake_redis.get(QUOTA_KEY) == "3"


def test_commit_retries_after_a_conflict_with_room_left(fake_redis):
    fake_redis.set(QUOTA_KEY, 0)
    ledger = ledger_for(fake_redis)
    record, _ = ledger.check("user-1")
    fake_redis.before_execute = lambda store: store.incr(QUOTA_KEY)

    updated, error = ledger.commit(record)
    assert error is None
    assert updated.count_today == 2


def test_unlimited_tier_is_never_denied(fake_redis):
    fake_redis.set(QUOTA_KEY, 10000)
    ledger = ledger_for(fake_redis, tier="vanguard")
    record, error = ledger.check("user-1")
    assert error is None
    assert record.limit is None
    assert record.remaining is None
    updated, error = ledger.commit(record)
    assert updated.count_today == 10001


def test_unknown_tier_gets_free_limits(fake_redis):
    fake_redis.set(QUOTA_KEY, 3)
    _, error = ledger_for(fake_redis, tier="platinum").check("user-1")
    assert error.extra["tier"] == "free"


def test_missing_user_document_is_free(fake_redis):
    ledger = QuotaLedger(fake_redis, fake_firestore({}), clock=lambda: FIXED_NOW)
    assert ledger.lookup_tier("ghost") == "free"


def test_unavailable_store_is_an_unknown_failure():
    ledger = QuotaLedger(None, clock=lambda: FIXED_NOW)
    record, error = ledger.check("user-1")
    assert record is None
    assert error.stage is Stage.UNKNOWN
    assert error.status == 500


def test_remaining_never_negative():
    assert QuotaRecord(user_id="u", tier="free", count_today=5, limit=3).remaining == 0
