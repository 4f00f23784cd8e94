import datetime as dt

from app.services import subscription_cache
from app.services.reconciliation import EventKind
from app.services.subscriptions import metadata_int, parse_linked_from_metadata, subscription_period_end


def test_parse_linked_accepts_csv_and_lists():
    ids, emails = parse_linked_from_metadata({"linkedUserIds": "3, 4,3,x", "linked_emails": ["A@x.com", "a@x.com", ""]})
    assert ids == [3, 4]
    assert emails == ["a@x.com"]


def test_metadata_int_uses_first_present_alias():
    assert metadata_int({"plan_id": "12"}, "planId", "plan_id") == 12
    assert metadata_int({"planId": "1.5"}, "planId") is None
    assert metadata_int({}, "planId") is None


def test_period_end_falls_back_to_first_item():
    obj = {"items": {"data": [{"current_period_end": 1_700_000_000}]}}
    assert subscription_period_end(obj) == dt.datetime.fromtimestamp(1_700_000_000, tz=dt.timezone.utc)


def test_event_kind_is_closed_set():
    assert EventKind.parse("invoice.paid") is EventKind.INVOICE_PAID
    assert EventKind.parse("customer.created") is None
    assert EventKind.parse(None) is None


async def test_summary_cache_roundtrip_and_invalidate(redis):
    summary = {
        "id": 1,
        "owner_id": 9,
        "plan_id": 2,
        "plan_name": "Pro",
        "status": "active",
        "active": True,
        "current_period_end": dt.datetime(2030, 1, 1, tzinfo=dt.timezone.utc),
        "cancel_at_period_end": False,
        "time_priority": 1,
    }
    await subscription_cache.store(redis, 9, summary, ttl_seconds=60)

    assert await subscription_cache.get_cached(redis, 9) == summary
    assert 0 < await redis.ttl("sub:9") <= 60

    await subscription_cache.invalidate(redis, [9])
    assert await subscription_cache.get_cached(redis, 9) is None
