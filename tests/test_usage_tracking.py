"""
Tests for monthly document quota metering.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
import pytest_asyncio

from invoicely.billing.usage_tracking import UsageMeter
from invoicely.models.billing import (
    SubscriptionPlanCreate,
    SubscriptionStatus,
    SubscriptionUpsert,
    current_month_year,
)

NOW = datetime(2025, 3, 15, 12, 0, tzinfo=UTC)


@pytest.fixture
def meter(db) -> UsageMeter:
    return UsageMeter(db=db, clock=lambda: NOW)


@pytest_asyncio.fixture
async def customer(db):
    return await db.create_customer_with_free_subscription(
        "user-1", "one@example.com", "One", "polar_cus_1"
    )


async def subscribe(db, customer, document_limit, status=SubscriptionStatus.ACTIVE, period_end=None):
    plan = await db.upsert_plan(
        SubscriptionPlanCreate(
            external_product_id=f"prod_{document_limit}",
            name=f"Plan {document_limit}",
            document_limit=document_limit,
        )
    )
    await db.upsert_subscription(
        SubscriptionUpsert(
            customer_id=customer.id,
            plan_id=plan.id,
            external_subscription_id=f"sub_{document_limit}",
            status=status,
            current_period_end=period_end,
        )
    )
    return plan


async def fill(db, user_id: str, count: int):
    for _ in range(count):
        await db.increment_document_usage(user_id, current_month_year(NOW), -1)


def test_month_year_uses_utc():
    assert current_month_year(datetime(2025, 3, 31, 23, 30, tzinfo=UTC)) == "2025-03"

    # 2025-04-01 01:00 at UTC+3 is still March in UTC
    plus_three = timezone(timedelta(hours=3))
    assert current_month_year(datetime(2025, 4, 1, 1, 0, tzinfo=plus_three)) == "2025-03"


@pytest.mark.asyncio
async def test_user_without_customer_gets_free_plan(meter):
    entitlement = await meter.get_entitlement("user-unknown")

    assert entitlement.subscription.is_synthetic
    assert entitlement.subscription.status == SubscriptionStatus.FREE
    assert entitlement.plan.external_product_id == "free"
    assert entitlement.document_limit == 10


@pytest.mark.asyncio
async def test_quota_boundary_scenario(db, meter, customer):
    await subscribe(db, customer, document_limit=10)
    await fill(db, "user-1", 9)

    assert await meter.can_upload_document("user-1") is True
    assert await meter.increment_usage("user-1") is True
    assert await meter.get_document_count("user-1") == 10

    assert await meter.can_upload_document("user-1") is False
    assert await meter.increment_usage("user-1") is False
    assert await meter.get_document_count("user-1") == 10
    assert await meter.get_remaining_documents("user-1") == 0


@pytest.mark.asyncio
async def test_successful_increments_are_counted_exactly(meter):
    results = [await meter.increment_usage("user-new") for _ in range(4)]

    assert results == [True, True, True, True]
    assert await meter.get_document_count("user-new") == 4
    assert await meter.get_remaining_documents("user-new") == 6


@pytest.mark.asyncio
async def test_unlimited_plan(db, meter, customer):
    await subscribe(db, customer, document_limit=-1)
    await fill(db, "user-1", 500)

    assert await meter.can_upload_document("user-1") is True
    assert await meter.increment_usage("user-1") is True
    assert await meter.get_remaining_documents("user-1") == -1

    summary = await meter.get_usage_summary("user-1")
    assert summary["unlimited"] is True
    assert summary["document_count"] == 501


@pytest.mark.asyncio
async def test_canceled_subscription_keeps_plan_until_period_end(db, meter, customer):
    await subscribe(
        db,
        customer,
        document_limit=100,
        status=SubscriptionStatus.CANCELED,
        period_end=NOW + timedelta(days=5),
    )

    assert await meter.get_document_limit("user-1") == 100


@pytest.mark.asyncio
async def test_canceled_subscription_after_period_end_falls_back_to_free(db, meter, customer):
    await subscribe(
        db,
        customer,
        document_limit=100,
        status=SubscriptionStatus.CANCELED,
        period_end=NOW - timedelta(days=1),
    )

    assert await meter.get_document_limit("user-1") == 10


@pytest.mark.asyncio
async def test_incomplete_subscription_uses_free_plan(db, meter, customer):
    await subscribe(db, customer, document_limit=100, status=SubscriptionStatus.INCOMPLETE)

    entitlement = await meter.get_entitlement("user-1")
    assert entitlement.plan.external_product_id == "free"
    assert entitlement.subscription.status == SubscriptionStatus.INCOMPLETE


@pytest.mark.asyncio
async def test_past_due_keeps_plan(db, meter, customer):
    await subscribe(db, customer, document_limit=100, status=SubscriptionStatus.PAST_DUE)

    assert await meter.get_document_limit("user-1") == 100


@pytest.mark.asyncio
async def test_default_limit_when_no_plan_resolves(db, customer):
    conn = db._get_connection()
    with conn:
        conn.execute("UPDATE subscriptions SET plan_id = NULL")
        conn.execute("DELETE FROM subscription_plans")

    meter = UsageMeter(db=db, default_document_limit=3, clock=lambda: NOW)
    entitlement = await meter.get_entitlement("user-1")

    assert entitlement.plan is None
    assert entitlement.document_limit == 3


@pytest.mark.asyncio
async def test_zero_limit_plan_denies_everything(db, meter, customer):
    await subscribe(db, customer, document_limit=0)

    assert await meter.can_upload_document("user-1") is False
    assert await meter.increment_usage("user-1") is False
    assert await db.get_document_usage("user-1", "2025-03") is None


@pytest.mark.asyncio
async def test_new_month_resets_quota(db, customer):
    march = UsageMeter(db=db, clock=lambda: NOW)
    april = UsageMeter(db=db, clock=lambda: NOW + timedelta(days=20))

    await fill(db, "user-1", 10)
    assert await march.increment_usage("user-1") is False
    assert await april.increment_usage("user-1") is True
    assert await april.get_document_count("user-1") == 1


@pytest.mark.asyncio
async def test_usage_summary(db, meter, customer):
    await fill(db, "user-1", 4)

    summary = await meter.get_usage_summary("user-1")

    assert summary == {
        "user_id": "user-1",
        "month_year": "2025-03",
        "plan": "Free",
        "status": "free",
        "document_count": 4,
        "document_limit": 10,
        "remaining": 6,
        "unlimited": False,
        "usage_percentage": 40.0,
        "can_upload": True,
    }
