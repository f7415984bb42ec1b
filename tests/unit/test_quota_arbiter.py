"""Unit tests for quota decisions."""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest

from entitlement_engine.domain import (
    UNLIMITED,
    QuotaConsumption,
    SubscriberRecord,
    SubscriptionStatus,
)
from entitlement_engine.exceptions import StoreUnavailableError
from entitlement_engine.services.quota_arbiter import DenialReason, Permit, QuotaArbiter
from entitlement_engine.store.memory import InMemoryEntitlementStore
from entitlement_engine.transitions import BillingTransition


@pytest.mark.unit
@pytest.mark.asyncio
async def test_free_tier_allowance_runs_out(store: InMemoryEntitlementStore) -> None:
    """Three free downloads, then QuotaExceeded with an upgrade hint."""
    await store.provision("u1")
    arbiter = QuotaArbiter(store, allowance=3)

    permits = [await arbiter.check_and_consume("u1") for _ in range(4)]

    assert [p.granted for p in permits] == [True, True, True, False]
    assert [p.remaining for p in permits] == [2, 1, 0, 0]
    assert permits[-1].reason == DenialReason.QUOTA_EXCEEDED
    assert permits[-1].needs_upgrade is True
    assert permits[0].is_free_tier is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_active_subscriber_is_always_granted(store: InMemoryEntitlementStore) -> None:
    await store.provision("u1", billing_reference_id="cus_1")
    await store.apply_billing_transition("u1", BillingTransition.activate("sub_1"), 1)
    arbiter = QuotaArbiter(store, allowance=3)

    permits = [await arbiter.check_and_consume("u1") for _ in range(10)]

    assert all(p.granted for p in permits)
    assert all(p.remaining == UNLIMITED for p in permits)
    assert all(not p.is_free_tier for p in permits)
    record = await store.get("u1")
    assert record is not None
    assert record.quota_counter == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_canceling_subscriber_keeps_unlimited_access(
    store: InMemoryEntitlementStore,
) -> None:
    await store.provision("u1", billing_reference_id="cus_1")
    await store.apply_billing_transition(
        "u1",
        BillingTransition.schedule_cancellation("sub_1", datetime(2030, 1, 1, tzinfo=UTC)),
        1,
    )

    permit = await QuotaArbiter(store).check_and_consume("u1")

    assert permit.granted is True
    assert permit.remaining == UNLIMITED
    assert permit.subscription_status is SubscriptionStatus.CANCELING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_canceled_subscriber_is_metered_again(store: InMemoryEntitlementStore) -> None:
    await store.provision("u1", billing_reference_id="cus_1")
    arbiter = QuotaArbiter(store, allowance=3)
    for _ in range(3):
        await arbiter.check_and_consume("u1")
    await store.apply_billing_transition("u1", BillingTransition.activate("sub_1"), 1)
    await store.apply_billing_transition("u1", BillingTransition.cancel(), 2)

    permit = await arbiter.check_and_consume("u1")

    assert permit.granted is True
    assert permit.remaining == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_subscriber_is_denied(store: InMemoryEntitlementStore) -> None:
    permit = await QuotaArbiter(store).check_and_consume("ghost")

    assert permit.granted is False
    assert permit.reason == DenialReason.UNKNOWN_SUBSCRIBER
    assert permit.needs_upgrade is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_requests_never_exceed_allowance(
    store: InMemoryEntitlementStore,
) -> None:
    await store.provision("u1")
    arbiter = QuotaArbiter(store, allowance=3)

    permits = await asyncio.gather(*(arbiter.check_and_consume("u1") for _ in range(10)))

    assert sum(p.granted for p in permits) == 3
    record = await store.get("u1")
    assert record is not None
    assert record.quota_counter == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_upgrade_between_read_and_increment_grants() -> None:
    """A failed increment is re-checked against the latest record."""
    free = SubscriberRecord("u1", quota_counter=3)
    active = SubscriberRecord("u1", subscription_status=SubscriptionStatus.ACTIVE, quota_counter=3)
    mock_store = AsyncMock()
    mock_store.get = AsyncMock(side_effect=[free, active])
    mock_store.try_consume_quota = AsyncMock(
        return_value=QuotaConsumption(granted=False, remaining=0)
    )

    permit = await QuotaArbiter(mock_store, allowance=3).check_and_consume("u1")

    assert permit.granted is True
    assert permit.remaining == UNLIMITED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeout_is_reported_as_unavailable() -> None:
    async def slow_get(_subscriber_id: str) -> SubscriberRecord:
        await asyncio.sleep(1)
        return SubscriberRecord("u1")

    mock_store = AsyncMock()
    mock_store.get = slow_get
    arbiter = QuotaArbiter(mock_store, timeout=0.01)

    with pytest.raises(StoreUnavailableError) as exc_info:
        await arbiter.check_and_consume("u1")

    assert exc_info.value.operation == "check_and_consume"
    mock_store.try_consume_quota.assert_not_called()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_increment_is_reported_not_abandoned() -> None:
    async def slow_consume(_subscriber_id: str, _allowance: int) -> QuotaConsumption:
        await asyncio.sleep(0.05)
        return QuotaConsumption(granted=True, remaining=2)

    mock_store = AsyncMock()
    mock_store.get = AsyncMock(return_value=SubscriberRecord("u1"))
    mock_store.try_consume_quota = slow_consume
    arbiter = QuotaArbiter(mock_store, allowance=3, timeout=0.01)

    permit = await arbiter.check_and_consume("u1")

    assert permit.granted is True
    assert permit.remaining == 2
    assert permit.is_free_tier is True


@pytest.mark.unit
@pytest.mark.parametrize(
    ("permit", "expected"),
    [
        (Permit(granted=True, remaining=2), True),
        (Permit(granted=True, remaining=0), True),
        (Permit(granted=True, remaining=UNLIMITED), False),
        (Permit(granted=False, remaining=0, reason=DenialReason.QUOTA_EXCEEDED), False),
    ],
)
def test_is_free_tier(permit: Permit, expected: bool) -> None:
    assert permit.is_free_tier is expected


@pytest.mark.unit
class TestPeek:
    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, store: InMemoryEntitlementStore) -> None:
        await store.provision("u1")
        arbiter = QuotaArbiter(store, allowance=3)

        first = await arbiter.peek("u1")
        second = await arbiter.peek("u1")

        assert first.granted is True
        assert first.remaining == second.remaining == 3

    @pytest.mark.asyncio
    async def test_peek_reports_exhausted(self, store: InMemoryEntitlementStore) -> None:
        await store.provision("u1")
        arbiter = QuotaArbiter(store, allowance=1)
        await arbiter.check_and_consume("u1")

        permit = await arbiter.peek("u1")

        assert permit.granted is False
        assert permit.needs_upgrade is True

    @pytest.mark.asyncio
    async def test_peek_unknown(self, store: InMemoryEntitlementStore) -> None:
        permit = await QuotaArbiter(store).peek("ghost")
        assert permit.reason == DenialReason.UNKNOWN_SUBSCRIBER
