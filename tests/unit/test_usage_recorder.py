"""Unit tests for the usage ledger."""

from unittest.mock import AsyncMock

import pytest

from entitlement_engine.services.usage_recorder import RecordResult, UsageRecorder
from entitlement_engine.store.memory import InMemoryEntitlementStore


@pytest.mark.unit
@pytest.mark.asyncio
async def test_record_lifts_known_metadata(store: InMemoryEntitlementStore) -> None:
    recorder = UsageRecorder(store)

    result = await recorder.record(
        "u1",
        "req-1",
        {"file_name": "report.pdf", "file_size": "2048", "source": "web"},
        was_free_tier_consumption=True,
    )

    assert result is RecordResult.OK
    entry = await recorder.find("req-1")
    assert entry is not None
    assert entry.resource_name == "report.pdf"
    assert entry.size_or_weight == 2048
    assert entry.extra == {"source": "web"}
    assert entry.was_free_tier_consumption is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_duplicate_request_id(store: InMemoryEntitlementStore) -> None:
    recorder = UsageRecorder(store)
    await recorder.record("u1", "req-1", {"fileName": "a.pdf"})

    result = await recorder.record("u1", "req-1", {"fileName": "b.pdf"})

    assert result is RecordResult.DUPLICATE_REQUEST_ID
    entry = await recorder.find("req-1")
    assert entry is not None
    assert entry.resource_name == "a.pdf"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_numeric_size_is_dropped(store: InMemoryEntitlementStore) -> None:
    recorder = UsageRecorder(store)
    await recorder.record("u1", "req-1", {"size_or_weight": "large"})

    entry = await recorder.find("req-1")
    assert entry is not None
    assert entry.size_or_weight is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_storage_failure_is_reported_not_raised() -> None:
    mock_store = AsyncMock()
    mock_store.append_usage = AsyncMock(side_effect=RuntimeError("disk full"))

    result = await UsageRecorder(mock_store).record("u1", "req-1", None)

    assert result is RecordResult.FAILED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_history(store: InMemoryEntitlementStore) -> None:
    recorder = UsageRecorder(store)
    for index in range(3):
        await recorder.record("u1", f"req-{index}")
    await recorder.record("u2", "other")

    entries = await recorder.history("u1", limit=2)

    assert len(entries) == 2
    assert all(entry.subscriber_id == "u1" for entry in entries)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_claim_blocks_replay(store: InMemoryEntitlementStore) -> None:
    recorder = UsageRecorder(store)

    assert await recorder.claim("u1", "req-1") is True
    assert await recorder.claim("u1", "req-1") is False
    assert await recorder.history("u1") == []

    await recorder.release("u1", "req-1")
    assert await recorder.claim("u1", "req-1") is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_release_failure_is_logged() -> None:
    mock_store = AsyncMock()
    mock_store.release_usage_claim.side_effect = RuntimeError("db down")
    recorder = UsageRecorder(mock_store)

    await recorder.release("u1", "req-1")

    mock_store.release_usage_claim.assert_awaited_once_with("u1", "req-1")
