"""Transport tests."""

import pytest

from poflow.contracts import BinaryPayload, JobEnvelope
from poflow.transports.inmemory import InMemoryTransport


def make_envelope(**kwargs):
    return JobEnvelope(
        workflow_id="wf_1",
        stage="ai_parsing",
        payload={"merchantId": "shop-1"},
        **kwargs,
    )


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport add/subscribe."""
    transport = InMemoryTransport()
    await transport.add_job("ai-parsing", make_envelope())

    message_received = False
    async for raw_msg, envelope in transport.subscribe("ai-parsing", lifespan=1):
        assert envelope.workflow_id == "wf_1"
        assert envelope.payload["merchantId"] == "shop-1"

        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert await transport.pending("ai-parsing") == 0


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    transport = InMemoryTransport()
    received = [envelope async for _, envelope in transport.subscribe("empty", lifespan=0.1)]
    assert received == []


@pytest.mark.asyncio
async def test_pop_is_fifo_and_non_blocking():
    transport = InMemoryTransport()
    assert await transport.pop("database-save") is None

    first = make_envelope()
    second = make_envelope()
    await transport.add_job("database-save", first)
    await transport.add_job("database-save", second)

    _, envelope = await transport.pop("database-save")
    assert envelope.job_id == first.job_id
    assert [e.job_id for e in transport.queued("database-save")] == [second.job_id]


@pytest.mark.asyncio
async def test_nack_requeues_until_attempts_exhausted():
    transport = InMemoryTransport()
    await transport.add_job("shopify-sync", make_envelope(max_attempts=2))

    raw, envelope = await transport.pop("shopify-sync")
    await transport.nack(raw)
    assert envelope.attempt == 1

    raw, redelivered = await transport.pop("shopify-sync")
    assert redelivered.attempt == 2
    assert redelivered.job_id == envelope.job_id

    await transport.nack(raw)
    assert await transport.pending("shopify-sync") == 0
    assert [e.attempt for e in transport.dead_letters("shopify-sync")] == [2]


@pytest.mark.asyncio
async def test_nack_without_requeue_dead_letters():
    transport = InMemoryTransport()
    await transport.add_job("shopify-sync", make_envelope())
    raw, _ = await transport.pop("shopify-sync")

    await transport.nack(raw, requeue=False)
    assert len(transport.dead_letters("shopify-sync")) == 1


def test_envelope_json_round_trip_with_binary_payload():
    payload = BinaryPayload.from_bytes(b"%PDF-1.4 purchase order", "application/pdf")
    envelope = JobEnvelope(
        workflow_id="wf_1",
        stage="ai_parsing",
        payload={"fileBuffer": payload.model_dump()},
    )

    decoded = JobEnvelope.from_json(envelope.to_json())
    restored = BinaryPayload.model_validate(decoded.payload["fileBuffer"])
    assert restored.to_bytes() == b"%PDF-1.4 purchase order"
    assert restored.size == 23


def test_binary_payload_rejects_invalid_base64():
    with pytest.raises(ValueError):
        BinaryPayload(data="not base64!!")


def test_redis_transport_import():
    """RedisTransport can be constructed without connecting."""
    from poflow.transports.redis import RedisTransport

    transport = RedisTransport(url="redis://localhost:6379/0")
    assert transport.host == "localhost"
    assert transport.url == "redis://localhost:6379/0"
    assert transport._queue_key("ai-parsing") == "poflow:ai-parsing"
    assert transport._dead_key("ai-parsing") == "poflow:ai-parsing:dead"
