import pytest

from poflow.progress import InMemoryProgressChannel, ProgressProjector, project


class FailingChannel:
    async def publish(self, merchant_id, event):
        raise ConnectionError("pubsub down")


def make_projector(stage="ai_parsing", merchant_id="shop-1"):
    channel = InMemoryProgressChannel()
    projector = ProgressProjector(
        stage,
        merchant_id=merchant_id,
        purchase_order_id="po-1",
        workflow_id="wf_1",
        channel=channel,
    )
    return projector, channel


@pytest.mark.parametrize(
    "stage, local, expected",
    [
        ("ai_parsing", 0, 0),
        ("ai_parsing", 50, 20),
        ("ai_parsing", 100, 40),
        ("database_save", 50, 50),
        ("product_draft_creation", 100, 75),
        ("image_attachment", 50, 80),
        ("shopify_sync", 0, 85),
        ("status_update", 100, 100),
        ("status_update", 250, 100),
    ],
)
def test_project_maps_stage_slices(stage, local, expected):
    assert project(stage, local) == pytest.approx(expected)


@pytest.mark.asyncio
async def test_progress_never_moves_backwards_within_stage():
    projector, channel = make_projector()

    assert await projector.publish_progress(50, "half") == 20
    assert await projector.publish_progress(30, "late update") is None
    assert await projector.publish_progress(50, "duplicate") is None
    assert await projector.publish_progress(75, "more") == 30

    published = [event.progress for event in channel.for_workflow("wf_1")]
    assert published == [20, 30]


@pytest.mark.asyncio
async def test_events_carry_identifiers():
    projector, channel = make_projector("database_save")
    await projector.publish_stage_complete("Saved", {"lineItems": 3})

    merchant_id, event = channel.events[0]
    assert merchant_id == "shop-1"
    assert event.purchase_order_id == "po-1"
    assert event.stage == "database_save"
    assert event.progress == 60
    assert event.details == {"lineItems": 3, "completed": True}


@pytest.mark.asyncio
async def test_linear_and_sub_stage_progress():
    projector, channel = make_projector("product_draft_creation")

    assert await projector.publish_linear_progress(0, 3, "line item") == 65
    assert await projector.publish_linear_progress(2, 3, "line item") == 75
    assert await projector.publish_linear_progress(0, 0, "line item") is None

    projector.set_stage("ai_parsing")
    assert await projector.publish_sub_stage_progress(50, 20, 40, "parsing") == 16
    assert channel.events[-1][1].message == "parsing"


@pytest.mark.asyncio
async def test_set_stage_resets_monotonic_floor():
    projector, _ = make_projector("ai_parsing")
    await projector.publish_progress(100, "done")
    projector.set_stage("database_save")
    assert await projector.publish_progress(0, "starting") == 40


@pytest.mark.asyncio
async def test_unknown_stage_is_ignored(caplog):
    projector, channel = make_projector("data_normalization")
    with caplog.at_level("WARNING"):
        assert await projector.publish_progress(50, "noop") is None
    assert channel.events == []
    assert "unknown stage" in caplog.text


@pytest.mark.asyncio
async def test_publish_without_merchant_or_with_failing_channel():
    projector, channel = make_projector(merchant_id=None)
    assert await projector.publish_progress(100, "done") == 40
    assert channel.events == []

    failing = ProgressProjector("ai_parsing", merchant_id="shop-1", channel=FailingChannel())
    assert await failing.publish_progress(10, "still counted") == 4
