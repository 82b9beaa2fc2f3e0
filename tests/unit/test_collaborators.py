import json

import httpx
import pytest
from pydantic_ai import BinaryContent

from poflow.collaborators import (
    HttpFileStorage,
    HttpImageSearcher,
    HttpStoreSync,
    LocalFileStorage,
    PydanticAIDocumentParser,
    RecordingStoreSync,
)
from poflow.errors import (
    AuthenticationError,
    MalformedInputError,
    RateLimitedError,
    UnsupportedFileTypeError,
)
from poflow.persistence import ProductDraft, PurchaseOrder


@pytest.mark.asyncio
async def test_http_image_searcher_sorts_and_drops_invalid_candidates():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "images": [
                    {"url": "https://img.test/low.jpg", "confidence": 0.2},
                    {"confidence": 0.99},
                    {"url": "https://img.test/high.jpg", "confidence": 0.9},
                ]
            },
        )

    searcher = HttpImageSearcher("https://search.test/images", transport=httpx.MockTransport(handler))
    candidates = await searcher.search_images({"title": "Widget", "brand": "Acme", "sku": "WID-1"})

    assert [c.url for c in candidates] == ["https://img.test/high.jpg", "https://img.test/low.jpg"]
    assert seen["body"] == {"query": "Acme Widget", "sku": "WID-1", "brand": "Acme"}


@pytest.mark.asyncio
async def test_http_image_searcher_raises_on_server_error():
    searcher = HttpImageSearcher(
        "https://search.test/images",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await searcher.search_images({"title": "Widget"})


def _sync_fixture():
    po = PurchaseOrder(id="po-1", merchant_id="shop-1", number="PO-1")
    drafts = [
        ProductDraft(
            merchant_id="shop-1", purchase_order_id="po-1", line_item_id="li-1", original_title="Widget"
        )
    ]
    return po, drafts


@pytest.mark.asyncio
async def test_http_store_sync_posts_purchase_order():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "referenceId": "gid://order/1"})

    sync = HttpStoreSync("https://sync.test", token="secret", transport=httpx.MockTransport(handler))
    po, drafts = _sync_fixture()
    result = await sync.sync_purchase_order(po, drafts)

    assert result.success
    assert result.reference_id == "gid://order/1"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["purchaseOrder"]["id"] == "po-1"
    assert len(seen["body"]["drafts"]) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error", [(401, AuthenticationError), (403, AuthenticationError), (429, RateLimitedError)]
)
async def test_http_store_sync_maps_status_codes(status, error):
    sync = HttpStoreSync(
        "https://sync.test", transport=httpx.MockTransport(lambda request: httpx.Response(status))
    )
    with pytest.raises(error):
        await sync.sync_purchase_order(*_sync_fixture())


@pytest.mark.asyncio
async def test_recording_store_sync_records_calls():
    sync = RecordingStoreSync()
    result = await sync.sync_purchase_order(*_sync_fixture())
    assert result.reference_id.startswith("shopify_po-1_")
    assert sync.calls[0][0] == "po-1"


@pytest.mark.asyncio
async def test_local_file_storage(tmp_path):
    (tmp_path / "po.txt").write_bytes(b"hello")
    storage = LocalFileStorage(tmp_path)

    assert await storage.download("po.txt") == b"hello"
    assert await storage.download(f"file://{tmp_path / 'po.txt'}") == b"hello"
    with pytest.raises(MalformedInputError):
        await storage.download("missing.txt")


@pytest.mark.asyncio
async def test_http_file_storage_downloads_and_falls_back(tmp_path):
    (tmp_path / "po.txt").write_bytes(b"local")
    storage = HttpFileStorage(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"remote")),
        local=LocalFileStorage(tmp_path),
    )

    assert await storage.download("https://files.test/po.pdf") == b"remote"
    assert await storage.download("po.txt") == b"local"


def test_document_parser_prompt_by_media_type():
    parser = PydanticAIDocumentParser("test")

    text_prompt = parser._prompt(b"PO 1", {"mime_type": "text/plain; charset=utf-8"})
    assert text_prompt[1] == "PO 1"

    pdf_prompt = parser._prompt(b"%PDF", {"mime_type": "application/pdf", "file_name": "po.pdf"})
    assert "po.pdf" in pdf_prompt[0]
    assert isinstance(pdf_prompt[1], BinaryContent)

    with pytest.raises(UnsupportedFileTypeError):
        parser._prompt(b"PK", {"mime_type": "application/zip"})
