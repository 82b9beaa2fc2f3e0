"""External services consumed by the stage processors."""

from .ai import DocumentParser, ParseResult, PurchaseOrderExtraction, PydanticAIDocumentParser
from .images import HttpImageSearcher, ImageCandidate, ImageSearcher, NullImageSearcher
from .pricing import PricingEngine, PricingResult, RulePricingEngine
from .storage import FileStorage, HttpFileStorage, LocalFileStorage
from .sync import HttpStoreSync, RecordingStoreSync, StoreSync, SyncResult

__all__ = [
    "DocumentParser",
    "ParseResult",
    "PurchaseOrderExtraction",
    "PydanticAIDocumentParser",
    "HttpImageSearcher",
    "ImageCandidate",
    "ImageSearcher",
    "NullImageSearcher",
    "PricingEngine",
    "PricingResult",
    "RulePricingEngine",
    "FileStorage",
    "HttpFileStorage",
    "LocalFileStorage",
    "HttpStoreSync",
    "RecordingStoreSync",
    "StoreSync",
    "SyncResult",
]
