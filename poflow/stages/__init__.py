"""Stage processors, one per pipeline stage."""

from __future__ import annotations

from typing import Dict

from ..contracts import Stage
from .ai_parsing import AIParsingProcessor
from .base import StageContext, StageProcessor
from .database_save import DatabaseSaveProcessor
from .image_attachment import ImageAttachmentProcessor, ImageBatchResult, attach_images
from .product_drafts import ProductDraftProcessor
from .status_update import StatusUpdateProcessor
from .store_sync import StoreSyncProcessor


def default_processors() -> Dict[Stage, StageProcessor]:
    """Fresh processor instances keyed by the stage they handle."""
    processors = (
        AIParsingProcessor(),
        DatabaseSaveProcessor(),
        ProductDraftProcessor(),
        ImageAttachmentProcessor(),
        StoreSyncProcessor(),
        StatusUpdateProcessor(),
    )
    return {processor.stage: processor for processor in processors}


__all__ = [
    "AIParsingProcessor",
    "DatabaseSaveProcessor",
    "ImageAttachmentProcessor",
    "ImageBatchResult",
    "ProductDraftProcessor",
    "StageContext",
    "StageProcessor",
    "StatusUpdateProcessor",
    "StoreSyncProcessor",
    "attach_images",
    "default_processors",
]
