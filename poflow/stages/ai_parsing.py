"""AI_PARSING: turn the uploaded document into structured purchase-order data."""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from ..contracts import BinaryPayload, Stage, StageJob, StageOutput
from ..errors import MalformedInputError, ValidationFailedError
from ..persistence.extraction import normalize_confidence
from .base import StageContext, StageProcessor

logger = logging.getLogger(__name__)

# Keys carrying raw document content; never forwarded past this stage.
CONTENT_KEYS = ("content", "fileBuffer")


class AIParsingProcessor(StageProcessor):
    stage = Stage.AI_PARSING

    async def _resolve_content(
        self, data: dict[str, Any], ctx: StageContext
    ) -> Tuple[bytes, str]:
        """Document bytes and media type from inline text, inline buffer or upload."""
        mime_type = data.get("mimeType") or "application/pdf"
        if data.get("content"):
            return str(data["content"]).encode("utf-8"), data.get("mimeType") or "text/plain"
        if data.get("fileBuffer"):
            payload = BinaryPayload.model_validate(data["fileBuffer"])
            return payload.to_bytes(), data.get("mimeType") or payload.media_type
        if data.get("uploadId"):
            upload = await ctx.retry(
                lambda: ctx.repository.get_upload(data["uploadId"]),
                f"Lookup upload {data['uploadId']}",
            )
            if upload is None or not upload.file_url:
                raise MalformedInputError(f"No file URL found for upload {data['uploadId']}")
            content = await ctx.retry(
                lambda: ctx.storage.download(upload.file_url),
                f"Download {upload.file_url}",
            )
            return content, data.get("mimeType") or upload.mime_type or mime_type
        raise MalformedInputError("No file content provided for AI parsing")

    @staticmethod
    def _validate(result: Any) -> Tuple[dict[str, Any], float]:
        if not result.success or result.error:
            raise ValidationFailedError(result.error or "AI parsing failed")
        if not result.extracted_data:
            raise ValidationFailedError("AI parsing returned no extracted data")
        confidence = normalize_confidence(result.confidence)
        if confidence is None:
            raise ValidationFailedError("AI parsing returned no confidence score")
        return result.extracted_data, confidence

    async def process(
        self, job: StageJob, data: dict[str, Any], ctx: StageContext
    ) -> StageOutput:
        po_id: Optional[str] = data.get("purchaseOrderId")
        projector = ctx.projector(self.stage, data)
        await ctx.update_progress(po_id, self.stage.value, 5, 0, 0)
        await projector.publish_progress(5, "Loading document")

        content, mime_type = await self._resolve_content(data, ctx)
        await job.report_progress(10)
        await projector.publish_sub_stage_progress(100, 0, 20, "Document loaded")

        await ctx.update_progress(po_id, self.stage.value, 30, 0, 0)
        await projector.publish_progress(30, "AI is analyzing your purchase order")
        options = {
            "file_name": data.get("fileName"),
            "mime_type": mime_type,
            **(data.get("options") or {}),
        }
        result = await ctx.retry(
            lambda: ctx.parser.parse_document(content, job.workflow_id, options),
            f"AI parsing for {job.workflow_id}",
        )
        extracted, confidence = self._validate(result)
        await job.report_progress(90)
        await ctx.update_progress(po_id, self.stage.value, 90, 0, 0)

        ai_result = result.as_payload()
        line_count = len(extracted.get("lineItems") or extracted.get("items") or [])
        await projector.publish_stage_complete(
            f"Extracted {line_count} line items", {"confidence": confidence}
        )
        logger.info(
            f"AI parsing complete for workflow_id={job.workflow_id}: "
            f"{line_count} line items, confidence {confidence:.2f}"
        )

        stage_result = {
            "aiResult": ai_result,
            "confidence": confidence,
            "model": result.model,
            "fileName": data.get("fileName"),
            "mimeType": mime_type,
        }
        next_stage_data = {
            key: value for key, value in data.items() if key not in CONTENT_KEYS
        }
        next_stage_data.update(stage_result)
        return StageOutput(
            stage_result=stage_result,
            next_stage_data=next_stage_data,
            next_stage=Stage.DATABASE_SAVE,
        )
