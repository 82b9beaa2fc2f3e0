"""AI document parsing collaborator."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_ai import Agent, BinaryContent

from ..errors import UnsupportedFileTypeError
from ..utils.retry import adaptive_timeout, with_timeout

logger = logging.getLogger(__name__)

TEXT_MEDIA_TYPES = {"text/plain", "text/csv", "application/csv"}
BINARY_MEDIA_TYPES = {"application/pdf", "image/png", "image/jpeg", "image/webp", "image/gif"}

SYSTEM_PROMPT = (
    "You extract structured data from supplier purchase orders and invoices. "
    "Return the supplier, document number, dates, currency, every line item "
    "with quantity and prices, and document totals. Report an overall "
    "confidence between 0 and 1 reflecting how legible and complete the "
    "document was."
)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SupplierInfo(_CamelModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None


class ExtractedLineItem(_CamelModel):
    sku: Optional[str] = None
    product_name: str
    description: Optional[str] = None
    brand: Optional[str] = None
    quantity: int = 1
    unit_price: Optional[float] = None
    total_price: Optional[float] = None


class Totals(_CamelModel):
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    shipping: Optional[float] = None
    total: Optional[float] = None


class PurchaseOrderExtraction(_CamelModel):
    """Canonical output schema requested from the model."""

    po_number: Optional[str] = None
    supplier: SupplierInfo = Field(default_factory=SupplierInfo)
    order_date: Optional[str] = None
    due_date: Optional[str] = None
    currency: str = "USD"
    line_items: list[ExtractedLineItem] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)
    confidence: float = Field(ge=0, le=1)


class ParseResult(_CamelModel):
    success: bool
    extracted_data: Optional[dict[str, Any]] = None
    confidence: Optional[float] = None
    model: Optional[str] = None
    error: Optional[str] = None

    def as_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class DocumentParser(Protocol):
    async def parse_document(
        self,
        content: bytes,
        workflow_id: str,
        options: Optional[dict[str, Any]] = None,
    ) -> ParseResult: ...


class PydanticAIDocumentParser:
    """Parse documents with a ``pydantic_ai`` agent.

    The agent is created on first use so that constructing the parser never
    requires provider credentials.
    """

    def __init__(self, model: str, agent: Optional[Agent] = None) -> None:
        self.model = model
        self._agent = agent

    @property
    def agent(self) -> Agent:
        if self._agent is None:
            self._agent = Agent(
                self.model,
                output_type=PurchaseOrderExtraction,
                system_prompt=SYSTEM_PROMPT,
            )
        return self._agent

    def _prompt(self, content: bytes, options: dict[str, Any]) -> list[Any]:
        media_type = (options.get("mime_type") or "application/pdf").split(";")[0]
        file_name = options.get("file_name") or "document"
        header = f"Extract the purchase order in {file_name}."
        if media_type in TEXT_MEDIA_TYPES:
            return [header, content.decode("utf-8", errors="replace")]
        if media_type in BINARY_MEDIA_TYPES:
            return [header, BinaryContent(data=content, media_type=media_type)]
        raise UnsupportedFileTypeError(f"Unsupported file type: {media_type}")

    async def parse_document(
        self,
        content: bytes,
        workflow_id: str,
        options: Optional[dict[str, Any]] = None,
    ) -> ParseResult:
        options = options or {}
        prompt = self._prompt(content, options)
        timeout = adaptive_timeout(len(content))
        logger.info(
            f"Parsing {len(content)} bytes for workflow_id={workflow_id} "
            f"with {self.model} (timeout {timeout:.0f}s)"
        )
        result = await with_timeout(
            self.agent.run(prompt),
            timeout,
            operation_name=f"AI parsing for {workflow_id}",
        )
        extraction: PurchaseOrderExtraction = result.output
        return ParseResult(
            success=True,
            extracted_data=extraction.model_dump(by_alias=True, exclude={"confidence"}),
            confidence=extraction.confidence,
            model=self.model,
        )
