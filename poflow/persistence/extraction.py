"""Mapping of AI extraction output onto persistence entities."""

from __future__ import annotations

import re
from typing import Any, Optional

from .models import LineItem

_PACK_PATTERN = re.compile(
    r"Case\s+of\s+(\d+)|[-(\s](\d+)\s*ct\b|[-(\s](\d+)\s*-?\s*(?:Pack|pcs|count)\b",
    re.IGNORECASE,
)
_CURRENCY_JUNK = re.compile(r"[^0-9.\-]")


def parse_currency(value: Any) -> float:
    """Parse ``"$1,234.50"`` style values; anything unparseable is ``0.0``."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _CURRENCY_JUNK.sub("", str(value))
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def normalize_confidence(confidence: Any) -> Optional[float]:
    """Return confidence as a 0-1 fraction.

    Accepts a bare number or a ``{"overall": n}`` mapping; values above 1
    are read as percentages.
    """
    if isinstance(confidence, dict):
        confidence = confidence.get("overall")
    if confidence is None or isinstance(confidence, bool):
        return None
    try:
        value = float(confidence)
    except (TypeError, ValueError):
        return None
    if value > 1:
        value = value / 100
    return max(0.0, min(1.0, value))


def line_items_from(extracted: dict[str, Any]) -> list[dict[str, Any]]:
    items = extracted.get("lineItems") or extracted.get("items") or []
    return [item for item in items if isinstance(item, dict)]


def item_total(item: dict[str, Any]) -> float:
    return parse_currency(
        item.get("totalPrice") or item.get("total") or item.get("lineTotal")
    )


def compute_total_amount(extracted: dict[str, Any]) -> float:
    """Document total, falling back to the sum of line item totals."""
    totals = extracted.get("totals")
    if isinstance(totals, dict) and totals.get("total"):
        return parse_currency(totals["total"])
    for key in ("total", "grandTotal", "totalAmount"):
        if extracted.get(key):
            return parse_currency(extracted[key])
    return round(sum(item_total(item) for item in line_items_from(extracted)), 2)


def _quantity(item: dict[str, Any]) -> int:
    try:
        quantity = int(item.get("quantity") or 0)
    except (TypeError, ValueError):
        quantity = 0
    if quantity <= 1:
        name = item.get("productName") or item.get("description") or item.get("name") or ""
        match = _PACK_PATTERN.search(name)
        if match:
            pack = int(next(group for group in match.groups() if group))
            if pack > 1:
                return pack
    return quantity or 1


def build_line_items(
    extracted: dict[str, Any],
    purchase_order_id: str,
    item_confidences: Optional[list[Any]] = None,
) -> list[LineItem]:
    """Build line item entities from extracted rows.

    Ids are derived from the purchase order and row position so a repeated
    save replaces rows in place and drafts keep pointing at them. When the
    quantity is expanded from a pack size in the product name the invoice
    unit price is a per-case price, so unit cost is derived from the line
    total.
    """
    item_confidences = item_confidences or []
    line_items = []
    for index, item in enumerate(line_items_from(extracted)):
        quantity = _quantity(item)
        invoice_unit_price = parse_currency(
            item.get("unitPrice") or item.get("price") or item.get("unitCost")
        )
        total_cost = item_total(item) or quantity * invoice_unit_price
        confidence = (
            normalize_confidence(item_confidences[index])
            if index < len(item_confidences)
            else None
        )
        name = item.get("productName") or item.get("description") or item.get("name")
        line_items.append(
            LineItem(
                id=f"{purchase_order_id}-{index + 1}",
                purchase_order_id=purchase_order_id,
                sku=str(item.get("sku") or item.get("productCode") or f"AUTO-{index + 1}"),
                product_name=name or "Unknown Product",
                description=item.get("description") or name,
                quantity=quantity,
                unit_cost=round(total_cost / quantity, 4),
                total_cost=total_cost,
                brand=item.get("brand"),
                confidence=confidence,
                status="pending" if confidence is None or confidence >= 0.8 else "review_needed",
            )
        )
    return line_items
