"""Pricing refinement collaborator."""

from __future__ import annotations

import math
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from ..config import PricingConfig
from ..persistence.extraction import parse_currency

MIN_PRICE = 0.01


class AppliedRule(BaseModel):
    type: str
    description: str
    original_value: float
    new_value: float


class PricingResult(BaseModel):
    original_price: float
    adjusted_price: float
    applied_rules: list[AppliedRule] = Field(default_factory=list)
    markup: float = 0.0


class PricingEngine(Protocol):
    async def test_pricing_rules(
        self, merchant_id: str, item_draft: dict[str, Any]
    ) -> PricingResult: ...


def apply_rounding(price: float, rule: str) -> float:
    if rule == "psychological_99":
        return math.floor(price) - 0.01
    if rule == "round_up":
        return float(math.ceil(price))
    if rule == "round_down":
        return float(math.floor(price))
    if rule == "nearest_dollar":
        return float(math.floor(price + 0.5))
    return price


class RulePricingEngine:
    """Apply a merchant's markup and rounding rules to an item price.

    ``rules_for`` resolves the :class:`PricingConfig` of a merchant, usually
    :meth:`poflow.config.PoflowConfig.pricing_for`.
    """

    def __init__(self, rules_for: Callable[[str], PricingConfig]) -> None:
        self._rules_for = rules_for

    async def test_pricing_rules(
        self, merchant_id: str, item_draft: dict[str, Any]
    ) -> PricingResult:
        original = parse_currency(item_draft.get("price"))
        config = self._rules_for(merchant_id)
        if not config.enabled:
            return PricingResult(original_price=original, adjusted_price=original)

        adjusted = original
        applied: list[AppliedRule] = []

        markup = config.global_markup
        if markup is not None and markup.value:
            before = adjusted
            if markup.type == "percentage":
                adjusted = adjusted * markup.value
                description = f"Applied {(markup.value - 1) * 100:.0f}% markup"
            else:
                adjusted = adjusted + markup.value
                description = f"Added ${markup.value} fixed markup"
            applied.append(
                AppliedRule(
                    type="global_markup",
                    description=description,
                    original_value=before,
                    new_value=adjusted,
                )
            )

        if config.rounding_rules.enabled:
            before = adjusted
            adjusted = apply_rounding(adjusted, config.rounding_rules.rule)
            if not math.isclose(before, adjusted):
                applied.append(
                    AppliedRule(
                        type="rounding",
                        description=f"Applied {config.rounding_rules.rule} rounding",
                        original_value=before,
                        new_value=adjusted,
                    )
                )

        adjusted = round(max(MIN_PRICE, adjusted), 2)
        return PricingResult(
            original_price=original,
            adjusted_price=adjusted,
            applied_rules=applied,
            markup=round(adjusted - original, 2),
        )
