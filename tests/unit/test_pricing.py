import pytest

from poflow.collaborators.pricing import RulePricingEngine, apply_rounding
from poflow.config import GlobalMarkup, PricingConfig, RoundingRules


def engine_for(config):
    return RulePricingEngine(lambda merchant_id: config)


@pytest.mark.asyncio
async def test_disabled_rules_return_original_price():
    result = await engine_for(PricingConfig()).test_pricing_rules("shop-1", {"price": "$12.50"})
    assert result.original_price == 12.5
    assert result.adjusted_price == 12.5
    assert result.applied_rules == []


@pytest.mark.asyncio
async def test_percentage_markup_and_psychological_rounding():
    config = PricingConfig(
        enabled=True,
        global_markup=GlobalMarkup(type="percentage", value=1.5),
        rounding_rules=RoundingRules(enabled=True, rule="psychological_99"),
    )
    result = await engine_for(config).test_pricing_rules("shop-1", {"price": 10})

    assert result.adjusted_price == 14.99
    assert [rule.type for rule in result.applied_rules] == ["global_markup", "rounding"]
    assert result.applied_rules[0].description == "Applied 50% markup"
    assert result.markup == 4.99


@pytest.mark.asyncio
async def test_fixed_markup():
    config = PricingConfig(enabled=True, global_markup=GlobalMarkup(type="fixed", value=2.5))
    result = await engine_for(config).test_pricing_rules("shop-1", {"price": 4})
    assert result.adjusted_price == 6.5


@pytest.mark.asyncio
async def test_price_never_drops_below_a_cent():
    config = PricingConfig(
        enabled=True, rounding_rules=RoundingRules(enabled=True, rule="psychological_99")
    )
    result = await engine_for(config).test_pricing_rules("shop-1", {"price": 0.5})
    assert result.adjusted_price == 0.01


@pytest.mark.parametrize(
    "rule, price, expected",
    [
        ("round_up", 10.2, 11.0),
        ("round_down", 10.8, 10.0),
        ("nearest_dollar", 10.5, 11.0),
        ("nearest_dollar", 10.49, 10.0),
    ],
)
def test_apply_rounding(rule, price, expected):
    assert apply_rounding(price, rule) == expected
