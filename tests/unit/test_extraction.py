import pytest

from poflow.persistence.extraction import (
    build_line_items,
    compute_total_amount,
    normalize_confidence,
    parse_currency,
)


@pytest.mark.parametrize(
    "value, expected",
    [("$1,234.50", 1234.5), (12, 12.0), ("USD 9.99", 9.99), (None, 0.0), ("n/a", 0.0)],
)
def test_parse_currency(value, expected):
    assert parse_currency(value) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        (0.85, 0.85),
        (85, 0.85),
        ({"overall": 92}, 0.92),
        ({"overall": 0.4, "itemBreakdown": [0.9]}, 0.4),
        (None, None),
        ("high", None),
        ({"lineItems": 0.9}, None),
    ],
)
def test_normalize_confidence(value, expected):
    assert normalize_confidence(value) == expected


def test_total_prefers_document_totals():
    assert compute_total_amount({"totals": {"total": "$99.00"}, "lineItems": []}) == 99.0
    assert compute_total_amount({"grandTotal": 75}) == 75.0


def test_total_falls_back_to_line_item_sum():
    extracted = {
        "totals": {"total": None},
        "items": [{"totalPrice": 10.25}, {"total": "$5.50"}, {"lineTotal": 4}],
    }
    assert compute_total_amount(extracted) == 19.75


def test_build_line_items_expands_pack_sizes():
    extracted = {
        "lineItems": [
            {"productName": "Sparkling Water Case of 24", "quantity": 1, "unitPrice": 12, "totalPrice": 12},
            {"productName": "Gummy Bears 12ct", "quantity": 1, "totalPrice": 6},
            {"sku": "ZX", "productName": "Plain item", "quantity": 3, "unitPrice": 2},
        ]
    }
    items = build_line_items(extracted, "po-1")

    assert [item.quantity for item in items] == [24, 12, 3]
    assert items[0].unit_cost == 0.5
    assert items[1].unit_cost == 0.5
    assert items[2].total_cost == 6.0
    assert [item.sku for item in items] == ["AUTO-1", "AUTO-2", "ZX"]
    assert [item.id for item in items] == ["po-1-1", "po-1-2", "po-1-3"]


def test_build_line_items_flags_low_confidence_rows():
    extracted = {"lineItems": [{"productName": "A"}, {"productName": "B"}, {"description": "C"}]}
    items = build_line_items(extracted, "po-1", [0.95, 55])

    assert [item.status for item in items] == ["pending", "review_needed", "pending"]
    assert items[1].confidence == 0.55
    assert items[2].product_name == "C"
