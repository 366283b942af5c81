from __future__ import annotations

from datetime import UTC, datetime

import pytest

from pulse.app.models.domain import Category, Notification
from pulse.app.services.categorizer import category_label, classify, group_by_category


@pytest.mark.parametrize(
    ("source_name", "is_breaking", "expected"),
    [
        ("Reuters", True, Category.BREAKING),
        ("WSJ Markets", False, Category.FINANCIAL),
        ("Financial Times", False, Category.FINANCIAL),
        ("Yahoo Finance", False, Category.FINANCIAL),
        ("Elon Musk", False, Category.SOCIAL),
        ("@nytimes", False, Category.SOCIAL),
        ("Some Blog", False, Category.SOCIAL),
        ("Reuters", False, Category.NEWS),
        ("Times of India", False, Category.NEWS),
        ("Al Jazeera English", False, Category.NEWS),
    ],
)
def test_classify_priority_order(source_name: str, is_breaking: bool, expected: Category) -> None:
    assert classify(source_name, is_breaking) == expected


def test_classify_is_deterministic() -> None:
    assert {classify("MarketWatch", False) for _ in range(5)} == {Category.FINANCIAL}


def _notification(notification_id: str, category: Category, *, is_saved: bool = False) -> Notification:
    return Notification(
        notification_id=notification_id,
        title=notification_id,
        message="",
        source_name="x",
        timestamp=datetime(2025, 1, 6, tzinfo=UTC),
        is_saved=is_saved,
        category=category,
    )


def test_group_by_category_orders_groups_and_skips_empty() -> None:
    items = [
        _notification("fin", Category.FINANCIAL),
        _notification("brk", Category.BREAKING, is_saved=True),
        _notification("news", Category.NEWS),
        _notification("other", Category.OTHER),
    ]

    groups = group_by_category(items)

    assert [group.key for group in groups] == ["breaking", "news", "financial", "saved"]
    assert [group.label for group in groups] == [
        "Breaking News",
        "News Sources",
        "Financial News",
        "Saved Articles",
    ]
    assert [item.notification_id for item in groups[-1].notifications] == ["brk"]


def test_category_label() -> None:
    assert category_label(Category.SOCIAL) == "Social Media"
