from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from pulse.app.models.domain import Category, Notification

NEWS_KEYWORDS: tuple[str, ...] = (
    "reuters",
    "bbc",
    "cnn",
    "times",
    "guardian",
    "ndtv",
    "hindu",
    "al jazeera",
    "news",
)
SOCIAL_KEYWORDS: tuple[str, ...] = ("trump", "musk", "modi", "@")
FINANCIAL_KEYWORDS: tuple[str, ...] = (
    "economic",
    "financial",
    "wsj",
    "marketwatch",
    "moneycontrol",
    "livemint",
    "yahoo finance",
    "jim cramer",
    "market",
    "finance",
)

CATEGORY_LABELS: dict[Category, str] = {
    Category.BREAKING: "Breaking News",
    Category.NEWS: "News Sources",
    Category.SOCIAL: "Social Media",
    Category.FINANCIAL: "Financial News",
    Category.OTHER: "Other",
}
SAVED_GROUP_LABEL = "Saved Articles"
_GROUP_ORDER: tuple[Category, ...] = (
    Category.BREAKING,
    Category.NEWS,
    Category.SOCIAL,
    Category.FINANCIAL,
)


@dataclass(frozen=True)
class NotificationGroup:
    key: str
    label: str
    notifications: list[Notification]


def _matches(source_name: str, keywords: Iterable[str]) -> bool:
    lowered = source_name.lower()
    return any(keyword in lowered for keyword in keywords)


def is_news_source(source_name: str) -> bool:
    return _matches(source_name, NEWS_KEYWORDS)


def is_financial_source(source_name: str) -> bool:
    return _matches(source_name, FINANCIAL_KEYWORDS)


def is_social_source(source_name: str) -> bool:
    if _matches(source_name, SOCIAL_KEYWORDS):
        return True
    return not is_news_source(source_name) and not is_financial_source(source_name)


def classify(source_name: str, is_breaking: bool) -> Category:
    # Order matters: social swallows anything that is neither news nor financial.
    if is_breaking:
        return Category.BREAKING
    if is_financial_source(source_name):
        return Category.FINANCIAL
    if is_social_source(source_name):
        return Category.SOCIAL
    if is_news_source(source_name):
        return Category.NEWS
    return Category.OTHER


def category_label(category: Category) -> str:
    return CATEGORY_LABELS[category]


def group_by_category(notifications: Iterable[Notification]) -> list[NotificationGroup]:
    """Bucket a newest-first history into display groups, skipping empty ones.

    Saved notifications appear both in their category group and in the saved
    group. Notifications categorized as OTHER are only listed when saved.
    """
    items = list(notifications)
    groups: list[NotificationGroup] = []
    for category in _GROUP_ORDER:
        members = [item for item in items if item.category == category]
        if members:
            groups.append(
                NotificationGroup(
                    key=category.value,
                    label=category_label(category),
                    notifications=members,
                )
            )
    saved = [item for item in items if item.is_saved]
    if saved:
        groups.append(NotificationGroup(key="saved", label=SAVED_GROUP_LABEL, notifications=saved))
    return groups
