"""
Recency grouping for conversation lists.

group_conversations() is a pure function of its inputs: the conversation list,
a reference time and a locale. It never reads the clock, which keeps sidebar
ordering reproducible in tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, tzinfo
from functools import lru_cache
from typing import Protocol, TypeVar

from babel import Locale, UnknownLocaleError
from babel.dates import get_month_names

from localchat.conversations.models import ConversationGroup

logger = logging.getLogger(__name__)

TODAY = "Today"
YESTERDAY = "Yesterday"
PREVIOUS_7_DAYS = "Previous 7 Days"
PREVIOUS_30_DAYS = "Previous 30 Days"
DEFAULT_LOCALE = "en"


class Timestamped(Protocol):
    last_modified: int


C = TypeVar("C", bound=Timestamped)


def _to_millis(moment: datetime) -> int:
    return round(moment.timestamp() * 1000)


def _from_millis(millis: int, tz: tzinfo | None) -> datetime:
    return datetime.fromtimestamp(millis / 1000, tz=tz)


def _parse_locale(value: str | None) -> Locale | None:
    if not value:
        return None
    try:
        return Locale.parse(value.replace("-", "_"))
    except (ValueError, TypeError, UnknownLocaleError):
        return None


@lru_cache(maxsize=64)
def month_names(locale: str | None, fallback_locale: str = DEFAULT_LOCALE) -> dict[int, str]:
    """Stand-alone wide month names (1-12) for a locale such as "en", "de_DE" or "pt-BR"."""
    parsed = _parse_locale(locale)
    if parsed is None:
        logger.debug("Unknown locale %r, using %r for month names", locale, fallback_locale)
        parsed = _parse_locale(fallback_locale) or Locale.parse(DEFAULT_LOCALE)
    return dict(get_month_names("wide", context="stand-alone", locale=parsed))


def group_conversations(
    conversations: Iterable[C],
    reference_time: datetime,
    locale: str | None = DEFAULT_LOCALE,
    *,
    fallback_locale: str = DEFAULT_LOCALE,
) -> list[ConversationGroup]:
    """
    Partition conversations into display buckets ordered by recency.

    Buckets are Today, Yesterday, Previous 7 Days and Previous 30 Days (each
    emitted only when non-empty), followed by one "<Month> <year>" bucket per
    older calendar month, newest month first. Day boundaries are midnights in
    reference_time's timezone (the process local zone for naive datetimes) and
    are inclusive, so a conversation modified exactly at a boundary lands in
    the more recent bucket. Timestamps after reference_time count as Today.

    Within a bucket conversations keep the order of a stable sort by
    last_modified, newest first.
    """
    tz = reference_time.tzinfo
    today = reference_time.replace(hour=0, minute=0, second=0, microsecond=0)
    cutoffs = [
        (TODAY, _to_millis(today)),
        (YESTERDAY, _to_millis(today - timedelta(days=1))),
        (PREVIOUS_7_DAYS, _to_millis(today - timedelta(days=7))),
        (PREVIOUS_30_DAYS, _to_millis(today - timedelta(days=30))),
    ]

    fixed: dict[str, list[C]] = {label: [] for label, _ in cutoffs}
    monthly: dict[tuple[int, int], list[C]] = {}

    ordered = sorted(conversations, key=lambda conv: conv.last_modified, reverse=True)
    for conv in ordered:
        for label, cutoff in cutoffs:
            if conv.last_modified >= cutoff:
                fixed[label].append(conv)
                break
        else:
            modified = _from_millis(conv.last_modified, tz)
            monthly.setdefault((modified.year, modified.month), []).append(conv)

    groups = [
        ConversationGroup(label=label, conversations=items)
        for label, items in fixed.items()
        if items
    ]
    if monthly:
        names = month_names(locale, fallback_locale)
        for year, month in sorted(monthly, reverse=True):
            groups.append(
                ConversationGroup(
                    label=f"{names[month]} {year}",
                    conversations=monthly[(year, month)],
                )
            )
    return groups
