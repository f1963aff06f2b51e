"""Spam filters applied to signal items before extraction.

A filter is any callable taking an item's text and returning ``True`` when
the item is noise. :class:`FilterChain` rejects an item if any of its
filters does; new heuristics are added by appending to the chain.
"""
from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Sequence

from refinery.schemas import SignalItem

NoiseFilter = Callable[[str], bool]

# Engagement bait, giveaways, etc.
DEFAULT_NOISE_PATTERNS = (
    r"\bgiveaway\b",
    r"\bairdrop\b",
    r"\bfollow.*retweet\b",
    r"\bwin\s+\$?\d",
    r"\b(dm|DM)\s+me\b",
    r"\bcheck\s+my\s+bio\b",
    r"\bfree\s+nft\b",
    r"🚀{3,}",
)


class PatternFilter:
    """Flags text matching any of a set of regular expressions."""

    def __init__(self, patterns: Iterable[str], flags: int = re.IGNORECASE):
        self.patterns = [re.compile(p, flags) for p in patterns]

    def __call__(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


class FilterChain:
    def __init__(self, filters: Sequence[NoiseFilter] = ()):
        self.filters = list(filters)

    def add(self, noise_filter: NoiseFilter) -> FilterChain:
        self.filters.append(noise_filter)
        return self

    def is_noise(self, text: str) -> bool:
        return any(f(text) for f in self.filters)

    def apply(self, items: Iterable[SignalItem]) -> list[SignalItem]:
        """Keep the items no filter flags."""
        return [item for item in items if not self.is_noise(item.content)]


def default_chain() -> FilterChain:
    return FilterChain([PatternFilter(DEFAULT_NOISE_PATTERNS)])
