from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import re

UNCATEGORIZED_KEY = "uncategorized"

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    no_punct = _NON_WORD.sub(" ", text.lower()).replace("_", " ")
    return _WHITESPACE.sub(" ", no_punct).strip()


@dataclass(frozen=True)
class AmountProfile:
    minimum: float
    maximum: float
    typical: tuple[float, ...] = ()

    def fit(self, amount: float) -> float:
        """Return 1.0 for a typical amount, 0.7 in range, 0.2 out of range."""
        if not self.minimum <= amount <= self.maximum:
            return 0.2
        if any(abs(amount - t) <= t * 0.2 for t in self.typical):
            return 1.0
        return 0.7


@dataclass(frozen=True)
class CategoryRule:
    key: str
    name: str
    type: str  # "income" | "expense"
    keywords: tuple[str, ...] = ()
    platform_keywords: dict[str, tuple[str, ...]] = field(default_factory=dict)
    amount: AmountProfile | None = None
    system: bool = False

    def keywords_for(self, platform_hint: str | None) -> tuple[str, ...]:
        if platform_hint is None:
            return self.keywords
        return self.keywords + self.platform_keywords.get(platform_hint, ())


class Taxonomy:
    """Ordered, keyed view over the category rules."""

    def __init__(self, rules: Sequence[CategoryRule]) -> None:
        self._rules_by_key: dict[str, CategoryRule] = {r.key: r for r in rules}
        if UNCATEGORIZED_KEY not in self._rules_by_key:
            raise ValueError(f"Taxonomy must define the {UNCATEGORIZED_KEY!r} category")

    @classmethod
    def from_rules(cls, rules: Sequence[CategoryRule]) -> Taxonomy:
        return cls(sorted(rules, key=lambda r: r.key))

    def is_valid_key(self, key: str) -> bool:
        return key in self._rules_by_key

    def get(self, key: str) -> CategoryRule | None:
        return self._rules_by_key.get(key)

    def all_rules(self) -> list[CategoryRule]:
        return [self._rules_by_key[k] for k in sorted(self._rules_by_key)]

    def scorable_rules(self) -> list[CategoryRule]:
        return [r for r in self.all_rules() if not r.system]

    @property
    def uncategorized(self) -> CategoryRule:
        return self._rules_by_key[UNCATEGORIZED_KEY]
