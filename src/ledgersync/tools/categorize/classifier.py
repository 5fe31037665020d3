"""Deterministic keyword + history classifier for ledger transactions.

Scoring is explicit: every category in the taxonomy is scored and the best
one wins. Ties are broken by the longest matched keyword, then by the number
of matched keywords, then by category key, so the result never depends on
dict or YAML ordering.

No I/O happens here. Callers that want the history fallback fetch similar
transactions from the store and pass them in.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from ledgersync.models.sync import LedgerTransaction, TransactionType
from ledgersync.taxonomy.core import (
    UNCATEGORIZED_KEY,
    CategoryRule,
    Taxonomy,
    normalize_text,
)
from ledgersync.taxonomy.loader import default_taxonomy

ConfidenceBand = Literal["high", "medium", "low"]

HIGH_CONFIDENCE = 0.8
MEDIUM_CONFIDENCE = 0.4

KEYWORD_BASE = 0.6
MAX_SPECIFICITY_BONUS = 0.2
AMOUNT_WEIGHT = 0.2
MAX_KEYWORD_CONFIDENCE = 0.95

MIN_HISTORY_SIMILARITY = 0.34
MAX_HISTORY_CONFIDENCE = 0.79
RECENCY_HALF_LIFE = 10


def confidence_band(confidence: float) -> ConfidenceBand:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


@dataclass(frozen=True)
class CategorySuggestion:
    category_id: str
    confidence: float
    reasons: tuple[str, ...]
    suggested_type: TransactionType

    @property
    def band(self) -> ConfidenceBand:
        return confidence_band(self.confidence)

    @property
    def is_uncategorized(self) -> bool:
        return self.category_id == UNCATEGORIZED_KEY


@dataclass(frozen=True)
class _KeywordScore:
    rule: CategoryRule
    score: float
    matches: tuple[str, ...]
    amount_fit: float

    @property
    def sort_key(self) -> tuple[float, int, int, str]:
        longest = max(len(m) for m in self.matches)
        # Negated so that ascending sort puts the winner first.
        return (-self.score, -longest, -len(self.matches), self.rule.key)


class CategoryClassifier:
    def __init__(self, taxonomy: Taxonomy | None = None) -> None:
        self._taxonomy = taxonomy or default_taxonomy()

    @property
    def taxonomy(self) -> Taxonomy:
        return self._taxonomy

    def classify(
        self,
        narration: str,
        amount: float,
        platform_hint: str | None = None,
        counterparty: str | None = None,
        *,
        transaction_type: TransactionType | None = None,
        history: Sequence[LedgerTransaction] = (),
    ) -> CategorySuggestion:
        """Suggest a category for one transaction.

        Args:
            narration: Free-text narration from the platform
            amount: Transaction amount; only its magnitude is used
            platform_hint: ``"bank"`` or ``"mobile_money"`` to enable
                platform-specific keywords
            counterparty: Optional counterparty or merchant name
            transaction_type: When known, restricts candidates to categories
                of the same type
            history: Previously stored transactions for the same user, used
                only when no keyword scores at least medium confidence

        Returns:
            CategorySuggestion. Never raises for unrecognized input; the
            absence of a signal is an ``uncategorized`` result with
            confidence 0.
        """
        text = normalize_text(f"{narration} {counterparty or ''}")
        magnitude = abs(amount)

        if text:
            best = self._best_keyword_score(
                text, magnitude, platform_hint, transaction_type
            )
            if best is not None and best.score >= MEDIUM_CONFIDENCE:
                return self._keyword_suggestion(best, magnitude)

            from_history = self._history_suggestion(text, history, transaction_type)
            if from_history is not None:
                return from_history

        return self._uncategorized(transaction_type)

    def _rules_for(
        self, transaction_type: TransactionType | None
    ) -> list[CategoryRule]:
        rules = self._taxonomy.scorable_rules()
        if transaction_type is None:
            return rules
        return [r for r in rules if r.type == transaction_type]

    def _best_keyword_score(
        self,
        text: str,
        amount: float,
        platform_hint: str | None,
        transaction_type: TransactionType | None,
    ) -> _KeywordScore | None:
        padded = f" {text} "
        scores: list[_KeywordScore] = []
        for rule in self._rules_for(transaction_type):
            found = {
                kw for kw in rule.keywords_for(platform_hint) if f" {kw} " in padded
            }
            matches = tuple(sorted(found, key=lambda kw: (-len(kw), kw)))
            if not matches:
                continue
            longest = len(matches[0].replace(" ", ""))
            specificity = min(
                MAX_SPECIFICITY_BONUS, 0.05 * (len(matches) - 1) + 0.02 * longest
            )
            amount_fit = rule.amount.fit(amount) if rule.amount else 0.5
            score = min(
                MAX_KEYWORD_CONFIDENCE,
                KEYWORD_BASE + specificity + AMOUNT_WEIGHT * amount_fit,
            )
            scores.append(
                _KeywordScore(
                    rule=rule,
                    score=round(score, 4),
                    matches=matches,
                    amount_fit=amount_fit,
                )
            )

        if not scores:
            return None
        scores.sort(key=lambda s: s.sort_key)
        return scores[0]

    def _keyword_suggestion(
        self, best: _KeywordScore, amount: float
    ) -> CategorySuggestion:
        reasons = [f"matched keyword: {kw}" for kw in best.matches]
        if best.amount_fit >= 1.0:
            reasons.append(f"amount {amount:.2f} is typical for {best.rule.name}")
        elif best.amount_fit <= 0.2:
            reasons.append(f"amount {amount:.2f} is unusual for {best.rule.name}")
        return CategorySuggestion(
            category_id=best.rule.key,
            confidence=best.score,
            reasons=tuple(reasons),
            suggested_type=best.rule.type,  # type: ignore[arg-type]
        )

    def _history_suggestion(
        self,
        text: str,
        history: Sequence[LedgerTransaction],
        transaction_type: TransactionType | None,
    ) -> CategorySuggestion | None:
        query_tokens = set(text.split())
        if not query_tokens or not history:
            return None

        ordered = sorted(
            (
                h
                for h in history
                if h.category_id
                and h.category_id != UNCATEGORIZED_KEY
                and self._taxonomy.is_valid_key(h.category_id)
                and (transaction_type is None or h.type == transaction_type)
            ),
            key=lambda h: (h.transaction_date, h.id),
            reverse=True,
        )

        votes: dict[str, float] = {}
        best_similarity: dict[str, float] = {}
        supporters: dict[str, int] = {}
        for rank, candidate in enumerate(ordered):
            candidate_text = f"{candidate.description} {candidate.counterparty or ''}"
            tokens = set(normalize_text(candidate_text).split())
            if not tokens:
                continue
            similarity = len(query_tokens & tokens) / len(query_tokens | tokens)
            if similarity < MIN_HISTORY_SIMILARITY:
                continue
            recency = 0.5 ** (rank / RECENCY_HALF_LIFE)
            key = candidate.category_id or UNCATEGORIZED_KEY
            votes[key] = votes.get(key, 0.0) + similarity * recency
            best_similarity[key] = max(best_similarity.get(key, 0.0), similarity)
            supporters[key] = supporters.get(key, 0) + 1

        if not votes:
            return None

        winner = min(votes, key=lambda k: (-votes[k], k))
        share = votes[winner] / sum(votes.values())
        confidence = round(
            min(MAX_HISTORY_CONFIDENCE, share * best_similarity[winner]), 4
        )
        if confidence < MEDIUM_CONFIDENCE:
            return None

        rule = self._taxonomy.get(winner)
        if rule is None:
            # History can carry a category this taxonomy does not know.
            return None
        return CategorySuggestion(
            category_id=winner,
            confidence=confidence,
            reasons=(
                f"similar to {supporters[winner]} previous transaction(s) "
                f"categorized as {rule.name}",
            ),
            suggested_type=rule.type,  # type: ignore[arg-type]
        )

    def _uncategorized(
        self, transaction_type: TransactionType | None
    ) -> CategorySuggestion:
        return CategorySuggestion(
            category_id=UNCATEGORIZED_KEY,
            confidence=0.0,
            reasons=("no keyword or history match",),
            suggested_type=transaction_type or "expense",
        )
