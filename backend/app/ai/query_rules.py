"""Keyword rules for query classification and topic-change detection.

Rules are plain data evaluated in order; the first matching rule wins. Keep
new vocabulary here rather than in the dialogue manager.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


def _words(*phrases: str) -> re.Pattern[str]:
    return re.compile(r"\b(?:" + "|".join(phrases) + r")\b", re.IGNORECASE)


TAX_VOCABULARY = _words(
    r"tax(?:es)?",
    r"irs",
    r"quarterly",
    r"estimated payments?",
    r"tax brackets?",
    r"brackets?",
    r"deductions?",
    r"deductible",
    r"filing status",
    r"withholding",
    r"1099s?",
    r"w-?2s?",
    r"refunds?",
    r"q[1-4]",
)
INCOME_VOCABULARY = _words(
    r"income",
    r"earn(?:ed|ing|ings|s)?",
    r"salary",
    r"paychecks?",
    r"wages?",
    r"revenue",
    r"made",
)
QUANTITATIVE_INTENT = re.compile(
    r"\b(?:how much|how many|total|average|trends?|breakdown|compare|per month|monthly|"
    r"last (?:month|quarter|year)|this (?:month|quarter|year)|show)\b|\$|\d",
    re.IGNORECASE,
)
BUDGET_VOCABULARY = _words(
    r"budget(?:ing)?",
    r"spend(?:ing)?",
    r"spent",
    r"expenses?",
    r"savings?",
    r"dining",
    r"groceries",
    r"subscriptions?",
    r"apps?",
)
FOLLOW_UP_CUES = re.compile(
    r"^\s*(?:what about|how about|and (?:for|in|if)|same (?:for|but)|what if|now for|also)\b",
    re.IGNORECASE,
)

RESET_PHRASES = _words(
    r"change (?:the )?(?:topic|subject)",
    r"forget (?:that|it|about (?:that|it))",
    r"start over",
    r"new question",
    r"something else",
    r"different (?:topic|question)",
    r"never ?mind",
    r"moving on",
)

# Vocabulary that marks each domain when deciding whether the user switched topics.
DOMAIN_VOCABULARY: dict[str, re.Pattern[str]] = {
    "tax": TAX_VOCABULARY,
    "income": INCOME_VOCABULARY,
    "budget": BUDGET_VOCABULARY,
}
DOMAIN_QUERY_TYPES = frozenset({"tax", "income"})


@dataclass(frozen=True)
class QueryRule:
    """Assigns `query_type` when every pattern in `all_of` matches."""

    name: str
    query_type: str
    all_of: tuple[re.Pattern[str], ...]


QUERY_TYPE_RULES: tuple[QueryRule, ...] = (
    QueryRule(name="tax_vocabulary", query_type="tax", all_of=(TAX_VOCABULARY,)),
    QueryRule(
        name="quantitative_income",
        query_type="income",
        all_of=(INCOME_VOCABULARY, QUANTITATIVE_INTENT),
    ),
)


def _matches_any_domain(text: str) -> bool:
    return any(pattern.search(text) for pattern in DOMAIN_VOCABULARY.values())


def classify_query(
    text: str,
    previous_type: str | None = None,
    has_entities: bool = False,
) -> str:
    """Return `tax`, `income`, or `general` for `text`.

    Follow-ups ("what about Ohio?") without any domain vocabulary keep the
    previous domain-specific type.
    """
    for rule in QUERY_TYPE_RULES:
        if all(pattern.search(text) for pattern in rule.all_of):
            return rule.query_type

    if previous_type in DOMAIN_QUERY_TYPES and not _matches_any_domain(text):
        if has_entities or FOLLOW_UP_CUES.search(text):
            return previous_type

    return "general"


def is_topic_change(text: str, previous_type: str | None) -> bool:
    """True when the user explicitly resets or clearly moves to another domain."""
    if previous_type not in DOMAIN_QUERY_TYPES:
        return False

    if RESET_PHRASES.search(text):
        return True

    current_vocabulary = DOMAIN_VOCABULARY[previous_type]
    if current_vocabulary.search(text):
        return False

    return any(
        pattern.search(text)
        for domain, pattern in DOMAIN_VOCABULARY.items()
        if domain != previous_type
    )
