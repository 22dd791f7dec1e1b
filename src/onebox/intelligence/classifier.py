"""Classifier capabilities mapping messages onto the category set."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ..core.interfaces import Classifier, ClassifierError
from ..core.models import Category

from .llm import LLMClient, LLMError, extract_label
from .prompts import build_classification_prompt

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class _CategoryRule:
    category: Category
    keywords: tuple[str, ...]


# Order matters: the first matching rule wins, so negations are checked
# before the phrases they contain ("not interested" before "interested").
_DEFAULT_RULES: tuple[_CategoryRule, ...] = (
    _CategoryRule(
        category=Category.OUT_OF_OFFICE,
        keywords=(
            "out of office",
            "out-of-office",
            "automatic reply",
            "auto-reply",
            "autoreply",
            "on vacation",
            "on annual leave",
            "away from the office",
            "limited access to email",
        ),
    ),
    _CategoryRule(
        category=Category.NOT_INTERESTED,
        keywords=(
            "not interested",
            "no longer interested",
            "no thanks",
            "no, thanks",
            "not a good fit",
            "please remove me",
            "stop emailing",
            "we will pass",
            "we'll pass",
            "decline",
        ),
    ),
    _CategoryRule(
        category=Category.MEETING_BOOKED,
        keywords=(
            "meeting confirmed",
            "meeting booked",
            "invitation:",
            "calendar invite",
            "accepted:",
            "interview scheduled",
            "booked a call",
            "see you on",
            "looking forward to our call",
            "scheduled a meeting",
        ),
    ),
    _CategoryRule(
        category=Category.SPAM,
        keywords=(
            "unsubscribe",
            "newsletter",
            "special offer",
            "limited time",
            "click here",
            "% off",
            "promo code",
            "congratulations, you",
            "winner",
            "act now",
        ),
    ),
    _CategoryRule(
        category=Category.INTERESTED,
        keywords=(
            "interested",
            "demo",
            "pricing",
            "quote",
            "proposal",
            "tell me more",
            "learn more",
            "sounds good",
            "let's talk",
            "set up a call",
            "next steps",
        ),
    ),
)


class KeywordClassifier(Classifier):
    """Assign a category based on simple phrase heuristics."""

    def __init__(self, rules: Sequence[_CategoryRule] | None = None) -> None:
        self._rules = tuple(rules) if rules is not None else _DEFAULT_RULES

    def classify(self, sender: str, subject: str, body_excerpt: str) -> Category:
        """Return the first category whose phrases appear in the message."""
        haystack = " ".join(part for part in (subject, body_excerpt) if part).lower()
        for rule in self._rules:
            if _contains_keyword(rule.keywords, haystack):
                return rule.category
        return Category.UNCATEGORIZED


def _contains_keyword(keywords: Iterable[str], haystack: str) -> bool:
    for keyword in keywords:
        if keyword in haystack:
            return True
    return False


class LlmClassifier(Classifier):
    """Classify messages with an LLM, optionally falling back to keywords."""

    def __init__(
        self, llm_client: LLMClient, *, fallback: Classifier | None = None
    ) -> None:
        self._llm_client = llm_client
        self._fallback = fallback

    def classify(self, sender: str, subject: str, body_excerpt: str) -> Category | str:
        """Ask the model for a label; unknown labels are returned verbatim."""
        prompt = build_classification_prompt(sender, subject, body_excerpt)
        try:
            response = self._llm_client.generate(prompt)
        except LLMError as exc:
            if self._fallback is None:
                raise ClassifierError("LLM classification failed") from exc
            LOGGER.warning(
                "LLM classification via %s failed (%s); using fallback rules",
                self._llm_client.provider_id,
                exc,
            )
            return self._fallback.classify(sender, subject, body_excerpt)

        answer = extract_label(response)
        category = Category.parse(answer)
        if category is Category.UNCATEGORIZED:
            return answer
        return category


__all__ = ["KeywordClassifier", "LlmClassifier"]
