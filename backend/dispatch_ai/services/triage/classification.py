"""
Urgency and problem-category classification.

Rule-based, used in two places:
- Cross-checking the urgency/categories a backend reports in its tool call
- Fallback extraction when no usable tool call arrived

Matching is token based: a phrase matches when every one of its stemmed tokens
occurs in the stemmed, casefolded token set of the text. Matching is therefore
independent of case, punctuation, word order and common inflections
("pipes", "leaking", "leidingen"). All languages are checked for every text;
customers mix Dutch and English freely.

Urgency precedence: emergency > high > normal > low (default).
"""
import re
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from dispatch_ai.core.logging import get_logger
from dispatch_ai.services.ai.schema import URGENCY_ORDER, Urgency

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\w+")

# Inflection endings stripped before matching, longest first; a stem keeps at
# least MIN_STEM_LENGTH characters.
STEM_SUFFIXES: Tuple[str, ...] = ("ing", "ed", "es", "en", "s", "e")
MIN_STEM_LENGTH = 3

DEFAULT_CATEGORY = "hourly_rate"

URGENCY_KEYWORDS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "emergency": {
        "nl": (
            "spoedgeval", "noodgeval", "overstroming", "ondergelopen",
            "gaslek", "gaslucht", "water stroomt", "hele huis koud",
            "gesprongen leiding", "staat blank",
        ),
        "en": (
            "emergency", "flooding", "flooded", "gas leak", "smell gas",
            "burst pipe", "water flowing",
        ),
    },
    "high": {
        "nl": (
            "lek", "lekt", "lekkage", "geen warm water", "geen verwarming",
            "verstopt", "loopt over", "overloop", "dringend", "urgent",
        ),
        "en": (
            "leak", "leaking", "no hot water", "no heat", "no heating",
            "blocked", "overflowing", "overflow", "urgent",
        ),
    },
    "normal": {
        "nl": (
            "repareren", "reparatie", "installeren", "vervangen", "plaatsen",
            "onderhoud", "offerte",
        ),
        "en": (
            "repair", "fix", "install", "installation", "replace",
            "replacement", "maintenance", "service", "quote",
        ),
    },
}

# "No heat" in cold weather is an emergency even without an emergency keyword.
NO_HEAT_PHRASES: Dict[str, Tuple[str, ...]] = {
    "nl": ("geen verwarming", "geen warm water", "verwarming doet het niet", "cv doet het niet"),
    "en": ("no heat", "no heating", "no hot water", "heating not working"),
}

COLD_WEATHER_WORDS: Dict[str, Tuple[str, ...]] = {
    "nl": ("winter", "vriest", "vriezen", "vorst"),
    "en": ("winter", "freezing", "frozen"),
}

# Order is the vocabulary order of the result.
CATEGORY_KEYWORDS: Tuple[Tuple[str, Dict[str, Tuple[str, ...]]], ...] = (
    ("leak_repair", {
        "nl": ("lek", "lekt", "lekkage", "water stroomt", "overstroming", "ondergelopen", "gesprongen leiding"),
        "en": ("leak", "leaking", "leaks", "flooding", "flooded", "burst pipe", "water flowing"),
    }),
    ("tap_replacement", {
        "nl": ("kraan", "mengkraan"),
        "en": ("tap", "faucet"),
    }),
    ("drain_unclog", {
        "nl": ("afvoer", "verstopt", "verstopping", "ontstoppen"),
        "en": ("drain", "blocked", "clogged", "unclog"),
    }),
    ("toilet_install", {
        "nl": ("toilet", "wc"),
        "en": ("toilet",),
    }),
    ("boiler_service", {
        "nl": ("ketel", "cv", "boiler"),
        "en": ("boiler",),
    }),
    ("kitchen_plumbing", {
        "nl": ("keuken",),
        "en": ("kitchen",),
    }),
    ("radiator_install", {
        "nl": ("radiator", "verwarming"),
        "en": ("radiator", "heating"),
    }),
    ("shower_install", {
        "nl": ("douche", "douchecabine", "bad"),
        "en": ("shower", "bath", "bathtub"),
    }),
)

CATEGORY_VOCABULARY: Tuple[str, ...] = tuple(name for name, _ in CATEGORY_KEYWORDS) + (DEFAULT_CATEGORY,)


def tokenize(text: str) -> FrozenSet[str]:
    """Casefolded word tokens of ``text``."""
    return frozenset(_TOKEN_RE.findall(text.casefold()))


def stem(token: str) -> str:
    """Strip one inflection ending: "pipes" -> "pip", "leidingen" -> "leiding"."""
    for suffix in STEM_SUFFIXES:
        if token.endswith(suffix) and len(token) - len(suffix) >= MIN_STEM_LENGTH:
            return token[: -len(suffix)]
    return token


def stemmed_tokens(text: str) -> FrozenSet[str]:
    return frozenset(stem(token) for token in tokenize(text))


def _phrase_tokens(phrase: str) -> FrozenSet[str]:
    return stemmed_tokens(phrase)


def _matching_phrases(tokens: FrozenSet[str], table: Dict[str, Tuple[str, ...]]) -> List[str]:
    matched = []
    for phrases in table.values():
        for phrase in phrases:
            if _phrase_tokens(phrase) <= tokens and phrase not in matched:
                matched.append(phrase)
    return matched


def urgency_rank(urgency: str) -> int:
    return URGENCY_ORDER.index(urgency)


def max_urgency(*levels: str) -> str:
    """Most severe of the given urgency levels."""
    return max(levels, key=urgency_rank)


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    urgency: Urgency
    categories: List[str]
    matched_keywords: List[str] = Field(default_factory=list)


class UrgencyClassifier:
    """
    Keyword classifier for urgency and service categories.

    Stateless; one instance is shared by the whole process.
    """

    def detect_urgency(self, text: str) -> Urgency:
        urgency, _ = self._urgency_with_matches(stemmed_tokens(text))
        return urgency

    def is_emergency(self, text: str) -> bool:
        return self.detect_urgency(text) == "emergency"

    def detect_categories(self, text: str) -> List[str]:
        """
        Matched categories in vocabulary order.

        Returns ``["hourly_rate"]`` when nothing matches.
        """
        categories, _ = self._categories_with_matches(stemmed_tokens(text))
        return categories

    def classify(self, text: str) -> Classification:
        tokens = stemmed_tokens(text)
        urgency, urgency_matches = self._urgency_with_matches(tokens)
        categories, category_matches = self._categories_with_matches(tokens)
        matched = list(dict.fromkeys(urgency_matches + category_matches))

        logger.debug(
            "triage_classified",
            urgency=urgency,
            categories=categories,
            matched_keywords=matched,
        )
        return Classification(urgency=urgency, categories=categories, matched_keywords=matched)

    def filter_categories(self, categories: Iterable[str]) -> List[str]:
        """Keep known categories only, in vocabulary order, without duplicates."""
        wanted = {category.strip().lower() for category in categories if category}
        return [category for category in CATEGORY_VOCABULARY if category in wanted]

    def _urgency_with_matches(self, tokens: FrozenSet[str]) -> Tuple[Urgency, List[str]]:
        for level in ("emergency", "high", "normal"):
            matched = _matching_phrases(tokens, URGENCY_KEYWORDS[level])
            if level == "emergency" and not matched:
                matched = self._cold_weather_matches(tokens)
            if matched:
                return level, matched
        return "low", []

    def _cold_weather_matches(self, tokens: FrozenSet[str]) -> List[str]:
        no_heat = _matching_phrases(tokens, NO_HEAT_PHRASES)
        if not no_heat:
            return []
        cold = _matching_phrases(tokens, COLD_WEATHER_WORDS)
        return no_heat + cold if cold else []

    def _categories_with_matches(self, tokens: FrozenSet[str]) -> Tuple[List[str], List[str]]:
        categories: List[str] = []
        matched: List[str] = []
        for category, table in CATEGORY_KEYWORDS:
            hits = _matching_phrases(tokens, table)
            if hits:
                categories.append(category)
                matched.extend(hits)
        if not categories:
            return [DEFAULT_CATEGORY], []
        return categories, matched


_classifier: Optional[UrgencyClassifier] = None


def get_classifier() -> UrgencyClassifier:
    """Global classifier accessor."""
    global _classifier
    if _classifier is None:
        _classifier = UrgencyClassifier()
    return _classifier
