"""
Plan policy resolution.

Turns the store's plan tier and a deterministic classification of the query
into a PlanPolicy value object: which model tier to ask for, how much
retrieved context to include, how long the answer may be, and whether the
knowledge base needs consulting at all.
"""

from dataclasses import dataclass, replace
import logging
import re
from typing import Dict, FrozenSet, Optional

from models.plan import PlanPolicy
from models.prompt import ResponseMode
from services.errors import InvalidConfigError

logger = logging.getLogger(__name__)


@dataclass
class Classification:
    """
    Result of query classification.

    Attributes:
        category: Either "simple" or "complex"
        reasoning: Explanation of the classification decision
        skip_retrieval: Whether to skip knowledge base retrieval (greetings, meta questions)
        rule_triggered: Which decision tree rule was applied
    """
    category: str
    reasoning: str
    skip_retrieval: bool = False
    rule_triggered: str = ""


PLAN_TABLE: Dict[str, PlanPolicy] = {
    "free": PlanPolicy(
        plan="free", model_hint="standard", context_token_budget=1500,
        max_response_tokens=400, top_k=10, requests_per_minute=10,
    ),
    "pro": PlanPolicy(
        plan="pro", model_hint="standard", context_token_budget=3000,
        max_response_tokens=600, top_k=15, requests_per_minute=30,
    ),
    "unlimited": PlanPolicy(
        plan="unlimited", model_hint="premium", context_token_budget=4000,
        max_response_tokens=800, top_k=20, requests_per_minute=60,
    ),
}

# Plans allowed to upgrade complex queries to the premium model tier
PREMIUM_ON_COMPLEX = frozenset({"pro"})

MODE_TEMPERATURE = {
    ResponseMode.STANDARD: 0.5,
    ResponseMode.DETAILED: 0.7,
    ResponseMode.CONCISE: 0.3,
}

MODE_MAX_TOKENS = {
    ResponseMode.STANDARD: 400,
    ResponseMode.DETAILED: 800,
    ResponseMode.CONCISE: 200,
}


def _phrase_regex(phrases: FrozenSet[str]) -> re.Pattern:
    # Longest first so "thank you" wins over "thanks"
    ordered = sorted(phrases, key=len, reverse=True)
    return re.compile(r"\b(" + "|".join(re.escape(p) for p in ordered) + r")\b")


class PlanPolicyResolver:
    """
    Deterministic query classifier and plan policy resolver.

    Uses a tiered decision tree over explicit signals (greetings, keywords,
    length, question count, comparisons) and a plan table; no model calls.
    """

    SIMPLE = "simple"
    COMPLEX = "complex"

    COMPLEX_KEYWORDS = frozenset({
        "explain", "compare", "difference", "recommend", "which one", "pros and cons",
    })

    COMPARISON_WORDS = frozenset({
        "versus", "vs", "better", "worse", "compared to",
    })

    GREETING_PATTERNS = frozenset({
        "hi", "hello", "hey", "thanks", "thank you", "good morning", "good evening",
    })

    META_COMMENT_PATTERNS = frozenset({
        "who are you", "what can you do", "are you a bot", "are you human",
    })

    def __init__(self, plans: Optional[Dict[str, PlanPolicy]] = None):
        self.plans = dict(plans or PLAN_TABLE)
        self._greeting = re.compile(
            r"^\s*(" + "|".join(re.escape(p) for p in sorted(self.GREETING_PATTERNS, key=len, reverse=True))
            + r")\s*[.!?,\s]*$"
        )
        self._meta = _phrase_regex(self.META_COMMENT_PATTERNS)
        self._complex = _phrase_regex(self.COMPLEX_KEYWORDS)
        self._comparison = _phrase_regex(self.COMPARISON_WORDS)

    def classify_query(self, query: str) -> Classification:
        """
        Classify a query with the decision tree.

        0. Greeting or meta question → simple, skip retrieval
        1. Complex keywords → complex
        2. More than 20 words → complex
        3. More than one question mark → complex
        4. Comparison words → complex
        5. Default → simple
        """
        if not query or not query.strip():
            return Classification(self.SIMPLE, "Empty query defaults to simple", rule_triggered="default")

        query_lower = query.lower().strip()

        if self._greeting.match(query_lower) or self._meta.search(query_lower):
            logger.info(f"Classification: {self.SIMPLE} (greeting/meta) - {query[:50]}")
            return Classification(
                self.SIMPLE, "Query is a greeting or meta question",
                skip_retrieval=True, rule_triggered="greeting_filter",
            )

        matched = sorted(set(self._complex.findall(query_lower)))
        if matched:
            logger.info(f"Classification: {self.COMPLEX} (complex keywords) - {query[:50]}")
            return Classification(
                self.COMPLEX, f"Query contains complex keywords: {', '.join(matched)}",
                rule_triggered="complex_keyword",
            )

        word_count = len(query.split())
        if word_count > 20:
            logger.info(f"Classification: {self.COMPLEX} (query length) - {query[:50]}")
            return Classification(
                self.COMPLEX, f"Query length ({word_count} words) exceeds 20 words",
                rule_triggered="query_length",
            )

        question_marks = query.count("?")
        if question_marks > 1:
            logger.info(f"Classification: {self.COMPLEX} (multiple questions) - {query[:50]}")
            return Classification(
                self.COMPLEX, f"Query contains multiple question marks ({question_marks})",
                rule_triggered="multiple_questions",
            )

        matched = sorted(set(self._comparison.findall(query_lower)))
        if matched:
            logger.info(f"Classification: {self.COMPLEX} (comparison words) - {query[:50]}")
            return Classification(
                self.COMPLEX, f"Query contains comparison words: {', '.join(matched)}",
                rule_triggered="comparison_words",
            )

        logger.debug(f"Classification: {self.SIMPLE} (default) - {query[:50]}")
        return Classification(self.SIMPLE, "No complexity triggers matched", rule_triggered="default")

    def resolve(self, plan: str, query: str, response_mode: Optional[str] = None) -> PlanPolicy:
        """
        Resolve the policy for one request.

        Args:
            plan: Plan tier name
            query: The shopper's question
            response_mode: Explicit mode; inferred from the classification when None

        Returns:
            PlanPolicy for this request

        Raises:
            InvalidConfigError: For an unknown plan or response mode
        """
        base = self.plans.get(plan)
        if base is None:
            raise InvalidConfigError(f"Unknown plan '{plan}', expected one of {sorted(self.plans)}")

        classification = self.classify_query(query)

        if response_mode:
            try:
                mode = ResponseMode(response_mode)
            except ValueError:
                raise InvalidConfigError(f"Unknown response mode '{response_mode}'")
        elif classification.skip_retrieval:
            mode = ResponseMode.CONCISE
        elif classification.category == self.COMPLEX:
            mode = ResponseMode.DETAILED
        else:
            mode = ResponseMode.STANDARD

        model_hint = base.model_hint
        if classification.category == self.COMPLEX and base.plan in PREMIUM_ON_COMPLEX:
            model_hint = "premium"

        policy = replace(
            base,
            model_hint=model_hint,
            response_mode=mode,
            temperature=MODE_TEMPERATURE[mode],
            max_response_tokens=min(base.max_response_tokens, MODE_MAX_TOKENS[mode]),
            skip_retrieval=classification.skip_retrieval,
        )
        logger.debug(
            f"Resolved policy: plan={policy.plan}, hint={policy.model_hint}, mode={mode.value}, "
            f"budget={policy.context_token_budget}, rule={classification.rule_triggered}"
        )
        return policy
